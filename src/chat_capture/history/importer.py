"""Import a ChatGPT data export into the capture journal.

The export's ``conversations.json`` is a list of conversations, each holding
its messages as a tree in ``mapping``. Messages are recovered by walking the
tree from its roots and ordering by creation time.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from chat_capture.agent.adapters.chatgpt import author_role, parts_text
from chat_capture.collector.ingest import IngestionCollector, Transport
from chat_capture.logging import get_logger
from chat_capture.models import CaptureBatch, CapturedMessage, Role, Source

logger = get_logger("history.importer")

CHATGPT_SERVICE_ID = "chatgpt.com"


@dataclass
class ImportResult:
    conversations: int = 0
    messages: int = 0
    duplicates: int = 0
    errors: list[str] = field(default_factory=list)


def extract_messages(conversation: dict[str, Any]) -> list[CapturedMessage]:
    """Flatten one exported conversation into ordered messages.

    Roots are nodes with no message or a system message. Nodes reachable from
    several roots are visited once. Messages with empty text or a role other
    than user/assistant are dropped.
    """
    mapping = conversation.get("mapping")
    if not isinstance(mapping, dict):
        return []

    conversation_id = conversation.get("conversation_id") or conversation.get("id")
    fallback_time = conversation.get("create_time") or 0
    found: list[tuple[float, CapturedMessage]] = []
    visited: set[str] = set()

    roots = [
        node_id
        for node_id, node in mapping.items()
        if isinstance(node, dict)
        and (not isinstance(node.get("message"), dict) or author_role(node["message"]) == "system")
    ]

    # Iterative: exported chains can be thousands of nodes deep
    stack = list(reversed(roots))
    while stack:
        node_id = stack.pop()
        if node_id in visited:
            continue
        visited.add(node_id)
        node = mapping.get(node_id)
        if not isinstance(node, dict):
            continue

        message = node.get("message")
        if isinstance(message, dict):
            text = parts_text(message.get("content")).strip()
            role = author_role(message)
            if text and role in (Role.USER.value, Role.ASSISTANT.value):
                created = float(message.get("create_time") or fallback_time)
                found.append((
                    created,
                    CapturedMessage(
                        role=Role(role),
                        content=text,
                        source=Source.HISTORY,
                        timestamp=int(created * 1000),
                        external_id=message.get("id") or node_id,
                        conversation_id=str(conversation_id) if conversation_id else None,
                    ),
                ))

        children = node.get("children")
        if isinstance(children, list):
            stack.extend(reversed(children))

    # sort() is stable: equal timestamps keep tree order
    found.sort(key=lambda item: item[0])
    return [message for _, message in found]


def import_chatgpt_export(collector: IngestionCollector, path: Path) -> ImportResult:
    """Merge every conversation of an export through the collector.

    Messages already captured live (same external id) are counted as
    duplicates and not written twice.

    Raises:
        ValueError: If the file is not a ChatGPT conversations export
        OSError: If the file cannot be read
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    if not isinstance(data, list):
        raise ValueError("Invalid ChatGPT export format: expected a list of conversations")

    result = ImportResult()
    for conversation in data:
        if not isinstance(conversation, dict):
            result.errors.append("Skipped entry that is not a conversation object")
            continue
        title = conversation.get("title") or "untitled"
        result.conversations += 1
        try:
            messages = extract_messages(conversation)
            if not messages:
                continue
            conversation_id = messages[0].conversation_id
            url = f"https://chatgpt.com/c/{conversation_id}" if conversation_id else None
            batch = CaptureBatch(service_id=CHATGPT_SERVICE_ID, url=url, messages=messages)
            merged = collector.ingest(batch, Transport.DIRECT)
        except Exception as e:
            logger.exception("Failed to import conversation: title=%s", title)
            result.errors.append(f'Failed to import conversation "{title}": {e}')
            continue
        result.messages += merged.accepted
        result.duplicates += merged.duplicates

    logger.info(
        "Imported ChatGPT export: path=%s conversations=%d messages=%d duplicates=%d",
        path,
        result.conversations,
        result.messages,
        result.duplicates,
    )
    return result
