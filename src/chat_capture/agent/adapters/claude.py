"""Adapter for Claude (claude.ai).

The completion endpoint streams incremental text deltas:

    data: {"type": "message_start", "message": {"id": "msg_01..."}}
    data: {"type": "content_block_delta", "index": 0,
           "delta": {"type": "text_delta", "text": "Hel"}}

Older deployments stream ``{"completion": "Hel"}`` events instead. The user
turn is the ``prompt`` field of the outgoing request. Fetching a conversation
returns a JSON document with a ``chat_messages`` list.
"""

import re
from collections.abc import Sequence
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

from chat_capture.agent.adapters.base import (
    ServiceAdapter,
    ServiceKind,
    parse_request_json,
    payloads,
)
from chat_capture.agent.decoder import DecodedEvent
from chat_capture.models import CapturedMessage, Role, Source

COMPLETION_PATH = re.compile(
    r"^/api/organizations/[^/]+/chat_conversations/([^/]+)/(?:completion|retry_completion)$"
)
HISTORY_PATH = re.compile(r"^/api/organizations/[^/]+/chat_conversations/([^/]+)/?$")

SENDER_ROLES = {"human": Role.USER, "assistant": Role.ASSISTANT}


def parse_iso_ms(value: Any) -> int | None:
    """Parse an ISO 8601 timestamp to epoch milliseconds."""
    if not isinstance(value, str) or not value:
        return None
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return int(datetime.fromisoformat(value).timestamp() * 1000)
    except ValueError:
        return None


def message_text(message: dict[str, Any]) -> str:
    """Text of a stored Claude message, from `text` or its text content blocks."""
    text = message.get("text")
    if isinstance(text, str) and text.strip():
        return text
    blocks = message.get("content")
    if not isinstance(blocks, list):
        return ""
    return "\n".join(
        block["text"]
        for block in blocks
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
    )


class ClaudeAdapter(ServiceAdapter):
    """Delta-streaming adapter: text deltas are concatenated in order."""

    kind = ServiceKind.CLAUDE
    hostnames = ("claude.ai",)
    url_patterns = (COMPLETION_PATH, HISTORY_PATH)

    def extract(
        self,
        events: Sequence[DecodedEvent],
        request_body: str | bytes | None = None,
        url: str | None = None,
    ) -> list[CapturedMessage]:
        items = payloads(events)
        conversation_id = self._conversation_from_url(url)

        if len(items) == 1 and isinstance(items[0].get("chat_messages"), list):
            return self._extract_history(items[0], conversation_id)

        message_id: str | None = None
        deltas: list[str] = []

        for item in items:
            event_type = item.get("type")
            if event_type == "message_start":
                message = item.get("message")
                if isinstance(message, dict) and isinstance(message.get("id"), str):
                    message_id = message["id"]
            elif event_type == "content_block_delta":
                delta = item.get("delta")
                if isinstance(delta, dict) and delta.get("type") == "text_delta":
                    text = delta.get("text")
                    if isinstance(text, str):
                        deltas.append(text)
            elif isinstance(item.get("completion"), str):
                deltas.append(item["completion"])

        user_text, user_id = None, None
        request = parse_request_json(request_body)
        if request is not None:
            prompt = request.get("prompt")
            user_text = prompt if isinstance(prompt, str) else None
            turn_ids = request.get("turn_message_uuids")
            if isinstance(turn_ids, dict):
                user_id = turn_ids.get("human_message_uuid")
                message_id = message_id or turn_ids.get("assistant_message_uuid")

        return self.round_trip(
            user_text,
            [(message_id, "".join(deltas))],
            conversation_id=conversation_id,
            user_id=user_id,
        )

    def _conversation_from_url(self, url: str | None) -> str | None:
        if not url:
            return None
        path = urlparse(url).path
        for pattern in self.url_patterns:
            match = pattern.search(path)
            if match:
                return match.group(1)
        return None

    def _extract_history(
        self,
        data: dict[str, Any],
        conversation_id: str | None,
    ) -> list[CapturedMessage]:
        conversation_id = data.get("uuid") or conversation_id
        fallback_ts = self.now_ms()
        rows: list[tuple[int, str, CapturedMessage]] = []

        for message in data["chat_messages"]:
            if not isinstance(message, dict):
                continue
            role = SENDER_ROLES.get(message.get("sender"))
            if role is None:
                continue
            text = message_text(message)
            if not text.strip():
                continue

            created = parse_iso_ms(message.get("created_at"))
            msg_id = message.get("uuid") or ""
            rows.append(
                (
                    created or 0,
                    msg_id,
                    CapturedMessage(
                        role=role,
                        content=text.strip(),
                        source=Source.HISTORY,
                        timestamp=created or fallback_ts,
                        external_id=msg_id or None,
                        conversation_id=conversation_id,
                    ),
                )
            )

        rows.sort(key=lambda r: (r[0], r[1]))
        return [message for _, _, message in rows]
