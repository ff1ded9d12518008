"""Adapter for ChatGPT (chatgpt.com).

Two endpoints carry conversation data:

- POST /backend-api/conversation (or /backend-api/f/conversation) answers with
  an event stream. Each event carries the full text of the assistant message
  so far:

      data: {"message": {"id": "...", "author": {"role": "assistant"},
             "content": {"content_type": "text", "parts": ["Hel"]},
             "status": "in_progress"}, "conversation_id": "..."}

  The outgoing request holds the user turn in ``messages[-1].content.parts``.

- GET /backend-api/conversation/<id> returns the whole conversation as a
  JSON document whose ``mapping`` holds one node per message, each with a
  ``create_time`` in epoch seconds.
"""

import re
from collections.abc import Sequence
from typing import Any

from chat_capture.agent.adapters.base import (
    ServiceAdapter,
    ServiceKind,
    parse_request_json,
    payloads,
)
from chat_capture.agent.decoder import DecodedEvent
from chat_capture.models import CapturedMessage, Role, Source

CONVERSATION_PATH = re.compile(r"^/backend-api/(?:f/)?conversation/?$")
HISTORY_PATH = re.compile(r"^/backend-api/conversation/[0-9a-fA-F-]{8,}/?$")


def parts_text(content: Any) -> str:
    """Join the text parts of a ChatGPT content object."""
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts")
    if isinstance(parts, list):
        return "\n".join(p for p in parts if isinstance(p, str))
    text = content.get("text")
    return text if isinstance(text, str) else ""


def author_role(message: dict[str, Any]) -> str | None:
    author = message.get("author")
    if isinstance(author, dict):
        return author.get("role")
    return None


class ChatGPTAdapter(ServiceAdapter):
    """Snapshot-streaming adapter: the last snapshot of each message wins."""

    kind = ServiceKind.CHATGPT
    hostnames = ("chatgpt.com", "chat.openai.com")
    url_patterns = (CONVERSATION_PATH, HISTORY_PATH)

    def extract(
        self,
        events: Sequence[DecodedEvent],
        request_body: str | bytes | None = None,
        url: str | None = None,
    ) -> list[CapturedMessage]:
        items = payloads(events)
        if len(items) == 1 and isinstance(items[0].get("mapping"), dict):
            return self._extract_history(items[0])
        return self._extract_stream(items, request_body)

    def _extract_stream(
        self,
        items: list[dict[str, Any]],
        request_body: str | bytes | None,
    ) -> list[CapturedMessage]:
        # message id -> latest non-empty snapshot; dict keeps first-seen order
        snapshots: dict[str, str] = {}
        conversation_id: str | None = None

        for item in items:
            if isinstance(item.get("conversation_id"), str):
                conversation_id = item["conversation_id"]

            message = item.get("message")
            if not isinstance(message, dict) or author_role(message) != "assistant":
                continue

            text = parts_text(message.get("content"))
            if not text.strip():
                continue
            snapshots[message.get("id") or ""] = text

        user_text, user_id = None, None
        request = parse_request_json(request_body)
        if request is not None:
            user_text, user_id = self._user_turn(request)
            if conversation_id is None and isinstance(request.get("conversation_id"), str):
                conversation_id = request["conversation_id"]

        return self.round_trip(
            user_text,
            [(msg_id or None, text) for msg_id, text in snapshots.items()],
            conversation_id=conversation_id,
            user_id=user_id,
        )

    def _user_turn(self, request: dict[str, Any]) -> tuple[str | None, str | None]:
        """Find the user message in an outgoing conversation request."""
        messages = request.get("messages")
        if not isinstance(messages, list):
            return None, None

        for message in reversed(messages):
            if not isinstance(message, dict):
                continue
            # Older clients omit the author on the prompt message
            if author_role(message) not in (None, "user"):
                continue
            text = parts_text(message.get("content"))
            if text.strip():
                msg_id = message.get("id")
                return text, msg_id if isinstance(msg_id, str) else None
        return None, None

    def _extract_history(self, data: dict[str, Any]) -> list[CapturedMessage]:
        conversation_id = data.get("conversation_id") or data.get("id")
        fallback_ts = self.now_ms()
        nodes: list[tuple[float, str, CapturedMessage]] = []

        for node_id, node in data["mapping"].items():
            if not isinstance(node, dict):
                continue
            message = node.get("message")
            if not isinstance(message, dict):
                continue

            role = author_role(message)
            if role not in ("user", "assistant"):
                continue

            metadata = message.get("metadata")
            if isinstance(metadata, dict) and metadata.get("is_visually_hidden_from_conversation"):
                continue

            text = parts_text(message.get("content"))
            if not text.strip():
                continue

            create_time = message.get("create_time")
            if not isinstance(create_time, (int, float)):
                create_time = 0.0
            msg_id = message.get("id") or node_id

            nodes.append(
                (
                    float(create_time),
                    msg_id,
                    CapturedMessage(
                        role=Role(role),
                        content=text.strip(),
                        source=Source.HISTORY,
                        timestamp=int(create_time * 1000) if create_time else fallback_ts,
                        external_id=msg_id,
                        conversation_id=conversation_id,
                    ),
                )
            )

        nodes.sort(key=lambda n: (n[0], n[1]))
        return [message for _, _, message in nodes]
