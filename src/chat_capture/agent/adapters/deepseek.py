"""Adapter for DeepSeek (chat.deepseek.com).

POST /api/v0/chat/completion streams deltas in one of two shapes. The
OpenAI-style shape:

    data: {"choices": [{"delta": {"type": "text", "content": "Hel"}}], "message_id": 2}

and the patch shape, where ``p`` names the field being appended to and
events without ``p`` continue the previous path:

    data: {"v": {"response": {"message_id": 2, "content": ""}}}
    data: {"p": "response/content", "o": "APPEND", "v": "Hel"}
    data: {"v": "lo"}

Reasoning ("thinking") deltas are not part of the answer and are skipped.
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
from chat_capture.models import CapturedMessage

COMPLETION_PATH = re.compile(r"^/api/v0/chat/completion/?$")


class DeepSeekAdapter(ServiceAdapter):
    """Delta-streaming adapter for both DeepSeek stream shapes."""

    kind = ServiceKind.DEEPSEEK
    hostnames = ("chat.deepseek.com",)
    url_patterns = (COMPLETION_PATH,)

    def extract(
        self,
        events: Sequence[DecodedEvent],
        request_body: str | bytes | None = None,
        url: str | None = None,
    ) -> list[CapturedMessage]:
        message_id: Any = None
        path: str | None = None
        deltas: list[str] = []

        for item in payloads(events):
            if item.get("message_id") is not None:
                message_id = item["message_id"]

            choices = item.get("choices")
            if isinstance(choices, list):
                for choice in choices:
                    delta = choice.get("delta") if isinstance(choice, dict) else None
                    if not isinstance(delta, dict):
                        continue
                    if delta.get("type") in (None, "text") and isinstance(delta.get("content"), str):
                        deltas.append(delta["content"])
                continue

            if isinstance(item.get("p"), str):
                path = item["p"]

            value = item.get("v")
            if isinstance(value, dict):
                response = value.get("response")
                if isinstance(response, dict):
                    if response.get("message_id") is not None:
                        message_id = response["message_id"]
                    if isinstance(response.get("content"), str):
                        deltas.append(response["content"])
            elif isinstance(value, str) and self._is_answer_path(path):
                deltas.append(value)

        user_text, session_id = None, None
        request = parse_request_json(request_body)
        if request is not None:
            prompt = request.get("prompt")
            user_text = prompt if isinstance(prompt, str) else None
            if isinstance(request.get("chat_session_id"), str):
                session_id = request["chat_session_id"]

        external_id = None
        if message_id is not None:
            # Message ids are only unique within one chat session
            external_id = f"{session_id}:{message_id}" if session_id else str(message_id)

        return self.round_trip(
            user_text,
            [(external_id, "".join(deltas))],
            conversation_id=session_id,
        )

    def _is_answer_path(self, path: str | None) -> bool:
        if path is None:
            return True
        return path.endswith("content") and "thinking" not in path
