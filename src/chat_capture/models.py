"""Canonical data models shared by the page agent and the collector."""

import hashlib
from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PayloadError(ValueError):
    """Raised when a capture payload does not have the expected shape."""


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    UNKNOWN = "unknown"


class Source(str, Enum):
    """Which decoder or transport produced a record."""

    API = "api"
    HISTORY = "history"
    DOM = "dom"
    BEACON = "beacon"
    PROTOCOL = "protocol"
    HTTP = "http"


def content_hash(content: str) -> str:
    """SHA256 hash of trimmed content, truncated to 16 hex chars."""
    return hashlib.sha256(content.strip().encode()).hexdigest()[:16]


def rolling_hash(text: str) -> str:
    """Cheap 32-bit shift-subtract hash over UTF-16 code units.

    Produces the same value a page script computes with
    ``hash = ((hash << 5) - hash) + charCode`` and ``hash.toString(16)``,
    so keys computed inside a page and in Python agree.
    """
    data = text.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(h, "x") if h >= 0 else "-" + format(-h, "x")


@dataclass
class CapturedMessage:
    """A normalized message extracted from one hosted page."""

    role: Role
    content: str
    source: Source
    timestamp: int  # Milliseconds since epoch, producer clock
    external_id: str | None = None
    conversation_id: str | None = None

    def page_key(self) -> str:
        """Dedup key used inside one page lifetime."""
        if self.external_id:
            return self.external_id
        return rolling_hash(self.content.strip())

    def to_payload(self) -> dict[str, Any]:
        """Convert to the camelCase wire shape."""
        payload: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
            "source": self.source.value,
            "timestamp": self.timestamp,
        }
        if self.external_id is not None:
            payload["externalId"] = self.external_id
        if self.conversation_id is not None:
            payload["conversationId"] = self.conversation_id
        return payload

    @classmethod
    def from_payload(cls, data: Any, default_source: Source) -> "CapturedMessage":
        """Build a message from a decoded wire object.

        Accepts camelCase and snake_case keys. Messages without a source
        take ``default_source``.

        Raises:
            PayloadError: If the object is not a message with a known role
                and non-empty content.
        """
        if not isinstance(data, dict):
            raise PayloadError("message must be an object")

        try:
            role = Role(data.get("role"))
        except ValueError:
            raise PayloadError(f"invalid role: {data.get('role')!r}") from None
        if role is Role.UNKNOWN:
            raise PayloadError("role 'unknown' is not accepted")

        content = data.get("content")
        if not isinstance(content, str) or not content.strip():
            raise PayloadError("content must be a non-empty string")

        source = default_source
        raw_source = data.get("source")
        if raw_source is not None:
            try:
                source = Source(raw_source)
            except ValueError:
                raise PayloadError(f"invalid source: {raw_source!r}") from None

        timestamp = data.get("timestamp", 0)
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            timestamp = 0

        external_id = data.get("externalId", data.get("external_id"))
        conversation_id = data.get("conversationId", data.get("conversation_id"))

        return cls(
            role=role,
            content=content.strip(),
            source=source,
            timestamp=int(timestamp),
            external_id=str(external_id) if external_id is not None else None,
            conversation_id=str(conversation_id) if conversation_id is not None else None,
        )


@dataclass
class CaptureBatch:
    """The unit moved across one delivery channel."""

    service_id: str  # Page hostname
    url: str | None = None
    messages: list[CapturedMessage] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "serviceId": self.service_id,
            "url": self.url,
            "messages": [msg.to_payload() for msg in self.messages],
        }

    @classmethod
    def from_payload(cls, data: Any, default_source: Source) -> "CaptureBatch":
        """Normalize a decoded POST/scheme body into a batch.

        Raises:
            PayloadError: If the body is not a capture object or any message
                is malformed.
        """
        if not isinstance(data, dict):
            raise PayloadError("body must be a JSON object")

        service_id = data.get("serviceId", data.get("service_id"))
        if not isinstance(service_id, str) or not service_id:
            raise PayloadError("serviceId is required")

        raw_messages = data.get("messages")
        if not isinstance(raw_messages, list):
            raise PayloadError("messages must be a list")

        url = data.get("url")
        return cls(
            service_id=service_id,
            url=url if isinstance(url, str) else None,
            messages=[CapturedMessage.from_payload(m, default_source) for m in raw_messages],
        )


@dataclass
class CaptureRecord:
    """One persisted message as written to the capture journal."""

    service_id: str
    role: str
    content: str
    source: str
    captured_at: str  # ISO-8601, assigned at persistence time
    dedup_key: str
    url: str | None = None
    external_id: str | None = None
    conversation_id: str | None = None

    @classmethod
    def from_message(
        cls,
        message: CapturedMessage,
        service_id: str,
        url: str | None,
        captured_at: str,
    ) -> "CaptureRecord":
        return cls(
            service_id=service_id,
            role=message.role.value,
            content=message.content,
            source=message.source.value,
            captured_at=captured_at,
            dedup_key=collector_key(service_id, message),
            url=url,
            external_id=message.external_id,
            conversation_id=message.conversation_id,
        )

    def to_log_line(self) -> dict[str, Any]:
        """Journal representation; optional fields are omitted when unset."""
        line: dict[str, Any] = {"service_id": self.service_id}
        if self.url is not None:
            line["url"] = self.url
        line["role"] = self.role
        line["content"] = self.content
        if self.external_id is not None:
            line["external_id"] = self.external_id
        if self.conversation_id is not None:
            line["conversation_id"] = self.conversation_id
        line["source"] = self.source
        line["captured_at"] = self.captured_at
        return line

    def to_typesense_doc(self) -> dict:
        """Convert to Typesense document format."""
        return {
            "id": self.dedup_key,
            "service_id": self.service_id,
            "role": self.role,
            "content": self.content,
            "source": self.source,
            "conversation_id": self.conversation_id or "",
            "url": self.url or "",
            "captured_at": self.captured_at,
            "captured_ts": int(datetime.fromisoformat(self.captured_at).timestamp()),
        }


@dataclass
class CaptureEvent:
    """Notification published once per merged batch."""

    service_id: str
    messages: list[CapturedMessage]
    records: list[CaptureRecord]


def collector_key(service_id: str, message: CapturedMessage) -> str:
    """Dedup key used by the collector, scoped per service."""
    if message.external_id:
        return f"{service_id}:id:{message.external_id}"
    return f"{service_id}:hash:{content_hash(message.content)}"
