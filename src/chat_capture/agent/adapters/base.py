"""Base adapter interface and registry."""

import json
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from chat_capture.agent.decoder import DecodedEvent
from chat_capture.models import CapturedMessage, Role, Source

__all__ = [
    "AdapterRegistry",
    "CapturedMessage",
    "ServiceAdapter",
    "ServiceKind",
    "hostname_matches",
    "parse_request_json",
    "payloads",
]


class ServiceKind(str, Enum):
    CHATGPT = "chatgpt"
    CLAUDE = "claude"
    DEEPSEEK = "deepseek"
    DOM = "dom"


def hostname_matches(hostname: str, suffix: str) -> bool:
    """Check whether hostname equals suffix or is a subdomain of it."""
    hostname = hostname.lower().rstrip(".")
    suffix = suffix.lower()
    return hostname == suffix or hostname.endswith("." + suffix)


def payloads(events: Sequence[DecodedEvent]) -> list[dict[str, Any]]:
    """Return the JSON-object payloads of an event sequence, in order."""
    return [e.data for e in events if not e.done and isinstance(e.data, dict)]


def parse_request_json(request_body: str | bytes | None) -> dict[str, Any] | None:
    """Parse an outgoing request body, returning None unless it is a JSON object."""
    if not request_body:
        return None
    try:
        data = json.loads(request_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


class ServiceAdapter(ABC):
    """Base class for vendor extraction rules.

    Subclasses set `kind`, `hostnames` and `url_patterns` and implement
    `extract()` to turn decoded events into CapturedMessage records.
    """

    kind: ServiceKind
    hostnames: tuple[str, ...] = ()
    url_patterns: tuple[re.Pattern[str], ...] = ()

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def match(self, hostname: str) -> bool:
        """Check whether this adapter handles pages on hostname."""
        return any(hostname_matches(hostname, suffix) for suffix in self.hostnames)

    def matches_url(self, url: str) -> bool:
        """Check whether a request URL is one of this vendor's chat endpoints."""
        path = urlparse(url).path
        return any(pattern.search(path) for pattern in self.url_patterns)

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    @abstractmethod
    def extract(
        self,
        events: Sequence[DecodedEvent],
        request_body: str | bytes | None = None,
        url: str | None = None,
    ) -> list[CapturedMessage]:
        """Map decoded events into captured messages.

        Args:
            events: Decoded response events, in arrival order
            request_body: Body of the outgoing request, if any
            url: Request URL, used for endpoint-specific details

        Returns:
            Messages in conversational order
        """

    def round_trip(
        self,
        user_text: str | None,
        assistants: list[tuple[str | None, str]],
        conversation_id: str | None = None,
        user_id: str | None = None,
    ) -> list[CapturedMessage]:
        """Build the messages of one request/response round trip.

        The user message comes first and is stamped one millisecond before the
        assistant messages, whatever order the two were observed in.

        Args:
            user_text: Text synthesized from the outgoing request, if any
            assistants: (external_id, text) pairs for the assistant side
            conversation_id: Vendor conversation identifier
            user_id: Vendor identifier of the user message
        """
        now = self.now_ms()
        messages: list[CapturedMessage] = []

        if user_text and user_text.strip():
            messages.append(
                CapturedMessage(
                    role=Role.USER,
                    content=user_text.strip(),
                    source=Source.API,
                    timestamp=now - 1,
                    external_id=user_id,
                    conversation_id=conversation_id,
                )
            )

        for external_id, text in assistants:
            if not text.strip():
                continue
            messages.append(
                CapturedMessage(
                    role=Role.ASSISTANT,
                    content=text.strip(),
                    source=Source.API,
                    timestamp=now,
                    external_id=external_id,
                    conversation_id=conversation_id,
                )
            )

        return messages


class AdapterRegistry:
    """Fixed table of network adapters, matched by hostname suffix."""

    _adapters: list[ServiceAdapter] = []

    @classmethod
    def register(cls, adapter: ServiceAdapter) -> None:
        """Register an adapter.

        Raises:
            ValueError: If the adapter claims a hostname another adapter
                already handles.
        """
        for existing in cls._adapters:
            for ours in adapter.hostnames:
                for theirs in existing.hostnames:
                    if hostname_matches(ours, theirs) or hostname_matches(theirs, ours):
                        raise ValueError(
                            f"{adapter.kind.value} hostname {ours} overlaps "
                            f"{existing.kind.value} hostname {theirs}"
                        )
        cls._adapters.append(adapter)

    @classmethod
    def get(cls, kind: ServiceKind) -> ServiceAdapter | None:
        """Get adapter by kind."""
        for adapter in cls._adapters:
            if adapter.kind is kind:
                return adapter
        return None

    @classmethod
    def for_hostname(cls, hostname: str) -> ServiceAdapter | None:
        """First network adapter whose hostnames match."""
        for adapter in cls._adapters:
            if adapter.match(hostname):
                return adapter
        return None

    @classmethod
    def all_kinds(cls) -> list[ServiceKind]:
        """List all registered adapter kinds."""
        return [adapter.kind for adapter in cls._adapters]
