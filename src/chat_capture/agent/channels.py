"""Delivery channels moving capture batches out of a page.

Channels are listed in preference order:

1. DirectCallChannel - in-process call into the host; only exists in the
   surface the host owns directly.
2. SchemeChannel - request against the host's private URI scheme; not subject
   to the page's network policy.
3. HttpPostChannel - JSON POST to the loopback collector; may be blocked by
   the page's connect policy.
4. ImageBeaconChannel - one image GET per message; exempt from the connect
   policy but unconfirmed, so it backs the host-driven queue drain.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from typing import Any
from urllib.parse import urlencode

import requests

from chat_capture.config import DEFAULT_SCHEME, Config
from chat_capture.logging import get_logger
from chat_capture.models import CaptureBatch, CapturedMessage
from chat_capture.session import SchemeHandler, SchemeRequest

logger = get_logger("agent.channels")

DirectHandler = Callable[[str, list[CapturedMessage], str | None], Any]


class DeliveryError(Exception):
    """A channel failed to deliver a batch."""


class DeliveryUnavailable(DeliveryError):
    """The channel does not exist in this surface; expected, not an error."""


class DeliveryChannel(ABC):
    name: str

    @abstractmethod
    async def send(self, batch: CaptureBatch) -> None:
        """Deliver a batch.

        Raises:
            DeliveryUnavailable: If the channel cannot exist in this surface
            DeliveryError: If delivery was attempted and failed
        """


class DirectCallChannel(DeliveryChannel):
    """Synchronous call from page context into the host."""

    name = "direct"

    def __init__(self, handler: DirectHandler | None = None) -> None:
        self._handler = handler

    async def send(self, batch: CaptureBatch) -> None:
        if self._handler is None:
            raise DeliveryUnavailable("direct call is not available in this surface")
        try:
            self._handler(batch.service_id, batch.messages, batch.url)
        except Exception as e:
            raise DeliveryError(f"direct call rejected: {e}") from e


class SchemeChannel(DeliveryChannel):
    """POST to {scheme}://localhost/capture, intercepted by the host."""

    name = "scheme"

    def __init__(self, handler: SchemeHandler | None, scheme: str = DEFAULT_SCHEME) -> None:
        self._handler = handler
        self._url = f"{scheme}://localhost/capture"

    async def send(self, batch: CaptureBatch) -> None:
        if self._handler is None:
            raise DeliveryUnavailable(f"scheme {self._url} is not registered")

        request = SchemeRequest(
            method="POST",
            url=self._url,
            body=json.dumps(batch.to_payload()).encode(),
            headers={"Content-Type": "application/json"},
        )
        try:
            response = self._handler(request)
        except Exception as e:
            raise DeliveryError(f"scheme request failed: {e}") from e
        if not response.ok:
            raise DeliveryError(f"scheme request returned {response.status}")


class ContentPolicy:
    """The connect-src part of a page's content security policy.

    Sources are origins or URL prefixes; "*" allows everything. A policy
    built without sources places no restriction.
    """

    def __init__(self, connect_src: Iterable[str] | None = None) -> None:
        self._sources = list(connect_src) if connect_src is not None else None

    def allows_connect(self, url: str) -> bool:
        if self._sources is None:
            return True
        return any(src == "*" or url.startswith(src) for src in self._sources)


class HttpPostChannel(DeliveryChannel):
    """JSON POST to the loopback collector."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        policy: ContentPolicy | None = None,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self._url = base_url.rstrip("/") + "/capture"
        self._policy = policy or ContentPolicy()
        self._timeout = timeout
        self._session = session or requests.Session()

    async def send(self, batch: CaptureBatch) -> None:
        # Blocked requests must fail at once so the agent can fall back
        if not self._policy.allows_connect(self._url):
            raise DeliveryError(f"connect to {self._url} blocked by content policy")

        try:
            response = await asyncio.to_thread(
                self._session.post,
                self._url,
                json=batch.to_payload(),
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise DeliveryError(f"POST {self._url} failed: {e}") from e

        if not response.ok:
            raise DeliveryError(f"POST {self._url} returned {response.status_code}")


def beacon_payload(service_id: str, message: CapturedMessage, max_content: int) -> dict[str, Any]:
    """Compact single-message payload carried in the beacon query string."""
    return {
        "s": service_id,
        "r": message.role.value,
        "c": message.content.strip()[:max_content],
        "t": message.timestamp,
    }


class ImageBeaconChannel(DeliveryChannel):
    """Fire-and-forget image GET, one per message."""

    name = "beacon"

    def __init__(
        self,
        base_url: str,
        max_content: int = 2000,
        timeout: float = 2.0,
        session: requests.Session | None = None,
    ) -> None:
        self._endpoint = base_url.rstrip("/") + "/beacon"
        self._max_content = max_content
        self._timeout = timeout
        self._session = session or requests.Session()

    def beacon_url(self, service_id: str, message: CapturedMessage) -> str:
        payload = beacon_payload(service_id, message, self._max_content)
        data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
        return f"{self._endpoint}?{urlencode({'d': data})}"

    def fire(self, service_id: str, message: CapturedMessage) -> None:
        """Send one beacon; the outcome is never reported."""
        try:
            self._session.get(self.beacon_url(service_id, message), timeout=self._timeout)
        except requests.RequestException as e:
            logger.debug("Beacon not delivered: service=%s error=%s", service_id, e)

    async def send(self, batch: CaptureBatch) -> None:
        for message in batch.messages:
            await asyncio.to_thread(self.fire, batch.service_id, message)


def default_channels(
    config: Config,
    direct_handler: DirectHandler | None = None,
    scheme_handler: SchemeHandler | None = None,
    policy: ContentPolicy | None = None,
) -> list[DeliveryChannel]:
    """Channels a page agent flushes through, most direct first.

    The image beacon is not included: it gives no delivery confirmation, so
    it only serves the host-driven drain.
    """
    return [
        DirectCallChannel(direct_handler),
        SchemeChannel(scheme_handler, config.server.scheme),
        HttpPostChannel(
            config.server.base_url,
            policy=policy,
            timeout=config.agent.post_timeout_seconds,
        ),
    ]
