"""Page agent: the capture pipeline running inside one hosted page.

One PageAgent exists per page lifetime. It is created when the page's script
context initializes and closed on navigation or reload, which discards its
dedup set and outbound queue.

Network capture runs as an explicit stage sequence:

    Exchange -> decode_async -> ServiceAdapter.extract -> enqueue

DOM capture runs on a debounced timer after document mutations, and is
suppressed while network capture is producing results. A periodic flush
moves the queue out through the first delivery channel that accepts it.

Nothing in here may raise into the page: every entry point catches, logs and
carries on.
"""

import asyncio
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from chat_capture.agent.adapters import AdapterRegistry, DomAdapter, ServiceKind
from chat_capture.agent.channels import DeliveryChannel, DeliveryError, DeliveryUnavailable
from chat_capture.agent.decoder import DecodedEvent, DecodeError, decode_async, framing_for_content_type
from chat_capture.config import AgentConfig
from chat_capture.logging import get_logger
from chat_capture.models import CaptureBatch, CapturedMessage, Role

logger = get_logger("agent.page")

OBSERVED_MUTATIONS = ("childList", "characterData")


class Response(Protocol):
    """The part of a page's fetch response the agent relies on."""

    headers: Mapping[str, str]

    def clone(self) -> "Response": ...

    def iter_chunks(self) -> AsyncIterator[bytes]: ...


Fetch = Callable[..., Awaitable[Response]]


@dataclass
class Exchange:
    """One intercepted request/response pair routed to the adapter."""

    url: str
    chunks: AsyncIterator[bytes]
    content_type: str | None = None
    method: str = "GET"
    request_body: str | bytes | None = None


@dataclass
class MutationRecord:
    type: str  # childList, characterData or attributes
    target: Any = None


def header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup."""
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


class PageAgent:
    """Capture state and pipeline for one page lifetime."""

    def __init__(
        self,
        hostname: str,
        url: str,
        channels: Sequence[DeliveryChannel],
        document: Callable[[], str] | None = None,
        config: AgentConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.service_id = hostname
        self.url = url
        self._channels = list(channels)
        self._document = document
        self._config = config or AgentConfig()
        self._clock = clock

        # Selected once for the page lifetime
        self.adapter = AdapterRegistry.for_hostname(hostname)
        self.dom_adapter = DomAdapter.for_hostname(hostname)

        self._seen: set[str] = set()
        self._queue: deque[CapturedMessage] = deque()

        self._inflight = 0
        self._last_network_result: float | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._flush_task: asyncio.Task | None = None
        self._dom_timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def kind(self) -> ServiceKind | None:
        if self.adapter is not None:
            return self.adapter.kind
        if self.dom_adapter is not None:
            return ServiceKind.DOM
        return None

    @property
    def pending(self) -> int:
        """Number of messages waiting for delivery."""
        return len(self._queue)

    # Lifecycle

    def start(self) -> None:
        """Start the periodic flush and schedule the first DOM pass.

        Must be called from the page's running event loop.
        """
        self._loop = asyncio.get_running_loop()
        self._flush_task = self._loop.create_task(self._flush_loop())
        if self.dom_adapter is not None:
            self._dom_timer = self._loop.call_later(
                self._config.initial_capture_delay_seconds, self._run_dom_pass
            )
        logger.info(
            "Page agent started: service=%s adapter=%s",
            self.service_id,
            self.kind.value if self.kind else "none",
        )

    def close(self) -> None:
        """Tear down on navigation; queued and seen state is discarded."""
        self._closed = True
        if self._dom_timer is not None:
            self._dom_timer.cancel()
            self._dom_timer = None
        if self._flush_task is not None:
            self._flush_task.cancel()
            self._flush_task = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        dropped = len(self._queue)
        self._queue.clear()
        self._seen.clear()
        logger.info("Page agent closed: service=%s dropped=%d", self.service_id, dropped)

    # Network watch

    def wrap_fetch(self, fetch: Fetch) -> Fetch:
        """Wrap the page's fetch so matched responses are captured.

        The page always receives the original response, unchanged and
        without waiting on capture; capture reads a clone in the background.
        """

        async def capturing_fetch(url: str, *args: Any, **kwargs: Any) -> Response:
            response = await fetch(url, *args, **kwargs)
            try:
                self._observe(url, response, kwargs.get("method", "GET"), kwargs.get("body"))
            except Exception:
                logger.exception("Interception failed: url=%s", url)
            return response

        return capturing_fetch

    def _observe(
        self,
        url: str,
        response: Response,
        method: str,
        body: str | bytes | None,
    ) -> None:
        if self._closed or self.adapter is None or not self.adapter.matches_url(url):
            return
        clone = response.clone()
        exchange = Exchange(
            url=url,
            chunks=clone.iter_chunks(),
            content_type=header(clone.headers, "content-type"),
            method=method,
            request_body=body,
        )
        self._spawn(self.process_exchange(exchange))

    async def process_exchange(self, exchange: Exchange) -> list[CapturedMessage]:
        """Run one exchange through decode, extract and enqueue.

        Returns:
            Messages newly queued for delivery
        """
        if self.adapter is None:
            return []
        framing = framing_for_content_type(exchange.content_type)
        if framing is None:
            return []

        self._inflight += 1
        try:
            events = await decode_async(exchange.chunks, framing)
            messages = self.adapter.extract(events, exchange.request_body, exchange.url)
        except DecodeError as e:
            logger.debug("Undecodable response: url=%s error=%s", exchange.url, e)
            return []
        except Exception:
            logger.exception("Network capture failed: url=%s", exchange.url)
            return []
        finally:
            self._inflight -= 1

        if messages:
            self._last_network_result = self._clock()
        return self.enqueue(messages)

    def network_active(self) -> bool:
        """True while network capture is in flight or recently produced results."""
        if self._inflight > 0:
            return True
        if self._last_network_result is None:
            return False
        return self._clock() - self._last_network_result < self._config.network_quiet_seconds

    # DOM watch

    def on_mutation(self, mutations: Iterable[MutationRecord]) -> None:
        """Observer callback: debounce a DOM pass after relevant mutations."""
        if self._closed or self.dom_adapter is None:
            return
        if not any(m.type in OBSERVED_MUTATIONS for m in mutations):
            return

        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("Mutation outside event loop ignored: service=%s", self.service_id)
                return

        if self._dom_timer is not None:
            self._dom_timer.cancel()
        self._dom_timer = loop.call_later(self._config.dom_debounce_seconds, self._run_dom_pass)

    def _run_dom_pass(self) -> None:
        self._dom_timer = None
        self.capture_dom()

    def capture_dom(self) -> list[CapturedMessage]:
        """One DOM capture pass.

        Returns:
            Messages newly queued; empty when suppressed by network capture
        """
        if self._closed or self.dom_adapter is None or self._document is None:
            return []
        if self.network_active():
            logger.debug("DOM capture suppressed: service=%s", self.service_id)
            return []

        try:
            html = self._document()
            messages = self.dom_adapter.extract([DecodedEvent(data=html)])
        except Exception:
            logger.exception("DOM capture failed: service=%s", self.service_id)
            return []
        return self.enqueue(messages)

    # Outbound queue

    def enqueue(self, messages: Iterable[CapturedMessage]) -> list[CapturedMessage]:
        """Queue messages whose dedup key has not been seen in this page lifetime."""
        queued: list[CapturedMessage] = []
        for message in messages:
            if message.role is Role.UNKNOWN or not message.content.strip():
                continue
            key = message.page_key()
            if key in self._seen:
                continue
            self._seen.add(key)
            self._queue.append(message)
            queued.append(message)

        if queued:
            logger.info(
                "Captured messages: service=%s source=%s count=%d",
                self.service_id,
                queued[0].source.value,
                len(queued),
            )
        return queued

    async def flush(self) -> bool:
        """Deliver the whole queue as one batch.

        Channels are tried in order. If none accepts the batch it goes back
        to the head of the queue for the next flush.

        Returns:
            True if a batch was delivered
        """
        if not self._queue:
            return False

        messages = list(self._queue)
        self._queue.clear()
        batch = CaptureBatch(service_id=self.service_id, url=self.url, messages=messages)

        for channel in self._channels:
            try:
                await channel.send(batch)
            except DeliveryUnavailable:
                continue
            except DeliveryError as e:
                logger.info("Delivery failed: channel=%s service=%s error=%s", channel.name, self.service_id, e)
                continue
            except Exception:
                logger.exception("Delivery crashed: channel=%s service=%s", channel.name, self.service_id)
                continue

            logger.info(
                "Delivered batch: channel=%s service=%s count=%d",
                channel.name,
                self.service_id,
                len(messages),
            )
            return True

        self._queue.extendleft(reversed(messages))
        logger.info("Batch re-queued: service=%s count=%d", self.service_id, len(messages))
        return False

    def drain(self, limit: int | None = None) -> list[CapturedMessage]:
        """Remove queued messages for the host's beacon drain."""
        drained: list[CapturedMessage] = []
        while self._queue and (limit is None or len(drained) < limit):
            drained.append(self._queue.popleft())
        return drained

    async def _flush_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._config.flush_interval_seconds)
            try:
                await self.flush()
            except Exception:
                logger.exception("Flush failed: service=%s", self.service_id)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
