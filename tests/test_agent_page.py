"""Tests for the per-page capture agent."""

import asyncio
import json
from collections.abc import AsyncIterator

import pytest

from chat_capture.agent.channels import DeliveryChannel, DeliveryError, DeliveryUnavailable
from chat_capture.agent.page import Exchange, MutationRecord, PageAgent, header
from chat_capture.config import AgentConfig
from chat_capture.models import CaptureBatch, CapturedMessage, Role, Source

CHATGPT_URL = "https://chatgpt.com/c/abc"
CONVERSATION_URL = "https://chatgpt.com/backend-api/conversation"

PAGE_HTML = """
<div data-testid="conversation-turn-1">
  <div data-message-author-role="user"><div>Hello</div></div>
</div>
<div data-testid="conversation-turn-2">
  <div data-message-author-role="assistant"><div class="markdown">Hi there</div></div>
</div>
"""

STREAM = [
    b'data: {"message": {"id": "m-1", "author": {"role": "assistant"}, '
    b'"content": {"parts": ["Hi"]}}, "conversation_id": "c-1"}\n\n',
    b'data: {"message": {"id": "m-1", "author": {"role": "assistant"}, '
    b'"content": {"parts": ["Hi there"]}}, "conversation_id": "c-1"}\n\n',
    b"data: [DONE]\n\n",
]

REQUEST_BODY = json.dumps({"messages": [{"content": {"parts": ["Hello"]}}]})


async def agen(chunks: list[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class RecordingChannel(DeliveryChannel):
    """Channel that records batches or fails with a given exception."""

    def __init__(self, name: str, error: Exception | None = None) -> None:
        self.name = name
        self.error = error
        self.batches: list[CaptureBatch] = []

    async def send(self, batch: CaptureBatch) -> None:
        if self.error is not None:
            raise self.error
        self.batches.append(batch)


class FakeResponse:
    """Minimal fetch response with a cloneable streaming body."""

    def __init__(self, chunks: list[bytes], content_type: str) -> None:
        self.headers = {"Content-Type": content_type}
        self._chunks = chunks
        self.clones = 0

    def clone(self) -> "FakeResponse":
        self.clones += 1
        return FakeResponse(self._chunks, self.headers["Content-Type"])

    def iter_chunks(self) -> AsyncIterator[bytes]:
        return agen(self._chunks)


def stream_exchange() -> Exchange:
    return Exchange(
        url=CONVERSATION_URL,
        chunks=agen(STREAM),
        content_type="text/event-stream",
        method="POST",
        request_body=REQUEST_BODY,
    )


def message(content: str, role: Role = Role.USER) -> CapturedMessage:
    return CapturedMessage(role=role, content=content, source=Source.DOM, timestamp=0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def agent(clock: FakeClock) -> PageAgent:
    return PageAgent(
        "chatgpt.com",
        CHATGPT_URL,
        channels=[],
        document=lambda: PAGE_HTML,
        config=AgentConfig(network_quiet_seconds=10.0),
        clock=clock,
    )


class TestHeader:
    def test_case_insensitive(self) -> None:
        assert header({"Content-Type": "text/html"}, "content-type") == "text/html"
        assert header({}, "content-type") is None


class TestAdapterSelection:
    """Tests for adapter selection at construction."""

    def test_network_and_dom_adapters(self, agent: PageAgent) -> None:
        assert agent.kind.value == "chatgpt"
        assert agent.dom_adapter is not None

    def test_dom_only_host(self) -> None:
        agent = PageAgent("gemini.google.com", "https://gemini.google.com/app", channels=[])
        assert agent.adapter is None
        assert agent.kind.value == "dom"

    def test_unsupported_host(self) -> None:
        agent = PageAgent("example.com", "https://example.com", channels=[])
        assert agent.kind is None
        assert agent.capture_dom() == []


class TestNetworkCapture:
    """Tests for the network pipeline."""

    async def test_stream_yields_user_then_assistant(self, agent: PageAgent) -> None:
        queued = await agent.process_exchange(stream_exchange())

        assert [(m.role, m.content) for m in queued] == [
            (Role.USER, "Hello"),
            (Role.ASSISTANT, "Hi there"),
        ]
        assert agent.pending == 2

    async def test_repeated_exchange_is_deduplicated(self, agent: PageAgent) -> None:
        await agent.process_exchange(stream_exchange())
        assert await agent.process_exchange(stream_exchange()) == []
        assert agent.pending == 2

    async def test_unsupported_content_type_ignored(self, agent: PageAgent) -> None:
        exchange = Exchange(url=CONVERSATION_URL, chunks=agen([b"<p>"]), content_type="text/html")
        assert await agent.process_exchange(exchange) == []

    async def test_undecodable_json_ignored(self, agent: PageAgent) -> None:
        exchange = Exchange(
            url=CONVERSATION_URL,
            chunks=agen([b"{not json"]),
            content_type="application/json",
        )
        assert await agent.process_exchange(exchange) == []
        assert agent.network_active() is False

    async def test_wrap_fetch_returns_original_response(self, agent: PageAgent) -> None:
        response = FakeResponse(STREAM, "text/event-stream")

        async def fetch(url: str, **kwargs: object) -> FakeResponse:
            return response

        wrapped = agent.wrap_fetch(fetch)
        result = await wrapped(CONVERSATION_URL, method="POST", body=REQUEST_BODY)
        await asyncio.gather(*list(agent._tasks))

        assert result is response
        assert response.clones == 1
        assert agent.pending == 2

    async def test_wrap_fetch_skips_unmatched_urls(self, agent: PageAgent) -> None:
        response = FakeResponse(STREAM, "text/event-stream")

        async def fetch(url: str, **kwargs: object) -> FakeResponse:
            return response

        result = await agent.wrap_fetch(fetch)("https://chatgpt.com/backend-api/models")

        assert result is response
        assert response.clones == 0
        assert agent.pending == 0


class TestDomCapture:
    """Tests for DOM capture and its suppression."""

    def test_second_unchanged_pass_adds_nothing(self, agent: PageAgent) -> None:
        assert len(agent.capture_dom()) == 2
        assert agent.capture_dom() == []
        assert agent.pending == 2

    async def test_suppressed_after_network_result(
        self, agent: PageAgent, clock: FakeClock
    ) -> None:
        await agent.process_exchange(stream_exchange())
        assert agent.network_active() is True
        assert agent.capture_dom() == []

        clock.now += 11.0
        assert agent.network_active() is False
        # The user turn has no vendor id on either path, so its page key matches
        assert [m.content for m in agent.capture_dom()] == ["Hi there"]

    async def test_mutation_debounces_dom_pass(self, clock: FakeClock) -> None:
        agent = PageAgent(
            "gemini.google.com",
            "https://gemini.google.com/app",
            channels=[],
            document=lambda: (
                '<div class="conversation-container">'
                '<div class="query-content">Hello</div></div>'
            ),
            config=AgentConfig(dom_debounce_seconds=0.01),
            clock=clock,
        )
        agent.on_mutation([MutationRecord("attributes")])
        await asyncio.sleep(0.03)
        assert agent.pending == 0

        agent.on_mutation([MutationRecord("childList")])
        agent.on_mutation([MutationRecord("characterData")])
        await asyncio.sleep(0.03)
        assert agent.pending == 1

    def test_document_failure_is_contained(self, clock: FakeClock) -> None:
        def broken() -> str:
            raise RuntimeError("detached")

        agent = PageAgent("chatgpt.com", CHATGPT_URL, channels=[], document=broken, clock=clock)
        assert agent.capture_dom() == []


class TestQueue:
    """Tests for the outbound queue and flush."""

    def test_unknown_role_dropped(self, agent: PageAgent) -> None:
        agent.enqueue([message("?", role=Role.UNKNOWN), message("ok")])
        assert agent.pending == 1

    async def test_flush_uses_first_accepting_channel(self, clock: FakeClock) -> None:
        unavailable = RecordingChannel("direct", DeliveryUnavailable("no host"))
        failing = RecordingChannel("scheme", DeliveryError("refused"))
        working = RecordingChannel("http")
        spare = RecordingChannel("spare")
        agent = PageAgent(
            "chatgpt.com",
            CHATGPT_URL,
            channels=[unavailable, failing, working, spare],
            clock=clock,
        )
        agent.enqueue([message("a"), message("b")])

        assert await agent.flush() is True
        assert agent.pending == 0
        assert len(working.batches) == 1
        batch = working.batches[0]
        assert batch.service_id == "chatgpt.com"
        assert batch.url == CHATGPT_URL
        assert [m.content for m in batch.messages] == ["a", "b"]
        assert spare.batches == []

    async def test_failed_flush_requeues_at_head(self, clock: FakeClock) -> None:
        agent = PageAgent(
            "chatgpt.com",
            CHATGPT_URL,
            channels=[RecordingChannel("http", DeliveryError("blocked"))],
            clock=clock,
        )
        agent.enqueue([message("a"), message("b")])

        assert await agent.flush() is False
        agent.enqueue([message("c")])
        assert [m.content for m in agent.drain()] == ["a", "b", "c"]

    async def test_unexpected_channel_error_falls_through(self, clock: FakeClock) -> None:
        working = RecordingChannel("http")
        agent = PageAgent(
            "chatgpt.com",
            CHATGPT_URL,
            channels=[RecordingChannel("scheme", RuntimeError("boom")), working],
            clock=clock,
        )
        agent.enqueue([message("a")])
        assert await agent.flush() is True
        assert len(working.batches) == 1

    async def test_flush_with_empty_queue(self, agent: PageAgent) -> None:
        assert await agent.flush() is False

    def test_drain_respects_limit(self, agent: PageAgent) -> None:
        agent.enqueue([message("a"), message("b"), message("c")])
        assert [m.content for m in agent.drain(limit=2)] == ["a", "b"]
        assert agent.pending == 1


class TestLifecycle:
    """Tests for start and close."""

    async def test_periodic_flush(self, clock: FakeClock) -> None:
        channel = RecordingChannel("http")
        agent = PageAgent(
            "chatgpt.com",
            CHATGPT_URL,
            channels=[channel],
            config=AgentConfig(flush_interval_seconds=0.01),
            clock=clock,
        )
        agent.enqueue([message("a")])
        agent.start()
        await asyncio.sleep(0.05)
        agent.close()

        assert len(channel.batches) == 1

    async def test_initial_dom_pass(self, clock: FakeClock) -> None:
        agent = PageAgent(
            "chatgpt.com",
            CHATGPT_URL,
            channels=[],
            document=lambda: PAGE_HTML,
            config=AgentConfig(initial_capture_delay_seconds=0.01, flush_interval_seconds=60),
            clock=clock,
        )
        agent.start()
        await asyncio.sleep(0.03)
        assert agent.pending == 2
        agent.close()

    async def test_close_discards_state(self, agent: PageAgent) -> None:
        agent.capture_dom()
        agent.close()

        assert agent.pending == 0
        assert agent.capture_dom() == []
