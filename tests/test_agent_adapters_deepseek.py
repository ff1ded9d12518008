"""Tests for the DeepSeek adapter."""

import json

import pytest

from chat_capture.agent.adapters import DeepSeekAdapter
from chat_capture.agent.decoder import DecodedEvent
from chat_capture.models import Role


@pytest.fixture
def adapter() -> DeepSeekAdapter:
    return DeepSeekAdapter(clock=lambda: 1000.0)


class TestDeepSeekAdapter:
    """Tests for both stream shapes."""

    def test_matches_completion_endpoint(self, adapter: DeepSeekAdapter) -> None:
        assert adapter.matches_url("https://chat.deepseek.com/api/v0/chat/completion")
        assert not adapter.matches_url("https://chat.deepseek.com/api/v0/chat/history")

    def test_choice_deltas(self, adapter: DeepSeekAdapter) -> None:
        events = [
            DecodedEvent(data={"choices": [{"delta": {"content": "H"}}], "message_id": 2}),
            DecodedEvent(data={"choices": [{"delta": {"type": "thinking", "content": "hmm"}}]}),
            DecodedEvent(data={"choices": [{"delta": {"type": "text", "content": "ello"}}]}),
            DecodedEvent(done=True),
        ]
        body = json.dumps({"chat_session_id": "s-1", "prompt": "Hi"})
        messages = adapter.extract(events, request_body=body)

        assert [(m.role, m.content) for m in messages] == [
            (Role.USER, "Hi"),
            (Role.ASSISTANT, "Hello"),
        ]
        assert messages[1].external_id == "s-1:2"
        assert messages[1].conversation_id == "s-1"

    def test_patch_shape(self, adapter: DeepSeekAdapter) -> None:
        events = [
            DecodedEvent(data={"v": {"response": {"message_id": 4, "content": ""}}}),
            DecodedEvent(data={"p": "response/thinking_content", "o": "APPEND", "v": "plan"}),
            DecodedEvent(data={"v": " more plan"}),
            DecodedEvent(data={"p": "response/content", "o": "APPEND", "v": "H"}),
            DecodedEvent(data={"v": "e"}),
            DecodedEvent(data={"v": "llo"}),
            DecodedEvent(data={"p": "response/status", "v": "FINISHED"}),
        ]
        messages = adapter.extract(events)

        assert [m.content for m in messages] == ["Hello"]
        assert messages[0].external_id == "4"

    def test_no_text_produces_no_assistant(self, adapter: DeepSeekAdapter) -> None:
        assert adapter.extract([DecodedEvent(done=True)]) == []
