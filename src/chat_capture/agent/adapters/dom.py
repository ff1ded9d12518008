"""DOM-scraping fallback adapter.

Used for every page whose hostname has an entry in SELECTOR_TABLE. Each
DOM pass hands the adapter the current document HTML as the data of a single
DecodedEvent; turns are located with the host's container selector and
classified as user or assistant by the role selectors.
"""

from collections.abc import Sequence
from dataclasses import dataclass

from bs4 import BeautifulSoup, Tag

from chat_capture.agent.adapters.base import ServiceAdapter, ServiceKind, hostname_matches
from chat_capture.agent.decoder import DecodedEvent
from chat_capture.models import CapturedMessage, Role, Source


@dataclass(frozen=True)
class DomSelectors:
    container: str
    user: str
    assistant: str
    content: str


SELECTOR_TABLE: dict[str, DomSelectors] = {
    "chatgpt.com": DomSelectors(
        container='[data-testid^="conversation-turn"]',
        user='[data-message-author-role="user"]',
        assistant='[data-message-author-role="assistant"]',
        content=".markdown",
    ),
    "gemini.google.com": DomSelectors(
        container=".conversation-container",
        user=".query-content",
        assistant=".response-container",
        content=".markdown",
    ),
    "chat.deepseek.com": DomSelectors(
        container=".message-item",
        user=".user-message",
        assistant=".assistant-message",
        content=".message-content",
    ),
    "claude.ai": DomSelectors(
        container='[data-testid="conversation-turn"]',
        user=".human-message",
        assistant=".assistant-message",
        content=".prose",
    ),
    "chat.qwen.ai": DomSelectors(
        container='[class*="chat-message"]',
        user='[class*="user"]',
        assistant='[class*="assistant"]',
        content='[class*="content"]',
    ),
    "kimi.moonshot.cn": DomSelectors(
        container='[class*="message-item"]',
        user='[class*="user"]',
        assistant='[class*="assistant"]',
        content='[class*="content"]',
    ),
    "poe.com": DomSelectors(
        container='[class*="Message_"]',
        user='[class*="human"]',
        assistant='[class*="bot"]',
        content='[class*="Markdown"]',
    ),
    "perplexity.ai": DomSelectors(
        container='[class*="prose"]',
        user='[class*="user"]',
        assistant='[class*="prose"]',
        content='[class*="prose"]',
    ),
}


def selectors_for(hostname: str) -> DomSelectors | None:
    """Look up the selector table entry for a hostname."""
    for suffix, selectors in SELECTOR_TABLE.items():
        if hostname_matches(hostname, suffix):
            return selectors
    return None


def element_text(element: Tag | None) -> str:
    if element is None:
        return ""
    return element.get_text("\n", strip=True)


class DomAdapter(ServiceAdapter):
    """Extracts visible turns from a document snapshot."""

    kind = ServiceKind.DOM

    def __init__(self, hostname: str, selectors: DomSelectors, **kwargs) -> None:
        super().__init__(**kwargs)
        self.hostnames = (hostname,)
        self.selectors = selectors

    @classmethod
    def for_hostname(cls, hostname: str, **kwargs) -> "DomAdapter | None":
        """Build the DOM adapter for hostname, or None without a table entry."""
        selectors = selectors_for(hostname)
        if selectors is None:
            return None
        return cls(hostname, selectors, **kwargs)

    def matches_url(self, url: str) -> bool:
        return False

    def extract(
        self,
        events: Sequence[DecodedEvent],
        request_body: str | bytes | None = None,
        url: str | None = None,
    ) -> list[CapturedMessage]:
        messages: list[CapturedMessage] = []
        for event in events:
            if isinstance(event.data, str):
                messages.extend(self.capture(event.data))
        return messages

    def capture(self, html: str) -> list[CapturedMessage]:
        """Extract every classified, non-empty turn from the document."""
        soup = BeautifulSoup(html, "html.parser")
        now = self.now_ms()
        messages: list[CapturedMessage] = []

        for container in soup.select(self.selectors.container):
            role, content = self._classify(container)
            if role is Role.UNKNOWN or not content.strip():
                continue
            messages.append(
                CapturedMessage(
                    role=role,
                    content=content.strip(),
                    source=Source.DOM,
                    timestamp=now,
                )
            )

        return messages

    def _classify(self, container: Tag) -> tuple[Role, str]:
        sel = self.selectors
        if container.select_one(sel.user) is not None:
            node = container.select_one(sel.content) or container.select_one(sel.user)
            return Role.USER, element_text(node)
        if container.select_one(sel.assistant) is not None:
            node = container.select_one(sel.content) or container.select_one(sel.assistant)
            return Role.ASSISTANT, element_text(node)
        # The container itself may carry the role marker
        if container.css.match(sel.user):
            return Role.USER, element_text(container.select_one(sel.content) or container)
        if container.css.match(sel.assistant):
            return Role.ASSISTANT, element_text(container.select_one(sel.content) or container)
        return Role.UNKNOWN, ""
