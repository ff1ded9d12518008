"""Vendor adapters mapping decoded wire events to captured messages."""

from .base import AdapterRegistry, ServiceAdapter, ServiceKind, hostname_matches
from .chatgpt import ChatGPTAdapter
from .claude import ClaudeAdapter
from .deepseek import DeepSeekAdapter
from .dom import SELECTOR_TABLE, DomAdapter, DomSelectors, selectors_for

__all__ = [
    "AdapterRegistry",
    "ChatGPTAdapter",
    "ClaudeAdapter",
    "DeepSeekAdapter",
    "DomAdapter",
    "DomSelectors",
    "SELECTOR_TABLE",
    "ServiceAdapter",
    "ServiceKind",
    "hostname_matches",
    "select_adapter",
    "selectors_for",
]

# Register network adapters
AdapterRegistry.register(ChatGPTAdapter())
AdapterRegistry.register(ClaudeAdapter())
AdapterRegistry.register(DeepSeekAdapter())


def select_adapter(hostname: str) -> ServiceAdapter | None:
    """Pick the adapter for a page: a network adapter first, else DOM scraping."""
    adapter = AdapterRegistry.for_hostname(hostname)
    if adapter is not None:
        return adapter
    return DomAdapter.for_hostname(hostname)
