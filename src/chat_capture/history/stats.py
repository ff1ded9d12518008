"""Statistics over the capture journal."""

from collections import Counter
from dataclasses import dataclass, field

from chat_capture.collector.journal import CaptureJournal


@dataclass
class JournalStats:
    total: int = 0
    by_service: Counter = field(default_factory=Counter)
    by_role: Counter = field(default_factory=Counter)
    by_source: Counter = field(default_factory=Counter)
    conversations: int = 0


def journal_stats(journal: CaptureJournal) -> JournalStats:
    """Count persisted messages per service, role and source."""
    stats = JournalStats()
    conversations: set[tuple[str, str]] = set()
    for entry in journal.read_lines():
        service_id = entry.get("service_id", "unknown")
        stats.total += 1
        stats.by_service[service_id] += 1
        stats.by_role[entry.get("role", "unknown")] += 1
        stats.by_source[entry.get("source", "unknown")] += 1
        if entry.get("conversation_id"):
            conversations.add((service_id, entry["conversation_id"]))
    stats.conversations = len(conversations)
    return stats
