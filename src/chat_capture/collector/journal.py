"""Append-only JSONL journal of captured messages."""

import json
from collections.abc import Iterator
from pathlib import Path

from chat_capture.logging import get_logger
from chat_capture.models import CaptureRecord

logger = get_logger("collector.journal")


class CaptureJournal:
    """One JSON object per line, one line per persisted message.

    The journal is never truncated. Write failures are logged and swallowed:
    durable persistence must not block in-memory delivery to subscribers.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def append(self, records: list[CaptureRecord]) -> bool:
        """Append records as JSON lines.

        Returns:
            True if written, False if the write failed
        """
        if not records:
            return True
        lines = "".join(
            json.dumps(record.to_log_line(), ensure_ascii=False) + "\n" for record in records
        )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(lines)
        except OSError:
            logger.exception("Failed to write journal: path=%s count=%d", self.path, len(records))
            return False
        return True

    def read_lines(self) -> Iterator[dict]:
        """Iterate journal entries, skipping lines that are not JSON objects."""
        if not self.path.exists():
            return
        with open(self.path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(entry, dict):
                    yield entry
