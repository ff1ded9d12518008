"""The merge step every delivery transport converges on."""

import sqlite3
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from chat_capture.collector.events import EventBus
from chat_capture.collector.journal import CaptureJournal
from chat_capture.collector.state import DedupIndex
from chat_capture.logging import get_logger
from chat_capture.models import (
    CaptureBatch,
    CapturedMessage,
    CaptureEvent,
    CaptureRecord,
    Source,
    collector_key,
)

logger = get_logger("collector.ingest")


class Transport(str, Enum):
    """Collector endpoint a batch arrived through."""

    DIRECT = "direct"
    SCHEME = "scheme"
    HTTP = "http"
    BEACON = "beacon"

    @property
    def default_source(self) -> Source:
        """Source given to messages that arrive without one."""
        return {
            Transport.DIRECT: Source.DOM,
            Transport.SCHEME: Source.PROTOCOL,
            Transport.HTTP: Source.HTTP,
            Transport.BEACON: Source.BEACON,
        }[self]


@dataclass
class MergeResult:
    accepted: int = 0
    duplicates: int = 0


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def first_occurrences(keys: list[str]) -> list[bool]:
    """Flag the first occurrence of each key within one batch."""
    seen: set[str] = set()
    flags = []
    for key in keys:
        flags.append(key not in seen)
        seen.add(key)
    return flags


class IngestionCollector:
    """Deduplicates, persists and announces captured messages.

    The dedup check, index update and journal append for a batch happen under
    one lock, so two transports racing to deliver the same message persist
    it once.
    """

    def __init__(
        self,
        journal: CaptureJournal,
        index: DedupIndex,
        bus: EventBus | None = None,
        now: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.journal = journal
        self.index = index
        self.bus = bus or EventBus()
        self._now = now
        self._lock = threading.Lock()

    def ingest(self, batch: CaptureBatch, transport: Transport) -> MergeResult:
        """Merge one normalized batch into the journal.

        Args:
            batch: Batch to merge
            transport: Endpoint the batch arrived through (for logging)

        Returns:
            Counts of accepted and duplicate messages
        """
        result = MergeResult()
        accepted: list[CapturedMessage] = []
        records: list[CaptureRecord] = []

        with self._lock:
            keys = [collector_key(batch.service_id, m) for m in batch.messages]
            try:
                fresh = self.index.mark_batch(keys, batch.service_id)
            except sqlite3.Error:
                # Rolled back: persist the batch without cross-batch dedup
                logger.exception(
                    "Dedup index update failed, persisting unchecked: service=%s messages=%d",
                    batch.service_id,
                    len(keys),
                )
                fresh = first_occurrences(keys)

            for message, is_new in zip(batch.messages, fresh):
                if not is_new:
                    result.duplicates += 1
                    continue
                accepted.append(message)
                records.append(
                    CaptureRecord.from_message(message, batch.service_id, batch.url, self._now())
                )
            result.accepted = len(records)
            # Failures are logged by the journal; subscribers still get the event
            self.journal.append(records)

        if records:
            logger.info(
                "Merged batch: service=%s transport=%s accepted=%d duplicates=%d",
                batch.service_id,
                transport.value,
                result.accepted,
                result.duplicates,
            )
            self.bus.publish(
                CaptureEvent(service_id=batch.service_id, messages=accepted, records=records)
            )
        elif result.duplicates:
            logger.debug(
                "Dropped duplicate batch: service=%s transport=%s duplicates=%d",
                batch.service_id,
                transport.value,
                result.duplicates,
            )

        return result

    def ingest_payload(self, payload: Any, transport: Transport) -> MergeResult:
        """Normalize a decoded JSON body and merge it.

        Raises:
            PayloadError: If the payload is malformed; nothing is merged
        """
        batch = CaptureBatch.from_payload(payload, transport.default_source)
        return self.ingest(batch, transport)

    def capture_direct(
        self,
        service_id: str,
        messages: list[CapturedMessage],
        url: str | None = None,
    ) -> MergeResult:
        """Direct-call endpoint used by the surface the host owns."""
        batch = CaptureBatch(service_id=service_id, url=url, messages=list(messages))
        return self.ingest(batch, Transport.DIRECT)
