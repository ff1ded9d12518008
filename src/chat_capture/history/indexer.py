"""Typesense index of captured messages."""

from typing import Any

import typesense
from typesense.exceptions import ObjectNotFound

from chat_capture.config import TypesenseConfig
from chat_capture.logging import get_logger
from chat_capture.models import CaptureEvent, CaptureRecord

logger = get_logger("indexer")

CAPTURES_SCHEMA: dict[str, Any] = {
    "name": "captures",
    "fields": [
        {"name": "id", "type": "string"},
        {"name": "service_id", "type": "string", "facet": True},
        {"name": "role", "type": "string", "facet": True},
        {"name": "source", "type": "string", "facet": True},
        {"name": "conversation_id", "type": "string", "facet": True},
        {"name": "url", "type": "string", "index": False, "optional": True},
        {"name": "content", "type": "string"},
        {"name": "captured_at", "type": "string", "index": False, "optional": True},
        {"name": "captured_ts", "type": "int64", "sort": True},
    ],
    "default_sorting_field": "captured_ts",
}


class TypesenseIndexer:
    """Indexes persisted captures in Typesense.

    Subscribed to the collector's event bus, it receives every merged batch
    once and upserts its records keyed by dedup key.
    """

    def __init__(self, config: TypesenseConfig, client: typesense.Client | None = None) -> None:
        self._config = config
        self._client = client or typesense.Client({
            "nodes": [{
                "host": config.host,
                "port": str(config.port),
                "protocol": config.protocol,
            }],
            "api_key": config.api_key,
            "connection_timeout_seconds": 5,
        })

    @property
    def client(self) -> typesense.Client:
        return self._client

    def ensure_collections(self) -> None:
        """Create the captures collection if it doesn't exist."""
        name = CAPTURES_SCHEMA["name"]
        try:
            self._client.collections[name].retrieve()
            logger.debug("Collection already exists: collection=%s", name)
        except ObjectNotFound:
            self._client.collections.create(CAPTURES_SCHEMA)
            logger.info("Created collection: collection=%s", name)

    def upsert_records(self, records: list[CaptureRecord]) -> dict[str, int]:
        """Index records with upsert semantics.

        Returns:
            Dict with counts: {"success": N, "failed": M}
        """
        if not records:
            return {"success": 0, "failed": 0}

        documents = [record.to_typesense_doc() for record in records]
        results = self._client.collections["captures"].documents.import_(
            documents,
            {"action": "upsert"},
        )

        success = 0
        failed = 0
        for result in results:
            if result.get("success", False):
                success += 1
            else:
                failed += 1
                logger.debug("Failed to index capture: error=%s", result.get("error", "unknown"))

        if failed > 0:
            logger.warning("Some captures failed to index: success=%d failed=%d", success, failed)

        return {"success": success, "failed": failed}

    def index_event(self, event: CaptureEvent) -> None:
        """Event bus subscriber."""
        counts = self.upsert_records(event.records)
        logger.debug(
            "Indexed captures: service=%s success=%d failed=%d",
            event.service_id,
            counts["success"],
            counts["failed"],
        )

    def search_messages(
        self,
        query: str,
        page: int = 1,
        per_page: int = 10,
        filters: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Search captured messages.

        Args:
            query: Search query string (use "*" for all)
            page: Page number (1-based)
            per_page: Number of results per page
            filters: dictionary of filters (service_id, role, source, conversation_id)

        Returns:
            Search results from Typesense
        """
        search_params: dict[str, Any] = {
            "q": query,
            "query_by": "content",
            "page": page,
            "per_page": per_page,
            "sort_by": "captured_ts:desc",
        }

        if filters:
            filter_parts = [
                f"{field}:={filters[field]}"
                for field in ("service_id", "role", "source", "conversation_id")
                if field in filters
            ]
            if filter_parts:
                search_params["filter_by"] = " && ".join(filter_parts)

        return self._client.collections["captures"].documents.search(search_params)
