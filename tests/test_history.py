"""Tests for history tooling: search index, export import, stats and CLI."""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner
from typesense.exceptions import ObjectNotFound

from chat_capture.collector.ingest import IngestionCollector, Transport
from chat_capture.collector.journal import CaptureJournal
from chat_capture.collector.state import DedupIndex
from chat_capture.config import Config, StorageConfig, TypesenseConfig
from chat_capture.history.__main__ import cli
from chat_capture.history.importer import extract_messages, import_chatgpt_export
from chat_capture.history.indexer import CAPTURES_SCHEMA, TypesenseIndexer
from chat_capture.history.stats import journal_stats
from chat_capture.models import CapturedMessage, CaptureEvent, CaptureRecord, Role, Source

EXPORT = [
    {
        "id": "conv-1",
        "title": "Greetings",
        "create_time": 1700000000.0,
        "mapping": {
            "root": {"message": None, "children": ["sys"]},
            "sys": {
                "message": {
                    "id": "sys",
                    "author": {"role": "system"},
                    "content": {"parts": [""]},
                },
                "children": ["u1"],
            },
            "u1": {
                "message": {
                    "id": "u1",
                    "author": {"role": "user"},
                    "content": {"parts": ["Hello"]},
                    "create_time": 1700000010.0,
                },
                "children": ["a1"],
            },
            "a1": {
                "message": {
                    "id": "a1",
                    "author": {"role": "assistant"},
                    "content": {"parts": ["Hi ", "there"]},
                    "create_time": 1700000020.0,
                },
                "children": [],
            },
            "a0": {
                "message": {
                    "id": "a0",
                    "author": {"role": "assistant"},
                    "content": {"parts": ["   "]},
                    "create_time": 1700000015.0,
                },
                "children": [],
            },
        },
    },
    {"id": "conv-2", "title": "Empty", "mapping": {}},
]


@pytest.fixture
def journal_path(tmp_path: Path) -> Path:
    return tmp_path / "captured_chats.jsonl"


@pytest.fixture
def collector(journal_path: Path) -> IngestionCollector:
    return IngestionCollector(
        journal=CaptureJournal(journal_path),
        index=DedupIndex(":memory:"),
    )


@pytest.fixture
def export_file(tmp_path: Path) -> Path:
    path = tmp_path / "conversations.json"
    path.write_text(json.dumps(EXPORT))
    return path


@pytest.fixture
def mock_client() -> MagicMock:
    """Provide a mock Typesense client."""
    return MagicMock()


@pytest.fixture
def indexer(mock_client: MagicMock) -> TypesenseIndexer:
    """Provide a TypesenseIndexer with mocked client."""
    with patch("chat_capture.history.indexer.typesense.Client", return_value=mock_client):
        return TypesenseIndexer(TypesenseConfig(api_key="test-api-key"))


def record(content: str = "hi", key: str = "a.com:id:1") -> CaptureRecord:
    return CaptureRecord(
        service_id="a.com",
        role="user",
        content=content,
        source="api",
        captured_at="2026-01-01T00:00:00+00:00",
        dedup_key=key,
    )


class TestTypesenseIndexer:
    """Tests for TypesenseIndexer."""

    def test_creates_client_with_config(self) -> None:
        with patch("chat_capture.history.indexer.typesense.Client") as mock_client_class:
            TypesenseIndexer(TypesenseConfig(host="search", port=8109, api_key="k"))

            mock_client_class.assert_called_once_with({
                "nodes": [{"host": "search", "port": "8109", "protocol": "http"}],
                "api_key": "k",
                "connection_timeout_seconds": 5,
            })

    def test_creates_missing_collection(
        self, indexer: TypesenseIndexer, mock_client: MagicMock
    ) -> None:
        mock_client.collections.__getitem__.return_value.retrieve.side_effect = ObjectNotFound("captures")
        indexer.ensure_collections()
        mock_client.collections.create.assert_called_once_with(CAPTURES_SCHEMA)

    def test_existing_collection_kept(
        self, indexer: TypesenseIndexer, mock_client: MagicMock
    ) -> None:
        indexer.ensure_collections()
        mock_client.collections.create.assert_not_called()

    def test_upsert_counts(self, indexer: TypesenseIndexer, mock_client: MagicMock) -> None:
        documents = mock_client.collections.__getitem__.return_value.documents
        documents.import_.return_value = [{"success": True}, {"success": False, "error": "bad"}]

        result = indexer.upsert_records([record("a", "k1"), record("b", "k2")])

        assert result == {"success": 1, "failed": 1}
        docs, params = documents.import_.call_args.args
        assert [d["id"] for d in docs] == ["k1", "k2"]
        assert params == {"action": "upsert"}

    def test_upsert_empty(self, indexer: TypesenseIndexer, mock_client: MagicMock) -> None:
        assert indexer.upsert_records([]) == {"success": 0, "failed": 0}
        mock_client.collections.__getitem__.assert_not_called()

    def test_index_event(self, indexer: TypesenseIndexer, mock_client: MagicMock) -> None:
        documents = mock_client.collections.__getitem__.return_value.documents
        documents.import_.return_value = [{"success": True}]
        indexer.index_event(CaptureEvent(service_id="a.com", messages=[], records=[record()]))
        documents.import_.assert_called_once()

    def test_search_filters(self, indexer: TypesenseIndexer, mock_client: MagicMock) -> None:
        documents = mock_client.collections.__getitem__.return_value.documents
        indexer.search_messages("hello", per_page=5, filters={"service_id": "claude.ai", "role": "user"})

        params = documents.search.call_args.args[0]
        assert params["q"] == "hello"
        assert params["per_page"] == 5
        assert params["sort_by"] == "captured_ts:desc"
        assert params["filter_by"] == "service_id:=claude.ai && role:=user"


class TestExtractMessages:
    """Tests for ChatGPT export tree traversal."""

    def test_orders_by_create_time(self) -> None:
        messages = extract_messages(EXPORT[0])

        assert [(m.role, m.content) for m in messages] == [
            (Role.USER, "Hello"),
            (Role.ASSISTANT, "Hi \nthere"),
        ]
        assert all(m.source is Source.HISTORY for m in messages)
        assert messages[0].external_id == "u1"
        assert messages[0].conversation_id == "conv-1"
        assert messages[0].timestamp == 1700000010000

    def test_nodes_shared_between_roots_visited_once(self) -> None:
        conversation = {
            "id": "c",
            "mapping": {
                "r1": {"message": None, "children": ["u"]},
                "r2": {"message": None, "children": ["u"]},
                "u": {
                    "message": {"id": "u", "author": {"role": "user"}, "content": {"parts": ["q"]}},
                    "children": [],
                },
            },
        }
        assert len(extract_messages(conversation)) == 1

    def test_missing_mapping(self) -> None:
        assert extract_messages({"id": "c"}) == []

    def test_deep_chain(self) -> None:
        depth = 1500
        mapping: dict = {"root": {"message": None, "children": ["m0"]}}
        for i in range(depth):
            role = "user" if i % 2 == 0 else "assistant"
            mapping[f"m{i}"] = {
                "message": {
                    "id": f"m{i}",
                    "author": {"role": role},
                    "content": {"parts": [f"turn {i}"]},
                    "create_time": 1700000000.0 + i,
                },
                "children": [f"m{i + 1}"] if i + 1 < depth else [],
            }

        messages = extract_messages({"id": "long", "mapping": mapping})

        assert len(messages) == depth
        assert messages[0].content == "turn 0"
        assert messages[-1].content == f"turn {depth - 1}"

    def test_branches_keep_tree_order_on_equal_times(self) -> None:
        conversation = {
            "id": "c",
            "create_time": 1700000000.0,
            "mapping": {
                "root": {"message": None, "children": ["a", "b"]},
                "a": {
                    "message": {"id": "a", "author": {"role": "user"}, "content": {"parts": ["first"]}},
                    "children": ["a1"],
                },
                "a1": {
                    "message": {"id": "a1", "author": {"role": "assistant"}, "content": {"parts": ["second"]}},
                    "children": [],
                },
                "b": {
                    "message": {"id": "b", "author": {"role": "user"}, "content": {"parts": ["third"]}},
                    "children": [],
                },
            },
        }
        assert [m.content for m in extract_messages(conversation)] == ["first", "second", "third"]


class TestImportChatGPTExport:
    """Tests for import_chatgpt_export."""

    def test_imports_into_journal(
        self, collector: IngestionCollector, export_file: Path, journal_path: Path
    ) -> None:
        result = import_chatgpt_export(collector, export_file)

        assert result.conversations == 2
        assert result.messages == 2
        assert result.errors == []
        lines = [json.loads(line) for line in journal_path.read_text().splitlines()]
        assert [line["content"] for line in lines] == ["Hello", "Hi \nthere"]
        assert lines[0]["source"] == "history"
        assert lines[0]["service_id"] == "chatgpt.com"
        assert lines[0]["url"] == "https://chatgpt.com/c/conv-1"

    def test_reimport_counts_duplicates(
        self, collector: IngestionCollector, export_file: Path
    ) -> None:
        import_chatgpt_export(collector, export_file)
        result = import_chatgpt_export(collector, export_file)
        assert result.messages == 0
        assert result.duplicates == 2

    def test_live_capture_not_duplicated(
        self, collector: IngestionCollector, export_file: Path
    ) -> None:
        collector.ingest_payload(
            {
                "serviceId": "chatgpt.com",
                "messages": [{"role": "user", "content": "Hello", "externalId": "u1"}],
            },
            Transport.HTTP,
        )
        assert import_chatgpt_export(collector, export_file).duplicates == 1

    def test_bad_conversation_skipped(
        self, collector: IngestionCollector, tmp_path: Path, journal_path: Path
    ) -> None:
        broken = {
            "id": "conv-bad",
            "title": "Broken",
            "mapping": {
                "root": {"message": None, "children": ["u"]},
                "u": {
                    "message": {
                        "id": "u",
                        "author": {"role": "user"},
                        "content": {"parts": ["When?"]},
                        "create_time": "yesterday",
                    },
                    "children": [],
                },
            },
        }
        path = tmp_path / "conversations.json"
        path.write_text(json.dumps([broken, EXPORT[0]]))

        result = import_chatgpt_export(collector, path)

        assert result.conversations == 2
        assert result.messages == 2
        assert len(result.errors) == 1
        assert "Broken" in result.errors[0]
        assert len(journal_path.read_text().splitlines()) == 2

    def test_rejects_non_list(self, collector: IngestionCollector, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text('{"conversations": []}')
        with pytest.raises(ValueError):
            import_chatgpt_export(collector, path)


class TestJournalStats:
    def test_counts(self, collector: IngestionCollector, journal_path: Path) -> None:
        collector.capture_direct(
            "chatgpt.com",
            [
                CapturedMessage(Role.USER, "q", Source.DOM, 0, conversation_id="c1"),
                CapturedMessage(Role.ASSISTANT, "a", Source.DOM, 0, conversation_id="c1"),
            ],
        )
        collector.capture_direct("claude.ai", [CapturedMessage(Role.USER, "q", Source.API, 0)])

        stats = journal_stats(CaptureJournal(journal_path))

        assert stats.total == 3
        assert stats.by_service == {"chatgpt.com": 2, "claude.ai": 1}
        assert stats.by_role == {"user": 2, "assistant": 1}
        assert stats.by_source == {"dom": 2, "api": 1}
        assert stats.conversations == 1


class TestCli:
    """Tests for the history CLI."""

    @pytest.fixture
    def config(self, tmp_path: Path) -> Config:
        return Config(
            storage=StorageConfig(
                journal_path=tmp_path / "captured_chats.jsonl",
                state_db=tmp_path / "dedup.db",
            )
        )

    def run(self, config: Config, *args: str):
        with (
            patch("chat_capture.history.__main__.load_config", return_value=config),
            patch("chat_capture.history.__main__.setup_logging"),
        ):
            return CliRunner().invoke(cli, list(args))

    def test_import_then_stats(self, config: Config, export_file: Path) -> None:
        result = self.run(config, "import-chatgpt", str(export_file))
        assert result.exit_code == 0, result.output
        assert "Imported 2 messages from 2 conversations" in result.output

        result = self.run(config, "stats")
        assert result.exit_code == 0
        assert "Messages: 2" in result.output
        assert "chatgpt.com: 2" in result.output

    def test_import_invalid_file(self, config: Config, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("not json")
        result = self.run(config, "import-chatgpt", str(path))
        assert result.exit_code == 1

    def test_stats_empty_journal(self, config: Config) -> None:
        result = self.run(config, "stats")
        assert result.exit_code == 0
        assert "Messages: 0" in result.output

    def test_search(self, config: Config) -> None:
        hit = {
            "document": {
                "service_id": "claude.ai",
                "role": "assistant",
                "content": "Hello world",
                "source": "api",
                "conversation_id": "c1",
                "captured_ts": 1767225600,
            },
            "highlights": [{"field": "content", "snippet": "<mark>Hello</mark> world"}],
        }
        with patch("chat_capture.history.__main__.TypesenseIndexer") as mock_indexer_class:
            mock_indexer_class.return_value.search_messages.return_value = {
                "found": 1,
                "hits": [hit],
            }
            result = self.run(config, "search", "hello", "--service", "claude.ai")

        assert result.exit_code == 0, result.output
        assert "Found 1 messages" in result.output
        assert "claude.ai" in result.output
        mock_indexer_class.return_value.search_messages.assert_called_once_with(
            "hello", per_page=10, filters={"service_id": "claude.ai"}
        )

    def test_search_error(self, config: Config) -> None:
        with patch("chat_capture.history.__main__.TypesenseIndexer") as mock_indexer_class:
            mock_indexer_class.return_value.search_messages.side_effect = ConnectionError("down")
            result = self.run(config, "search", "hello")

        assert result.exit_code == 1
