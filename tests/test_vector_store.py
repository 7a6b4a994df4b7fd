"""
Tests for execution/notes_rag/vector_store.py

Uses a mocked psycopg2 connection: no database required. Checks the SQL
parameters (tenant scoping), result mapping and failure ordering.
"""

import json
import uuid
from datetime import datetime, timezone
from unittest.mock import MagicMock, PropertyMock

import pytest

from execution.notes_rag.vector_store import (
    ChunkMetadata,
    SearchResult,
    VectorStore,
    VectorStoreConfig,
    distance_to_similarity,
)

CHAT_ID = "7b0c9e3a-2f44-4c1e-9a51-0d6f2b8e4c17"


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def store(mock_embedding_service, cursor):
    """VectorStore wired to a fake single connection."""
    s = VectorStore(mock_embedding_service, VectorStoreConfig(use_pooling=False, default_top_k=5))
    conn = MagicMock()
    conn.closed = False
    conn.cursor.return_value.__enter__.return_value = cursor
    s._conn = conn
    return s


def _executed(cursor, call=-1):
    args = cursor.execute.call_args_list[call].args
    return args[0], args[1] if len(args) > 1 else None


# ---------------------------------------------------------------------------
# ChunkMetadata / helpers
# ---------------------------------------------------------------------------

class TestChunkMetadata:

    def test_round_trip_camel_case(self):
        meta = ChunkMetadata(source="a.md", file_name="a.md", chunk_index=2, total_chunks=3, uploaded_at="t")
        assert meta.to_dict() == {
            "source": "a.md", "fileName": "a.md", "chunkIndex": 2, "totalChunks": 3, "uploadedAt": "t",
        }
        assert ChunkMetadata.from_dict(meta.to_dict()) == meta

    def test_legacy_file_name_only(self):
        meta = ChunkMetadata.from_dict({"fileName": "old.md", "chunkIndex": "4"})
        assert meta.source == "old.md"
        assert meta.label == "old.md"
        assert meta.chunk_index == 4

    def test_unparseable_index(self):
        assert ChunkMetadata.from_dict({"chunkIndex": "first"}).chunk_index is None

    def test_missing_metadata(self):
        meta = ChunkMetadata.from_dict(None)
        assert meta.label == "unknown"
        assert meta.to_dict() == {}


class TestDistanceToSimilarity:

    @pytest.mark.parametrize("distance,expected", [
        (0.0, 1.0), (1.0, 0.5), (2.0, 0.0), (0.4, 0.8), (-0.01, 1.0), (2.5, 0.0),
    ])
    def test_mapping(self, distance, expected):
        assert distance_to_similarity(distance) == pytest.approx(expected)


# ---------------------------------------------------------------------------
# Config / construction
# ---------------------------------------------------------------------------

class TestVectorStoreConfig:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("SEARCH_TOP_K", raising=False)
        cfg = VectorStoreConfig()
        assert cfg.table_name == "note_chunks"
        assert cfg.embedding_dimensions == 1536
        assert cfg.default_top_k == 5

    def test_connection_string_from_env(self, monkeypatch, mock_embedding_service):
        monkeypatch.setenv("POSTGRES_URL", "postgresql://db.example/notes")
        s = VectorStore(mock_embedding_service)
        assert s._connection_string == "postgresql://db.example/notes"


# ---------------------------------------------------------------------------
# insert
# ---------------------------------------------------------------------------

class TestInsert:

    def test_insert_returns_id_and_scopes_tenant(self, store, cursor):
        new_id = uuid.uuid4()
        cursor.fetchone.return_value = {"id": new_id}
        meta = ChunkMetadata(source="notes.md", file_name="notes.md", chunk_index=0, total_chunks=1)

        chunk_id = store.insert("Some content", "user_1", meta)

        assert chunk_id == str(new_id)
        sql, params = _executed(cursor)
        assert "INSERT INTO note_chunks" in sql
        assert params[0] == "user_1"
        assert params[1] == "Some content"
        assert len(params[2]) == 1536
        assert json.loads(params[3])["chunkIndex"] == 0
        store._conn.commit.assert_called()

    def test_insert_accepts_dict_metadata(self, store, cursor):
        cursor.fetchone.return_value = {"id": "abc"}
        store.insert("text", "user_1", {"source": "x.md", "chunkIndex": 1})
        _, params = _executed(cursor)
        assert json.loads(params[3]) == {"source": "x.md", "chunkIndex": 1}

    def test_embedding_failure_writes_nothing(self, store, cursor):
        from execution.notes_rag.embeddings import EmbeddingError
        store.embeddings = MagicMock()
        store.embeddings.embed.side_effect = EmbeddingError("Failed to generate embedding")

        with pytest.raises(EmbeddingError):
            store.insert("text", "user_1", ChunkMetadata(source="x.md"))
        cursor.execute.assert_not_called()

    @pytest.mark.parametrize("content", ["", "   \n"])
    def test_empty_content_rejected(self, store, cursor, content):
        with pytest.raises(ValueError):
            store.insert(content, "user_1", ChunkMetadata(source="x.md"))
        cursor.execute.assert_not_called()

    def test_missing_tenant_rejected(self, store):
        with pytest.raises(ValueError):
            store.insert("text", "", ChunkMetadata(source="x.md"))


# ---------------------------------------------------------------------------
# search
# ---------------------------------------------------------------------------

class TestSearch:

    def test_search_maps_rows(self, store, cursor):
        cursor.fetchall.return_value = [
            {"id": "c1", "content": "alpha", "metadata": {"source": "a.md", "chunkIndex": 0}, "distance": 0.2},
            {"id": "c2", "content": "beta", "metadata": {"fileName": "b.md", "chunkIndex": "3"}, "distance": 1.0},
        ]

        results = store.search("alpha", tenant_id="user_1")

        assert [r.chunk_id for r in results] == ["c1", "c2"]
        assert results[0].score == pytest.approx(0.9)
        assert results[1].score == pytest.approx(0.5)
        assert results[1].metadata.label == "b.md"
        assert results[1].metadata.chunk_index == 3
        assert all(isinstance(r, SearchResult) for r in results)

    def test_search_is_tenant_scoped(self, store, cursor):
        cursor.fetchall.return_value = []
        store.search("q", top_k=3, tenant_id="user_1")

        sql, params = _executed(cursor)
        assert "tenant_id = %s" in sql
        assert "ORDER BY distance ASC, seq ASC" in sql
        assert params[1:] == ["user_1", 3]
        assert len(params[0]) == 1536

    def test_search_default_top_k(self, store, cursor):
        cursor.fetchall.return_value = []
        store.search("q", tenant_id="user_1")
        _, params = _executed(cursor)
        assert params[-1] == 5

    def test_search_embeds_as_query(self, store, cursor, mock_embedding_service):
        cursor.fetchall.return_value = []
        store.search("what about budgets", tenant_id="user_1")
        assert mock_embedding_service.calls[-1] == ("query", "what about budgets")


# ---------------------------------------------------------------------------
# delete / listing
# ---------------------------------------------------------------------------

class TestSources:

    def test_delete_by_source_returns_rowcount(self, store, cursor):
        cursor.rowcount = 3
        assert store.delete_by_source("notes.md", "user_1") == 3
        sql, params = _executed(cursor)
        assert "DELETE FROM note_chunks" in sql
        assert params == ("user_1", "notes.md")

    def test_delete_nothing_matched(self, store, cursor):
        cursor.rowcount = 0
        assert store.delete_by_source("missing.md", "user_1") == 0

    def test_delete_twice_is_idempotent(self, store, cursor):
        type(cursor).rowcount = PropertyMock(side_effect=[2, 0])
        assert store.delete_by_source("notes.md", "user_1") == 2
        assert store.delete_by_source("notes.md", "user_1") == 0
        sql, params = _executed(cursor)
        assert "tenant_id = %s" in sql
        assert params == ("user_1", "notes.md")

    def test_delete_requires_tenant(self, store, cursor):
        with pytest.raises(ValueError):
            store.delete_by_source("notes.md", "")
        cursor.execute.assert_not_called()

    def test_list_sources(self, store, cursor):
        created = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        cursor.fetchall.return_value = [{
            "source": "notes.md", "file_name": None, "chunk_count": 2,
            "first_uploaded": created, "last_updated": created, "chunk_ids": ["c1", "c2"],
        }]

        rows = store.list_sources("user_1")

        assert rows == [{
            "source": "notes.md",
            "file_name": "notes.md",
            "chunk_count": 2,
            "first_uploaded": created.isoformat(),
            "last_updated": created.isoformat(),
            "chunk_ids": ["c1", "c2"],
        }]
        _, params = _executed(cursor)
        assert params == ("user_1",)

    def test_get_source_chunks_empty_list_skips_query(self, store, cursor):
        assert store.get_source_chunks("user_1", []) == []
        cursor.execute.assert_not_called()

    def test_get_source_chunks(self, store, cursor):
        cursor.fetchall.return_value = [
            {"id": "c1", "content": "x", "metadata": {"source": "a.md", "chunkIndex": 0}},
        ]
        chunks = store.get_source_chunks("user_1", ["a.md", "a"])
        assert chunks[0]["metadata"].label == "a.md"
        _, params = _executed(cursor)
        assert params == ("user_1", ["a.md", "a"])


# ---------------------------------------------------------------------------
# Chats
# ---------------------------------------------------------------------------

class TestChats:

    def test_get_chat_not_owned(self, store, cursor):
        cursor.fetchone.return_value = None
        assert store.get_chat(CHAT_ID, "user_2") is None
        _, params = _executed(cursor)
        assert params == (CHAT_ID, "user_2")

    def test_add_message_invalid_role(self, store, cursor):
        with pytest.raises(ValueError):
            store.add_message(CHAT_ID, "user_1", "tool", "x")
        cursor.execute.assert_not_called()

    def test_add_message_to_foreign_chat(self, store, cursor):
        cursor.fetchone.return_value = None
        assert store.add_message(CHAT_ID, "user_2", "user", "hi") is None
        assert cursor.execute.call_count == 1

    def test_add_message_serializes_sources(self, store, cursor):
        created = datetime(2024, 5, 1, tzinfo=timezone.utc)
        sources = [{"name": "a.md", "relevance": 0.9, "chunkIds": ["c1"]}]
        cursor.fetchone.return_value = {
            "id": "m1", "chat_id": CHAT_ID, "role": "assistant",
            "content": "answer", "sources": sources, "created_at": created,
        }

        message = store.add_message(CHAT_ID, "user_1", "assistant", "answer", sources=sources)

        assert message["sources"] == sources
        assert message["created_at"] == created.isoformat()
        _, params = _executed(cursor, 0)
        assert json.loads(params[2]) == sources
        assert params[3:] == (CHAT_ID, "user_1")

    def test_delete_chat(self, store, cursor):
        cursor.rowcount = 1
        assert store.delete_chat(CHAT_ID, "user_1") is True
        cursor.rowcount = 0
        assert store.delete_chat(CHAT_ID, "user_1") is False

    def test_malformed_chat_id_never_reaches_sql(self, store, cursor):
        assert store.get_chat("abc", "user_1") is None
        assert store.delete_chat("abc", "user_1") is False
        assert store.add_message("abc", "user_1", "user", "hi") is None
        assert store.get_messages("abc", "user_1") == []
        cursor.execute.assert_not_called()


# ---------------------------------------------------------------------------
# API keys / audit
# ---------------------------------------------------------------------------

class TestApiKeys:

    def test_create_api_key_stores_hash_only(self, store, cursor):
        raw = store.create_api_key("user_1", name="cli")
        assert raw.startswith("nrag_")
        _, params = _executed(cursor)
        assert raw not in params
        assert params[1:] == ("user_1", "cli")

    def test_validate_api_key(self, store, cursor):
        cursor.fetchone.return_value = {"tenant_id": "user_1", "name": "cli"}
        assert store.validate_api_key("nrag_x") == {"tenant_id": "user_1", "name": "cli"}

    def test_validate_unknown_key(self, store, cursor):
        cursor.fetchone.return_value = None
        assert store.validate_api_key("nrag_x") is None

    def test_audit_failure_is_swallowed(self, store, cursor):
        cursor.execute.side_effect = RuntimeError("audit table missing")
        store.log_audit("user_1", "upload", resource="a.md")
