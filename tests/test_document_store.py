# =============================================================================
# Unit Tests: Document Stores
# =============================================================================
#
# ChromaDocumentStore runs against an in-process (ephemeral) Chroma client,
# one uniquely named collection per test. PgVectorDocumentStore is checked
# at the SQL level: statements are captured from a mocked session and
# compiled with the PostgreSQL dialect.
# =============================================================================

from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import chromadb
import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from ledger_qa.config import Settings
from ledger_qa.errors import UpstreamServiceError
from ledger_qa.services.document_store import (
    ChromaDocumentStore,
    IndexedDocument,
    PgVectorDocumentStore,
    get_document_store,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _doc(source_id: str, embedding: list[float], scope: str | None = "u1",
         table: str = "accounts", content: str | None = None) -> IndexedDocument:
    return IndexedDocument(
        scope_id=scope,
        source_table=table,
        source_id=source_id,
        content=content or f"{table.upper()} | id={source_id}",
        embedding=embedding,
    )


# ---------------------------------------------------------------------------
# Test: ChromaDB
# ---------------------------------------------------------------------------


@pytest.fixture
def chroma_store() -> ChromaDocumentStore:
    client = chromadb.EphemeralClient()
    collection = client.get_or_create_collection(
        name=f"test_{uuid.uuid4().hex}",
        metadata={"hnsw:space": "cosine"},
    )
    return ChromaDocumentStore(collection)


class TestChromaDocumentStore:
    def test_upsert_is_idempotent_on_key(self, chroma_store):
        _run(chroma_store.upsert(_doc("1", [1.0, 0.0, 0.0])))
        _run(chroma_store.upsert(_doc("1", [1.0, 0.0, 0.0])))
        assert _run(chroma_store.count()) == 1

    def test_upsert_overwrites_content(self, chroma_store):
        _run(chroma_store.upsert(_doc("1", [1.0, 0.0, 0.0], content="old")))
        _run(chroma_store.upsert(_doc("1", [0.0, 1.0, 0.0], content="new")))
        assert _run(chroma_store.existing_for("accounts")) == {"1": ("u1", "new")}
        assert _run(chroma_store.count()) == 1

    def test_match_scoped_and_ordered(self, chroma_store):
        for doc in [
            _doc("far", [0.0, 1.0, 0.0]),
            _doc("near", [1.0, 0.1, 0.0]),
            _doc("mid", [1.0, 1.0, 0.0]),
            _doc("foreign", [1.0, 0.0, 0.0], scope="u2"),
        ]:
            _run(chroma_store.upsert(doc))

        matches = _run(chroma_store.match("u1", [1.0, 0.0, 0.0], 0.0, 10))

        assert [m.source_id for m in matches] == ["near", "mid", "far"]
        sims = [m.similarity for m in matches]
        assert sims == sorted(sims, reverse=True)
        assert matches[0].similarity == pytest.approx(0.995, abs=1e-3)

    def test_match_threshold_and_count(self, chroma_store):
        for doc in [
            _doc("far", [0.0, 1.0, 0.0]),
            _doc("near", [1.0, 0.1, 0.0]),
            _doc("mid", [1.0, 1.0, 0.0]),
        ]:
            _run(chroma_store.upsert(doc))
        above = _run(chroma_store.match("u1", [1.0, 0.0, 0.0], 0.5, 10))
        assert [m.source_id for m in above] == ["near", "mid"]
        assert len(_run(chroma_store.match("u1", [1.0, 0.0, 0.0], 0.0, 1))) == 1

    def test_unscoped_documents_never_match(self, chroma_store):
        _run(chroma_store.upsert(_doc("1", [1.0, 0.0, 0.0], scope=None, table="financial_kb")))
        assert _run(chroma_store.match("u1", [1.0, 0.0, 0.0], 0.0, 10)) == []
        assert _run(chroma_store.existing_for("financial_kb")) == {
            "1": (None, "FINANCIAL_KB | id=1"),
        }

    def test_existing_for_filters_by_table(self, chroma_store):
        _run(chroma_store.upsert(_doc("1", [1.0, 0.0, 0.0], table="accounts")))
        _run(chroma_store.upsert(_doc("1", [0.0, 1.0, 0.0], table="vendors")))
        assert list(_run(chroma_store.existing_for("vendors"))) == ["1"]


# ---------------------------------------------------------------------------
# Test: pgvector (SQL shape)
# ---------------------------------------------------------------------------


def _session_factory(execute: AsyncMock) -> MagicMock:
    session = MagicMock()
    session.execute = execute
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=transaction)
    transaction.__aexit__ = AsyncMock(return_value=False)
    session.begin = MagicMock(return_value=transaction)
    return MagicMock(return_value=session)


def _sql(execute: AsyncMock) -> str:
    stmt = execute.await_args.args[0]
    return str(stmt.compile(dialect=postgresql.dialect()))


class TestPgVectorDocumentStore:
    def test_upsert_uses_on_conflict_update(self):
        execute = AsyncMock()
        store = PgVectorDocumentStore(_session_factory(execute), base_delay=0.0)
        _run(store.upsert(_doc("7", [0.1] * 8)))

        sql = _sql(execute)
        assert "INSERT INTO documents" in sql
        assert "ON CONFLICT (source_table, source_id) DO UPDATE" in sql
        assert "content = excluded.content" in sql
        assert "embedding = excluded.embedding" in sql

    def test_match_is_scoped_ordered_and_limited(self):
        result = MagicMock()
        result.all.return_value = [
            MagicMock(source_table="accounts", source_id="7", content="c", similarity=0.9),
        ]
        execute = AsyncMock(return_value=result)
        store = PgVectorDocumentStore(_session_factory(execute), base_delay=0.0)

        matches = _run(store.match("u1", [0.1] * 8, 0.0, 5))

        sql = _sql(execute)
        assert "documents.scope_id = " in sql
        assert "<=>" in sql
        assert "ORDER BY" in sql and "documents.id" in sql.split("ORDER BY")[1]
        assert "LIMIT" in sql
        assert ">=" not in sql
        assert matches[0].similarity == 0.9

    def test_threshold_adds_filter(self):
        result = MagicMock()
        result.all.return_value = []
        execute = AsyncMock(return_value=result)
        store = PgVectorDocumentStore(_session_factory(execute), base_delay=0.0)
        _run(store.match("u1", [0.1] * 8, 0.3, 5))
        assert ">=" in _sql(execute)

    def test_transient_failure_retried_then_wrapped(self):
        execute = AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("gone")))
        store = PgVectorDocumentStore(_session_factory(execute), attempts=2, base_delay=0.0)
        with pytest.raises(UpstreamServiceError, match="document store"):
            _run(store.count())
        assert execute.await_count == 2


class TestFactory:
    def test_chroma_selected(self):
        config = Settings(
            document_store_type="chroma",
            chroma_collection=f"factory_{uuid.uuid4().hex}",
            _env_file=None,
        )
        assert isinstance(get_document_store(config), ChromaDocumentStore)
