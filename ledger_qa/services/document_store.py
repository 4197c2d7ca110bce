# =============================================================================
# Document Store: Pluggable Vector Backend
# =============================================================================
#
# Persists one Document per source row and answers scoped similarity
# searches. Two implementations share one Protocol:
#
#   DocumentStore (Protocol)
#   ├── PgVectorDocumentStore  - `documents` table, pgvector cosine distance
#   │   ├── upsert()           - INSERT ... ON CONFLICT (source_table,
#   │   │                        source_id) DO UPDATE
#   │   └── match()            - WHERE scope_id = :scope ORDER BY distance, id
#   └── ChromaDocumentStore    - one collection, id "<table>:<source_id>"
#       ├── upsert()           - collection.upsert (idempotent on id)
#       └── match()            - where={"scope_id": ...}, cosine space
#
# MATCH CONTRACT (consumed by the retriever):
#   (scope_id, query_embedding, match_threshold, match_count)
#     → list[MatchedDocument], highest similarity first
#   similarity = 1 - cosine distance; match_threshold <= 0 disables the
#   filter. Ties are broken by a stable secondary key: Document id
#   (insertion order) for pgvector, the provenance key for Chroma, which
#   has no insertion order.
#
# DESIGN DECISION: existing_for(table) returns what is already stored for a
# table in one query, so the indexer can skip unchanged rows without
# re-embedding them. Embedding APIs are not bit-for-bit deterministic; not
# calling them is what keeps a re-run byte-identical.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_qa.db.models import Document
from ledger_qa.services.retry import call_with_retry

if TYPE_CHECKING:
    from ledger_qa.config import Settings

logger = logging.getLogger(__name__)

_TRANSIENT_DB_ERRORS: tuple[type[BaseException], ...] = (
    OperationalError,
    InterfaceError,
    ConnectionError,
)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IndexedDocument:
    """A Document ready to be upserted."""

    scope_id: str | None
    source_table: str
    source_id: str
    content: str
    embedding: list[float]

    @property
    def key(self) -> str:
        return f"{self.source_table}:{self.source_id}"


@dataclass(frozen=True)
class MatchedDocument:
    """A Document returned by similarity search."""

    source_table: str
    source_id: str
    content: str
    similarity: float  # 1 - cosine distance, higher = more relevant


# (scope_id, content) already stored for a source row
StoredFingerprint = tuple[str | None, str]


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class DocumentStore(Protocol):
    """Persistence and similarity search for Documents."""

    async def upsert(self, document: IndexedDocument) -> None:
        """Insert or overwrite the Document keyed by (source_table, source_id)."""
        ...

    async def match(
        self,
        scope_id: str,
        query_embedding: list[float],
        match_threshold: float,
        match_count: int,
    ) -> list[MatchedDocument]:
        """Scoped similarity search, highest similarity first."""
        ...

    async def existing_for(self, source_table: str) -> dict[str, StoredFingerprint]:
        """source_id → (scope_id, content) for every stored Document of a table."""
        ...

    async def count(self) -> int:
        ...


# ---------------------------------------------------------------------------
# Implementation 1: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


class PgVectorDocumentStore:
    """Documents in the Postgres `documents` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        timeout: float | None = 15.0,
        attempts: int = 3,
        base_delay: float = 0.5,
    ) -> None:
        self._session_factory = session_factory
        self._timeout = timeout
        self._attempts = attempts
        self._base_delay = base_delay

    async def upsert(self, document: IndexedDocument) -> None:
        """
        Upsert in its own transaction.

        A cancelled or failed attempt rolls back; retrying is safe because
        the statement is idempotent on the conflict key.
        """
        stmt = insert(Document).values(
            scope_id=document.scope_id,
            source_table=document.source_table,
            source_id=document.source_id,
            content=document.content,
            embedding=document.embedding,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Document.source_table, Document.source_id],
            set_={
                "scope_id": stmt.excluded.scope_id,
                "content": stmt.excluded.content,
                "embedding": stmt.excluded.embedding,
                "updated_at": func.now(),
            },
        )

        async def _write() -> None:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(stmt)

        await self._run(_write, source=document.key)

    async def match(
        self,
        scope_id: str,
        query_embedding: list[float],
        match_threshold: float,
        match_count: int,
    ) -> list[MatchedDocument]:
        distance = Document.embedding.cosine_distance(query_embedding)
        stmt = (
            select(
                Document.source_table,
                Document.source_id,
                Document.content,
                (1 - distance).label("similarity"),
            )
            .where(Document.scope_id == scope_id)
            .order_by(distance, Document.id)
            .limit(match_count)
        )
        if match_threshold > 0:
            stmt = stmt.where(1 - distance >= match_threshold)

        async def _query() -> list[MatchedDocument]:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [
                    MatchedDocument(
                        source_table=row.source_table,
                        source_id=row.source_id,
                        content=row.content,
                        similarity=float(row.similarity),
                    )
                    for row in result.all()
                ]

        matches = await self._run(_query, source=f"scope:{scope_id}")
        logger.debug(
            "pgvector match returned %d rows (scope=%s, threshold=%.3f, count=%d)",
            len(matches), scope_id, match_threshold, match_count,
        )
        return matches

    async def existing_for(self, source_table: str) -> dict[str, StoredFingerprint]:
        stmt = select(
            Document.source_id, Document.scope_id, Document.content,
        ).where(Document.source_table == source_table)

        async def _query() -> dict[str, StoredFingerprint]:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return {sid: (scope, content) for sid, scope, content in result.all()}

        return await self._run(_query, source=source_table)

    async def count(self) -> int:
        async def _query() -> int:
            async with self._session_factory() as session:
                result = await session.execute(select(func.count(Document.id)))
                return int(result.scalar_one())

        return await self._run(_query, source="documents")

    async def _run(self, operation, *, source: str):
        return await call_with_retry(
            operation,
            service="document store",
            attempts=self._attempts,
            base_delay=self._base_delay,
            timeout=self._timeout,
            transient=_TRANSIENT_DB_ERRORS,
            fatal=(SQLAlchemyError, OSError),
            source=source,
        )


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------


class ChromaDocumentStore:
    """
    Documents in a single ChromaDB collection.

    Chroma metadata values cannot be None, so a missing scope is stored as
    the empty string; such Documents never match a scoped search.

    The Chroma client is synchronous; calls run in a worker thread via
    asyncio.to_thread() so the event loop is never blocked.
    """

    def __init__(self, collection: Any, *, timeout: float | None = 15.0) -> None:
        self._collection = collection
        self._timeout = timeout

    @classmethod
    def from_settings(cls, config: Settings) -> ChromaDocumentStore:
        import chromadb

        if config.chroma_url:
            client = chromadb.HttpClient(host=config.chroma_url)
        else:
            client = chromadb.Client()
        collection = client.get_or_create_collection(
            name=config.chroma_collection,
            metadata={"hnsw:space": "cosine"},
        )
        return cls(collection, timeout=config.store_timeout_seconds)

    async def upsert(self, document: IndexedDocument) -> None:
        await self._run(
            lambda: self._collection.upsert(
                ids=[document.key],
                embeddings=[list(document.embedding)],
                documents=[document.content],
                metadatas=[{
                    "scope_id": document.scope_id or "",
                    "source_table": document.source_table,
                    "source_id": document.source_id,
                }],
            ),
            source=document.key,
        )

    async def match(
        self,
        scope_id: str,
        query_embedding: list[float],
        match_threshold: float,
        match_count: int,
    ) -> list[MatchedDocument]:
        def _query() -> list[MatchedDocument]:
            results = self._collection.query(
                query_embeddings=[list(query_embedding)],
                n_results=match_count,
                where={"scope_id": scope_id},
                include=["documents", "metadatas", "distances"],
            )
            if not results or not results["ids"] or not results["ids"][0]:
                return []

            matches = []
            for i, _ in enumerate(results["ids"][0]):
                metadata = results["metadatas"][0][i]
                matches.append(MatchedDocument(
                    source_table=metadata["source_table"],
                    source_id=metadata["source_id"],
                    content=results["documents"][0][i],
                    similarity=1.0 - float(results["distances"][0][i]),
                ))
            return matches

        matches = await self._run(_query, source=f"scope:{scope_id}")
        if match_threshold > 0:
            matches = [m for m in matches if m.similarity >= match_threshold]
        matches.sort(key=lambda m: (-m.similarity, m.source_table, m.source_id))
        return matches[:match_count]

    async def existing_for(self, source_table: str) -> dict[str, StoredFingerprint]:
        def _query() -> dict[str, StoredFingerprint]:
            results = self._collection.get(
                where={"source_table": source_table},
                include=["documents", "metadatas"],
            )
            existing: dict[str, StoredFingerprint] = {}
            for content, metadata in zip(
                results["documents"], results["metadatas"], strict=True,
            ):
                existing[metadata["source_id"]] = (
                    metadata.get("scope_id") or None, content,
                )
            return existing

        return await self._run(_query, source=source_table)

    async def count(self) -> int:
        return await self._run(self._collection.count, source="documents")

    async def _run(self, func_, *, source: str):
        from chromadb.errors import ChromaError

        return await call_with_retry(
            lambda: asyncio.to_thread(func_),
            service="document store",
            attempts=1,
            base_delay=0.0,
            timeout=self._timeout,
            fatal=(ChromaError, ValueError),
            source=source,
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def get_document_store(config: Settings) -> PgVectorDocumentStore | ChromaDocumentStore:
    """
    Return the configured Document store backend.

    - "pgvector" → PgVectorDocumentStore (default)
    - "chroma"   → ChromaDocumentStore
    """
    if config.document_store_type == "chroma":
        logger.info("Using ChromaDB document store (collection=%s)", config.chroma_collection)
        return ChromaDocumentStore.from_settings(config)

    from ledger_qa.db.engine import get_session_factory

    logger.info("Using pgvector document store")
    return PgVectorDocumentStore(
        get_session_factory(config),
        timeout=config.store_timeout_seconds,
        attempts=config.retry_attempts,
        base_delay=config.retry_base_delay_seconds,
    )
