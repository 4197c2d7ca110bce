# =============================================================================
# Indexer: Source Tables → Documents
# =============================================================================
#
# For every row of every configured table: serialise to a Fact, embed it,
# and upsert one Document keyed by (source_table, source_id).
#
#   for table in tables (fixed order):
#       existing = store.existing_for(table)
#       for row in source.fetch_rows(table) (ascending id):
#           fact = serializer.serialize(table, row)
#           unchanged?  ──▶ skip (no embedding call, no write)
#           vector = embedder.embed(fact, source="table:id")
#           store.upsert(Document)
#
# STRATEGIES:
#   - "sequential" (default): one row at a time, run log fully deterministic.
#   - "bounded": rows within a table run concurrently, at most
#     `concurrency` in flight; tables are still processed strictly in order.
#
# DESIGN DECISION: Fail-fast. Any row failure (DataIntegrityError,
# ValidationError, UpstreamServiceError) aborts the run. In bounded mode the
# TaskGroup cancels the sibling rows and the first error is re-raised as-is.
# Documents already upserted stay; each upsert is its own transaction, so a
# cancelled row never leaves a partial Document behind.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from ledger_qa.errors import DataIntegrityError, first_error
from ledger_qa.services.document_store import (
    DocumentStore,
    IndexedDocument,
    StoredFingerprint,
)
from ledger_qa.services.embedder import Embedder
from ledger_qa.services.serializer import Serializer
from ledger_qa.services.source_store import SourceStore

if TYPE_CHECKING:
    from ledger_qa.config import Settings

logger = logging.getLogger(__name__)

IndexStrategy = Literal["sequential", "bounded"]

# Column holding the owning user's id. Profiles are the users themselves.
DEFAULT_SCOPE_COLUMN = "user_id"
SCOPE_COLUMNS: dict[str, str] = {"profiles": "id"}


@dataclass
class TableReport:
    table: str
    rows: int = 0
    upserted: int = 0
    unchanged: int = 0


@dataclass
class IndexReport:
    """Outcome of one indexing run, one entry per table in run order."""

    tables: list[TableReport] = field(default_factory=list)

    @property
    def rows(self) -> int:
        return sum(t.rows for t in self.tables)

    @property
    def upserted(self) -> int:
        return sum(t.upserted for t in self.tables)

    @property
    def unchanged(self) -> int:
        return sum(t.unchanged for t in self.tables)


class Indexer:
    """Drives Serializer + Embedder across the source tables."""

    def __init__(
        self,
        source: SourceStore,
        serializer: Serializer,
        embedder: Embedder,
        store: DocumentStore,
        tables: Sequence[str],
        *,
        strategy: IndexStrategy = "sequential",
        concurrency: int = 4,
    ) -> None:
        if strategy not in ("sequential", "bounded"):
            raise ValueError(f"Unknown index strategy: {strategy!r}")
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self._source = source
        self._serializer = serializer
        self._embedder = embedder
        self._store = store
        self._tables = tuple(tables)
        self._strategy = strategy
        self._concurrency = concurrency

    async def run(self) -> IndexReport:
        """
        Index every configured table, in order.

        Raises:
            DataIntegrityError: A row could not be serialised.
            ValidationError: A Fact was rejected by the embedder's input bound.
            UpstreamServiceError: Embedding or a store call failed.
        """
        self._serializer.clear_cache()
        report = IndexReport()
        logger.info(
            "Indexing %d tables (strategy=%s)", len(self._tables), self._strategy,
        )
        for table_name in self._tables:
            report.tables.append(await self._index_table(table_name))

        logger.info(
            "Indexing complete: %d rows, %d upserted, %d unchanged",
            report.rows, report.upserted, report.unchanged,
        )
        return report

    async def _index_table(self, table_name: str) -> TableReport:
        rows = await self._source.fetch_rows(table_name)
        existing = await self._store.existing_for(table_name)
        tally = TableReport(table=table_name, rows=len(rows))
        logger.info("Indexing %s (%d rows)", table_name, len(rows))

        if self._strategy == "sequential":
            for row in rows:
                await self._index_row(table_name, row, existing, tally)
        else:
            await self._index_bounded(table_name, rows, existing, tally)

        logger.info(
            "Finished %s: %d upserted, %d unchanged",
            table_name, tally.upserted, tally.unchanged,
        )
        return tally

    async def _index_bounded(
        self,
        table_name: str,
        rows: list[dict[str, Any]],
        existing: dict[str, StoredFingerprint],
        tally: TableReport,
    ) -> None:
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _guarded(row: dict[str, Any]) -> None:
            async with semaphore:
                await self._index_row(table_name, row, existing, tally)

        try:
            async with asyncio.TaskGroup() as tg:
                for row in rows:
                    tg.create_task(_guarded(row))
        except BaseExceptionGroup as group:
            # Siblings are cancelled by the TaskGroup; surface the first cause.
            raise first_error(group) from None

    async def _index_row(
        self,
        table_name: str,
        row: Mapping[str, Any],
        existing: dict[str, StoredFingerprint],
        tally: TableReport,
    ) -> None:
        row_id = row.get("id")
        if row_id is None:
            raise DataIntegrityError(table_name, None, "row has no id")
        source_id = str(row_id)
        scope_id = _scope_of(table_name, row)

        content = await self._serializer.serialize(table_name, row)
        if existing.get(source_id) == (scope_id, content):
            tally.unchanged += 1
            logger.debug("Unchanged %s:%s", table_name, source_id)
            return

        key = f"{table_name}:{source_id}"
        embedding = await self._embedder.embed(content, source=key)
        await self._store.upsert(IndexedDocument(
            scope_id=scope_id,
            source_table=table_name,
            source_id=source_id,
            content=content,
            embedding=embedding,
        ))
        tally.upserted += 1
        logger.info("Upserted %s", key)


def _scope_of(table_name: str, row: Mapping[str, Any]) -> str | None:
    value = row.get(SCOPE_COLUMNS.get(table_name, DEFAULT_SCOPE_COLUMN))
    return None if value is None else str(value)


def build_indexer(
    config: Settings,
    *,
    strategy: IndexStrategy | None = None,
) -> Indexer:
    """Wire an Indexer from settings (record store, embeddings, Document store)."""
    from ledger_qa.services.document_store import get_document_store
    from ledger_qa.services.source_store import build_source_store

    source = build_source_store(config)
    return Indexer(
        source,
        Serializer(source),
        Embedder.from_settings(config),
        get_document_store(config),
        config.index_tables,
        strategy=strategy or config.index_strategy,
        concurrency=config.index_concurrency,
    )
