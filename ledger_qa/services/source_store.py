# =============================================================================
# Source Store: Read Access to the Business's Records
# =============================================================================
#
# The transactional tables (accounts, transactions, invoices, ...) are owned
# by another system. This module only reads them:
#
#   fetch_rows(table)              → every row, ascending id, columns in
#                                    ordinal order
#   fetch_one(table, id, columns)  → one referenced row (foreign-key lookup)
#   list_kb()                      → the financial_kb glossary
#
# DESIGN DECISION: Column order is fixed explicitly. The generic serializer
# renders fields in row order and that order feeds Fact determinism, so the
# column list is read from information_schema (ordinal_position) once per
# table and selected by name, instead of relying on whatever `SELECT *`
# happens to return.
#
# DESIGN DECISION: Table and column names come from configuration, not
# users, but are still checked against an identifier pattern before being
# placed into SQL.
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import column, select, table, text
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_qa.db.models import FinancialKB
from ledger_qa.errors import UpstreamServiceError
from ledger_qa.services.retry import call_with_retry

if TYPE_CHECKING:
    from ledger_qa.config import Settings

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Driver faults worth a second attempt (dropped connection, failover)
_TRANSIENT_DB_ERRORS: tuple[type[BaseException], ...] = (
    OperationalError,
    InterfaceError,
    ConnectionError,
)


@dataclass(frozen=True)
class KBEntry:
    """A glossary/formula definition."""

    title: str
    content: str


class SourceStore(Protocol):
    """Read-only access to source rows and the glossary."""

    async def fetch_rows(self, table_name: str) -> list[dict[str, Any]]:
        ...

    async def fetch_one(
        self,
        table_name: str,
        row_id: Any,
        columns: tuple[str, ...],
    ) -> dict[str, Any] | None:
        ...

    async def list_kb(self) -> list[KBEntry]:
        ...


class PgSourceStore:
    """SourceStore over the Postgres record store (SQLAlchemy async)."""

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
        self._columns: dict[str, list[str]] = {}

    async def fetch_rows(self, table_name: str) -> list[dict[str, Any]]:
        """Return every row of `table_name` ordered by id."""
        _check_identifier(table_name)
        columns = await self._column_names(table_name)

        async def _query() -> list[dict[str, Any]]:
            stmt = (
                select(*[column(c) for c in columns])
                .select_from(table(table_name))
                .order_by(column("id"))
            )
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [dict(row) for row in result.mappings().all()]

        rows = await self._run(_query, source=table_name)
        logger.info("Fetched %d rows from %s", len(rows), table_name)
        return rows

    async def fetch_one(
        self,
        table_name: str,
        row_id: Any,
        columns: tuple[str, ...],
    ) -> dict[str, Any] | None:
        """Return the requested columns of row `row_id`, or None if absent."""
        _check_identifier(table_name)
        for name in columns:
            _check_identifier(name)

        async def _query() -> dict[str, Any] | None:
            stmt = (
                select(*[column(c) for c in columns])
                .select_from(table(table_name))
                .where(column("id") == row_id)
            )
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                row = result.mappings().first()
                return dict(row) if row is not None else None

        return await self._run(_query, source=f"{table_name}:{row_id}")

    async def list_kb(self) -> list[KBEntry]:
        """Return the full glossary in insertion order."""

        async def _query() -> list[KBEntry]:
            stmt = select(FinancialKB.title, FinancialKB.content).order_by(FinancialKB.id)
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [KBEntry(title=t, content=c) for t, c in result.all()]

        return await self._run(_query, source="financial_kb")

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    async def _column_names(self, table_name: str) -> list[str]:
        if table_name in self._columns:
            return self._columns[table_name]

        async def _query() -> list[str]:
            stmt = text(
                "SELECT column_name FROM information_schema.columns "
                "WHERE table_schema = current_schema() AND table_name = :name "
                "ORDER BY ordinal_position"
            )
            async with self._session_factory() as session:
                result = await session.execute(stmt, {"name": table_name})
                return [r[0] for r in result.all()]

        names = await self._run(_query, source=table_name)
        if not names:
            raise UpstreamServiceError(
                "record store", f"table '{table_name}' does not exist",
            )
        self._columns[table_name] = names
        return names

    async def _run(self, operation, *, source: str):
        return await call_with_retry(
            operation,
            service="record store",
            attempts=self._attempts,
            base_delay=self._base_delay,
            timeout=self._timeout,
            transient=_TRANSIENT_DB_ERRORS,
            fatal=(SQLAlchemyError, OSError),
            source=source,
        )


def _check_identifier(name: str) -> None:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")


def build_source_store(config: Settings) -> PgSourceStore:
    """PgSourceStore on the shared session factory, with configured deadlines."""
    from ledger_qa.db.engine import get_session_factory

    return PgSourceStore(
        get_session_factory(config),
        timeout=config.store_timeout_seconds,
        attempts=config.retry_attempts,
        base_delay=config.retry_base_delay_seconds,
    )
