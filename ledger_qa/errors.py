# =============================================================================
# Error Taxonomy
# =============================================================================
#
# Every component translates driver/SDK exceptions into one of these at its
# boundary, so callers (CLI, HTTP, Celery) only ever branch on four types:
#
#   ValidationError       - bad input (empty question, oversized embed input)
#   UpstreamServiceError  - embedding, model or store call failed
#   DataIntegrityError    - a required foreign-key lookup found nothing
#   PersistenceError      - chat history could not be read or written
#
# ValidationError, UpstreamServiceError and DataIntegrityError abort the
# current operation with nothing committed. PersistenceError on history load
# degrades to empty history; on save it becomes a warning next to the answer.
# =============================================================================

from __future__ import annotations


class LedgerQAError(Exception):
    """Base class for all errors raised by ledger_qa."""


class ValidationError(LedgerQAError):
    """Input rejected before any external call was made."""


class UpstreamServiceError(LedgerQAError):
    """An external service (embeddings, LLM, record or document store) failed."""

    def __init__(
        self,
        service: str,
        message: str,
        source: str | None = None,
    ) -> None:
        self.service = service
        self.source = source
        detail = f"{service}: {message}"
        if source:
            detail = f"{detail} (source={source})"
        super().__init__(detail)


class DataIntegrityError(LedgerQAError):
    """A source row could not be serialised because referenced data is missing."""

    def __init__(self, table: str, row_id: object, message: str) -> None:
        self.table = table
        self.row_id = row_id
        super().__init__(f"{table} row {row_id}: {message}")


class PersistenceError(LedgerQAError):
    """Chat history could not be read or written."""


def first_error(group: BaseExceptionGroup) -> BaseException:
    """The first leaf exception of a (possibly nested) TaskGroup failure."""
    exc: BaseException = group
    while isinstance(exc, BaseExceptionGroup):
        exc = exc.exceptions[0]
    return exc
