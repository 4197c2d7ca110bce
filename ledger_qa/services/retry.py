# =============================================================================
# Deadlines & Retries for Network Calls
# =============================================================================
#
# Store calls (Postgres for records and Documents, Chroma) go through
# `call_with_retry`:
#
#   attempt 1 ──▶ fail (transient) ──▶ sleep base ──▶ attempt 2 ──▶ ...
#                 fail (fatal)     ──▶ UpstreamServiceError immediately
#                 deadline hit     ──▶ treated as transient
#
# After `attempts` transient failures the last error is wrapped in an
# UpstreamServiceError naming the service and (when known) the source row.
#
# DESIGN DECISION: The OpenAI and Anthropic SDKs retry on their own
# (max_retries, timeout set from RETRY_ATTEMPTS and the per-service
# timeouts), so model and embedding calls do not come through here; the
# database drivers have no retry of their own.
#
# asyncio.CancelledError is a BaseException and is never caught here;
# cancelling the caller cancels the in-flight attempt or the backoff sleep.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from ledger_qa.errors import UpstreamServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    service: str,
    attempts: int,
    base_delay: float,
    timeout: float | None,
    transient: tuple[type[BaseException], ...] = (),
    fatal: tuple[type[BaseException], ...] = (),
    source: str | None = None,
) -> T:
    """
    Run `operation` under a deadline, retrying transient failures.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt.
        service: Name used in logs and in the raised error ("document store", ...).
        attempts: Total attempts, including the first (>= 1).
        base_delay: Delay before the second attempt; doubles each time.
        timeout: Per-attempt deadline in seconds (None = no deadline).
        transient: Exception types worth retrying.
        fatal: Exception types mapped to UpstreamServiceError without retry.
        source: Optional provenance (e.g. "transactions:42") for the error.

    Raises:
        UpstreamServiceError: On a fatal error or when attempts are exhausted.
    """
    retryable = (TimeoutError, *transient)

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(operation(), timeout)
        except retryable as exc:
            if attempt >= attempts:
                raise UpstreamServiceError(
                    service,
                    f"failed after {attempts} attempt(s): {describe_error(exc)}",
                    source=source,
                ) from exc
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "%s call failed (attempt %d/%d, source=%s): %s; retrying in %.2fs",
                service, attempt, attempts, source, describe_error(exc), delay,
            )
            await asyncio.sleep(delay)
        except fatal as exc:
            raise UpstreamServiceError(
                service, describe_error(exc), source=source,
            ) from exc

    # attempts < 1 is a programming error, not an upstream failure
    raise ValueError(f"attempts must be >= 1, got {attempts}")


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, TimeoutError):
        return "deadline exceeded"
    return f"{type(exc).__name__}: {exc}"
