# =============================================================================
# Unit Tests: Deadlines & Retries
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from ledger_qa.errors import UpstreamServiceError
from ledger_qa.services.retry import call_with_retry


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class Flaky(Exception):
    pass


class Broken(Exception):
    pass


def _call(operation, **kwargs):
    options = {
        "service": "record store",
        "attempts": 3,
        "base_delay": 0.5,
        "timeout": 1.0,
        "transient": (Flaky,),
        "fatal": (Broken,),
        "source": "transactions:42",
    }
    options.update(kwargs)
    return call_with_retry(operation, **options)


class TestCallWithRetry:
    def test_success_first_try(self):
        op = AsyncMock(return_value="ok")
        assert _run(_call(op)) == "ok"
        assert op.await_count == 1

    @patch("ledger_qa.services.retry.asyncio.sleep", new_callable=AsyncMock)
    def test_transient_then_success_with_backoff(self, sleep):
        op = AsyncMock(side_effect=[Flaky("429"), Flaky("503"), "ok"])
        assert _run(_call(op)) == "ok"
        assert op.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    @patch("ledger_qa.services.retry.asyncio.sleep", new_callable=AsyncMock)
    def test_exhaustion_names_source(self, sleep):
        op = AsyncMock(side_effect=Flaky("rate limited"))
        with pytest.raises(UpstreamServiceError) as exc_info:
            _run(_call(op))
        err = exc_info.value
        assert err.service == "record store"
        assert err.source == "transactions:42"
        assert "transactions:42" in str(err)
        assert "3 attempt" in str(err)
        assert isinstance(err.__cause__, Flaky)
        assert op.await_count == 3

    def test_fatal_is_not_retried(self):
        op = AsyncMock(side_effect=Broken("invalid api key"))
        with pytest.raises(UpstreamServiceError, match="invalid api key"):
            _run(_call(op))
        assert op.await_count == 1

    def test_unknown_errors_propagate_unchanged(self):
        op = AsyncMock(side_effect=KeyError("bug"))
        with pytest.raises(KeyError):
            _run(_call(op))

    def test_deadline_counts_as_transient(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(UpstreamServiceError, match="deadline exceeded"):
            _run(_call(slow, attempts=2, base_delay=0.0, timeout=0.01))

    def test_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            _run(_call(AsyncMock(return_value="ok"), attempts=0))


class TestCancellation:
    def test_cancel_during_backoff_sleep_propagates(self):
        op = AsyncMock(side_effect=Flaky("503"))

        async def scenario():
            task = asyncio.create_task(_call(op, base_delay=30.0))
            while op.await_count == 0:
                await asyncio.sleep(0)
            await asyncio.sleep(0.01)  # first attempt failed, now sleeping
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        _run(scenario())
        assert op.await_count == 1

    def test_cancel_during_attempt_is_not_retried(self):
        started = 0

        async def hanging():
            nonlocal started
            started += 1
            await asyncio.sleep(30)

        async def scenario():
            task = asyncio.create_task(_call(hanging, timeout=60.0))
            while started == 0:
                await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        _run(scenario())
        assert started == 1
