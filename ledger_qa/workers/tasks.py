# =============================================================================
# Celery Task Definitions: Document Indexing
# =============================================================================
#
# `index_documents` runs one Indexer pass: every configured table, every
# row, serialised → embedded → upserted.
#
# Celery workers are synchronous; the indexing code is async. Each task
# run drives it with asyncio.run() and disposes the database engine before
# the loop closes, because an asyncpg pool cannot outlive its event loop.
#
# RETRY STRATEGY:
# UpstreamServiceError (embeddings or a store unreachable after the
# in-process retries) is retried by Celery with exponential backoff
# (60s, 120s, 240s). DataIntegrityError and ValidationError mean the data
# itself is wrong; retrying cannot help, so they fail the task at once.
# =============================================================================

import asyncio
import logging

from ledger_qa.config import settings
from ledger_qa.errors import UpstreamServiceError
from ledger_qa.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _run_index(strategy: str | None) -> dict:
    from ledger_qa.db.engine import dispose_engine
    from ledger_qa.services.indexer import build_indexer

    try:
        report = await build_indexer(settings, strategy=strategy).run()
    finally:
        await dispose_engine()

    return {
        "status": "completed",
        "rows": report.rows,
        "upserted": report.upserted,
        "unchanged": report.unchanged,
        "tables": {
            t.table: {"rows": t.rows, "upserted": t.upserted, "unchanged": t.unchanged}
            for t in report.tables
        },
    }


@celery_app.task(
    bind=True,
    name="index_documents",
    max_retries=3,
    default_retry_delay=60,
)
def index_documents(self, strategy: str | None = None) -> dict:
    """
    Run one full indexing pass.

    Args:
        self: Celery task instance (bound task, provides self.request.id).
        strategy: "sequential" or "bounded"; defaults to INDEX_STRATEGY.

    Returns:
        dict summary of the run (totals and per-table counts).
    """
    task_id = self.request.id
    logger.info("[%s] Indexing started (strategy=%s)", task_id, strategy or settings.index_strategy)

    try:
        summary = asyncio.run(_run_index(strategy))
    except UpstreamServiceError as exc:
        countdown = self.default_retry_delay * (2 ** self.request.retries)
        logger.warning(
            "[%s] Indexing failed on an upstream service, retrying in %ds: %s",
            task_id, countdown, exc,
        )
        raise self.retry(exc=exc, countdown=countdown)
    except Exception:
        logger.exception("[%s] Indexing failed", task_id)
        raise

    logger.info("[%s] Indexing complete: %s", task_id, summary)
    return summary
