# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs indexing in the background, either on demand
# (`index_documents.delay()`) or periodically through Celery beat:
#
#   ┌──────────┐     ┌───────┐     ┌──────────────┐     ┌───────┐
#   │ beat/API │────▶│ Redis │────▶│ Celery Worker│────▶│ Redis │
#   │(producer)│     │(broker)│    │  (Indexer)   │     │(result)│
#   └──────────┘     └───────┘     └──────────────┘     └───────┘
#      db 0 ──────────┘                                   └── db 1
#
# Start a worker with a beat scheduler embedded:
#   celery -A ledger_qa.workers.celery_app worker -B --loglevel=info
# =============================================================================

from celery import Celery

from ledger_qa.config import settings

celery_app = Celery(
    "ledger_qa.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON, not pickle: pickle can execute arbitrary code on load.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Acknowledge only after the run completes; a crashed worker's run is
    # re-queued. Safe because indexing is idempotent.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    # A full re-index embeds every changed row; allow it time.
    task_soft_time_limit=1800,
    task_time_limit=2100,

    # --- Results ---
    result_expires=3600,

    include=["ledger_qa.workers.tasks"],
)

# ---------------------------------------------------------------------------
# Periodic Indexing (Celery beat)
# ---------------------------------------------------------------------------
# Documents go stale when source rows change and nobody re-indexes. With
# INDEX_INTERVAL_SECONDS > 0, beat schedules a run at that interval.
# ---------------------------------------------------------------------------
if settings.index_interval_seconds > 0:
    celery_app.conf.beat_schedule = {
        "reindex-documents": {
            "task": "index_documents",
            "schedule": float(settings.index_interval_seconds),
        },
    }
