# =============================================================================
# Workers Package: Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application and optional beat schedule
#   - tasks.py: index_documents (one full indexing pass)
#
# Indexing embeds every changed row through a network API; running it in a
# worker keeps the API responsive and lets beat refresh stale Documents.
# =============================================================================
