# =============================================================================
# Ledger Q&A Agent
# =============================================================================
# Answers natural-language questions about a business's financial records
# from retrieved facts only. Source rows are serialised into deterministic
# "Facts", embedded and stored as Documents; each question retrieves the
# scope's closest Documents plus the formula glossary, and the model must
# answer from that context or refuse.
#
# Package structure:
#   ledger_qa/
#   ├── agents/     → LangGraph orchestrator and the answer policy
#   ├── api/        → FastAPI route handlers (ask, health)
#   ├── db/         → Async engine, session factory and ORM models
#   ├── models/     → Pydantic V2 request/response schemas
#   ├── services/   → Serializer, embedder, indexer, retriever, context,
#   │                 history, LLM providers and stores
#   ├── workers/    → Celery indexing task and beat schedule
#   └── cli.py      → `ledger-qa` command (ask, index, count)
# =============================================================================
