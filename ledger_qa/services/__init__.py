# =============================================================================
# Services Package: Business Logic
# =============================================================================
#   - serializer.py: source row → deterministic Fact text
#   - embedder.py: text → vector (OpenAI-compatible API, tiktoken bound)
#   - indexer.py: all tables → upserted Documents
#   - retriever.py: scoped similarity search
#   - context.py: formula glossary + retrieved rows → prompt block
#   - history.py: bounded per-scope chat history (JSON file, Redis)
#   - llm.py: chat model providers (OpenAI-compatible, Anthropic)
#   - source_store.py / document_store.py: record and vector stores
#   - retry.py: deadlines and backoff for every network call
# =============================================================================
