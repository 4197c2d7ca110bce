# =============================================================================
# Models Package: Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the API, kept separate from the ORM models
# in ledger_qa/db/models.py so embeddings never reach a response.
# =============================================================================
