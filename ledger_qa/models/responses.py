# =============================================================================
# API Response Models: Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API. Embeddings
# never leave the server: sources carry provenance, Fact text and score.
# =============================================================================

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response for GET /health: confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class SourceDocument(BaseModel):
    """One retrieved Document the answer could draw on."""

    source_table: str
    source_id: str
    content: str = Field(description="The Fact text as given to the model")
    similarity: float = Field(description="1 - cosine distance to the question")


class AskResponse(BaseModel):
    """Response for POST /ask."""

    answer: str
    model: str = Field(description="Model that produced the answer, 'none' for a direct refusal")
    sources: list[SourceDocument] = Field(default_factory=list)
    formulas: list[str] = Field(
        default_factory=list,
        description="Titles of the glossary entries included in the context",
    )
    history_saved: bool = True
    warnings: list[str] = Field(default_factory=list)
