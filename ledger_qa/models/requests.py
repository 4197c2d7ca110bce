# =============================================================================
# API Request Models: Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API. FastAPI uses
# them for request body validation (automatic 422 errors for invalid data)
# and for the OpenAPI docs at /docs.
# =============================================================================

from pydantic import BaseModel, ConfigDict, Field


class AskRequest(BaseModel):
    """
    Request body for POST /ask.

    Example:
        {
            "question": "What is our cash balance at the end of March?",
            "scope_id": "00000000-0000-0000-0000-000000000001"
        }
    """

    question: str = Field(
        ...,
        min_length=1,
        max_length=2000,
        description="Natural-language question about the financial records",
        examples=["What is our cash balance at the end of March?"],
    )

    # Only Documents tagged with this scope are searched, and the
    # conversation history is kept per scope.
    scope_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Scope (user) identifier",
        examples=["00000000-0000-0000-0000-000000000001"],
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "question": "What were total expenses in February?",
                    "scope_id": "00000000-0000-0000-0000-000000000001",
                },
            ]
        }
    )
