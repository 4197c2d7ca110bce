# =============================================================================
# Ask API: Grounded Financial Q&A Endpoint
# =============================================================================
#
# POST /ask runs the orchestrator graph
#   (load_history → assemble_context → generate → save_history)
# and maps the result to AskResponse.
#
# ERROR MAPPING:
#   ValidationError       → 422
#   DataIntegrityError    → 500
#   UpstreamServiceError  → 502
#   ValueError (missing API key or other configuration) → 503
# A history save failure is not an error: the answer comes back with
# history_saved=false and a warning.
#
# The handler only maps errors and shapes the response.
# =============================================================================

from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException

from ledger_qa.agents.orchestrator import Orchestrator, build_orchestrator
from ledger_qa.config import get_settings
from ledger_qa.errors import DataIntegrityError, UpstreamServiceError, ValidationError
from ledger_qa.models.requests import AskRequest
from ledger_qa.models.responses import AskResponse, HealthResponse, SourceDocument

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Question Answering"])


@lru_cache
def _shared_orchestrator() -> Orchestrator:
    return build_orchestrator(get_settings())


def get_orchestrator() -> Orchestrator:
    """
    FastAPI dependency returning the process-wide Orchestrator.

    Built on first use, so the app starts without API keys configured.
    Override in tests with:
        app.dependency_overrides[get_orchestrator] = lambda: fake
    """
    try:
        return _shared_orchestrator()
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(
            status_code=503,
            detail=f"Service configuration error: {e}",
        ) from e


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    """Liveness check; touches no external service."""
    config = get_settings()
    return HealthResponse(version=config.app_version, service=config.app_name)


# ---------------------------------------------------------------------------
# POST /ask
# ---------------------------------------------------------------------------


@router.post(
    "/ask",
    response_model=AskResponse,
    summary="Ask a question about the financial records",
    description=(
        "Retrieves the scope's most relevant data rows plus the full formula "
        "glossary and answers strictly from them. When the data is not "
        "there, the fixed refusal message is returned."
    ),
)
async def ask_endpoint(
    request: AskRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> AskResponse:
    logger.info(
        "Ask request: scope=%s, question='%s'",
        request.scope_id, request.question[:80],
    )

    try:
        result = await orchestrator.answer(request.question, request.scope_id)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except DataIntegrityError as e:
        logger.exception("Data integrity failure while answering")
        raise HTTPException(status_code=500, detail=str(e)) from e
    except UpstreamServiceError as e:
        logger.exception("Upstream failure while answering")
        raise HTTPException(
            status_code=502,
            detail=f"Upstream service error: {e}",
        ) from e

    return AskResponse(
        answer=result.answer,
        model=result.model,
        sources=[
            SourceDocument(
                source_table=d.source_table,
                source_id=d.source_id,
                content=d.content,
                similarity=d.similarity,
            )
            for d in result.documents
        ],
        formulas=result.kb_titles,
        history_saved=result.history_saved,
        warnings=result.warnings,
    )
