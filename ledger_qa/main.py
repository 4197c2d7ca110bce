# =============================================================================
# FastAPI Application
# =============================================================================
#
# Run locally:
#   uvicorn ledger_qa.main:app --reload
# or
#   python -m ledger_qa.main
# =============================================================================

import logging

from fastapi import FastAPI

from ledger_qa.api import ask
from ledger_qa.config import settings

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Answers questions about financial records strictly from retrieved data.",
)

app.include_router(ask.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("ledger_qa.main:app", host="0.0.0.0", port=8000)
