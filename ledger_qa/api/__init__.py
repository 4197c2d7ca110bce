# =============================================================================
# API Package: FastAPI Route Handlers
# =============================================================================
#   - ask.py: POST /ask (grounded Q&A) and GET /health
# =============================================================================
