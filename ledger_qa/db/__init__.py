# =============================================================================
# Database Package
# =============================================================================
# Provides the async SQLAlchemy engine, session factory and ORM models.
#
# Key exports:
#   - get_session_factory: lazily created async_sessionmaker
#   - Base: SQLAlchemy declarative base for ORM models
#   - Document, FinancialKB: the vector table and the formula glossary
# =============================================================================
