# =============================================================================
# Database Models: SQLAlchemy ORM
# =============================================================================
#
# Only the tables this package owns are mapped here. The business's source
# tables (accounts, transactions, invoices, ...) belong to the transactional
# store and are read as plain rows by services/source_store.py.
#
# SCHEMA OVERVIEW:
#
# ┌──────────────────────────────────────┐   ┌─────────────────────────┐
# │  documents                           │   │  financial_kb           │
# ├──────────────────────────────────────┤   ├─────────────────────────┤
# │ id (PK, insertion order)             │   │ id (PK)                 │
# │ scope_id (text, nullable)            │   │ title (text, UNIQUE)    │
# │ source_table (text)  ┐ UNIQUE        │   │ content (text)          │
# │ source_id (text)     ┘               │   └─────────────────────────┘
# │ content (text)   - the serialised Fact│
# │ embedding (vector(N))                │
# │ updated_at                           │
# └──────────────────────────────────────┘
#
# DESIGN DECISIONS:
#
# 1. UNIQUE (source_table, source_id): exactly one Document per source row.
#    The indexer writes with INSERT ... ON CONFLICT DO UPDATE, never plain
#    INSERT, so re-indexing overwrites in place and keeps `id`.
#
# 2. `id` doubles as the stable tie-break when two Documents have the same
#    similarity to a query.
#
# 3. scope_id is nullable: glossary rows (financial_kb) carry no owner and
#    therefore never match a scoped similarity search. The glossary reaches
#    the prompt through the context assembler instead.
# =============================================================================

from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ledger_qa.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for the tables owned by ledger_qa."""

    pass


class Document(Base):
    """One serialised source row plus its embedding and provenance."""

    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint(
            "source_table", "source_id", name="uq_documents_source",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Owner of the source row (user id); partitions similarity search
    scope_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    source_table: Mapped[str] = mapped_column(String(100), nullable=False)
    source_id: Mapped[str] = mapped_column(String(64), nullable=False)

    content: Mapped[str] = mapped_column(Text, nullable=False)

    embedding: Mapped[list[float]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<Document(id={self.id}, source={self.source_table}:{self.source_id}, "
            f"scope={self.scope_id})>"
        )


class FinancialKB(Base):
    """A glossary/formula entry, always included in the prompt context."""

    __tablename__ = "financial_kb"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<FinancialKB(id={self.id}, title='{self.title}')>"


# HNSW index with cosine ops, matching the `1 - cosine_distance` similarity
# computed by PgVectorDocumentStore.match()
document_embedding_idx = Index(
    "idx_documents_embedding_hnsw",
    Document.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

# Similarity search always filters by scope first
document_scope_idx = Index("idx_documents_scope_id", Document.scope_id)
