# =============================================================================
# Retriever: Scoped Similarity Search
# =============================================================================
#
# Embeds the query exactly once, then asks the Document store for the
# closest Documents belonging to one scope.
#
# DESIGN DECISION: match_threshold = 0.0 by default (filter disabled).
# Recall over precision: for financial answers, omitting a relevant row is
# worse than including a noisy one. The model, under the policy prompt,
# ignores rows it does not need.
#
# ORDERING: results are re-sorted here with a stable sort on descending
# similarity, so the non-increasing guarantee holds for any backend while
# the backend's own secondary key (insertion id / provenance) is kept for
# equal scores.
# =============================================================================

from __future__ import annotations

import logging

from ledger_qa.errors import ValidationError
from ledger_qa.services.document_store import DocumentStore, MatchedDocument
from ledger_qa.services.embedder import Embedder

logger = logging.getLogger(__name__)


class Retriever:
    def __init__(self, embedder: Embedder, store: DocumentStore) -> None:
        self._embedder = embedder
        self._store = store

    async def retrieve(
        self,
        query: str,
        scope_id: str,
        *,
        threshold: float = 0.0,
        count: int = 50,
    ) -> list[MatchedDocument]:
        """
        Return at most `count` Documents of `scope_id`, most similar first.

        Args:
            query: Natural-language query text.
            scope_id: Only Documents tagged with this scope are searched.
            threshold: Minimum similarity; <= 0 disables filtering.
            count: Maximum number of Documents returned.

        Raises:
            ValidationError: Empty query or scope, or count < 1.
            UpstreamServiceError: Embedding or the similarity search failed.
        """
        if not query or not query.strip():
            raise ValidationError("Query must not be empty")
        if not scope_id:
            raise ValidationError("scope_id must not be empty")
        if count < 1:
            raise ValidationError(f"count must be >= 1, got {count}")

        query_embedding = await self._embedder.embed(query, source="query")
        matches = await self._store.match(scope_id, query_embedding, threshold, count)

        if threshold > 0:
            matches = [m for m in matches if m.similarity >= threshold]
        matches = sorted(matches, key=lambda m: -m.similarity)[:count]

        logger.info(
            "Retrieved %d documents (scope=%s, threshold=%.2f, count=%d)",
            len(matches), scope_id, threshold, count,
        )
        return matches
