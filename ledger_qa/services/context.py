# =============================================================================
# Context Assembler: Glossary + Retrieved Rows → One Prompt Block
# =============================================================================
#
# OUTPUT FORMAT:
#   --- FINANCIAL FORMULAS ---
#   **Net Profit**: Revenue - Expenses
#   **Current Ratio**: Current Assets / Current Liabilities
#
#   --- USER DATA ROWS ---
#   Account Balance | account_name="Main Checking" | ...
#   ---
#   Transaction | date="2025-03-02" | ...
#
# The glossary is never filtered by relevance: formulas are tiny and the
# model needs them to derive ratios from raw rows. Rows are separated by a
# bare `---` line so the model can cite them individually.
#
# DESIGN DECISION: All-or-nothing. The KB read and the retrieval run
# concurrently in one TaskGroup; if either fails the other is cancelled and
# the caller gets the error, never a context with one section missing.
#
# TOKEN BUDGET:
# The block is measured with tiktoken. The glossary always goes in whole;
# Documents are appended in similarity order while they fit within
# `max_context_tokens` and the rest are dropped (WARNING logged). A Fact is
# never cut in half.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from ledger_qa.errors import first_error
from ledger_qa.services.document_store import MatchedDocument
from ledger_qa.services.embedder import TokenEncoding, get_encoder
from ledger_qa.services.retriever import Retriever
from ledger_qa.services.source_store import KBEntry, SourceStore

logger = logging.getLogger(__name__)

FORMULAS_HEADER = "--- FINANCIAL FORMULAS ---"
ROWS_HEADER = "--- USER DATA ROWS ---"
ROW_SEPARATOR = "\n---\n"


@dataclass
class AssembledContext:
    text: str
    kb_entries: list[KBEntry] = field(default_factory=list)
    documents: list[MatchedDocument] = field(default_factory=list)
    dropped: int = 0  # Documents left out by the token budget

    @property
    def is_empty(self) -> bool:
        """True when there is nothing to ground an answer on."""
        return not self.kb_entries and not self.documents


def format_kb(entries: list[KBEntry]) -> str:
    return "\n".join(f"**{e.title}**: {e.content}" for e in entries)


def format_context(kb_entries: list[KBEntry], documents: list[MatchedDocument]) -> str:
    """Render the two-section block."""
    return "\n".join([
        FORMULAS_HEADER,
        format_kb(kb_entries),
        "",
        ROWS_HEADER,
        ROW_SEPARATOR.join(d.content for d in documents),
    ])


class ContextAssembler:
    def __init__(
        self,
        source: SourceStore,
        retriever: Retriever,
        *,
        match_threshold: float = 0.0,
        max_context_tokens: int | None = None,
        encoding: TokenEncoding | None = None,
    ) -> None:
        self._source = source
        self._retriever = retriever
        self._match_threshold = match_threshold
        self._max_context_tokens = max_context_tokens
        self._encoding = encoding

    async def assemble(self, question: str, scope_id: str, count: int = 50) -> AssembledContext:
        """
        Build the context block for `question` within `scope_id`.

        Raises:
            ValidationError: Invalid question, scope or count.
            UpstreamServiceError: The KB read or the retrieval failed.
        """
        try:
            async with asyncio.TaskGroup() as tg:
                kb_task = tg.create_task(self._source.list_kb())
                docs_task = tg.create_task(self._retriever.retrieve(
                    question, scope_id, threshold=self._match_threshold, count=count,
                ))
        except BaseExceptionGroup as group:
            raise first_error(group) from None

        kb_entries = kb_task.result()
        documents, dropped = self._fit(kb_entries, docs_task.result())
        context = AssembledContext(
            text=format_context(kb_entries, documents),
            kb_entries=kb_entries,
            documents=documents,
            dropped=dropped,
        )
        logger.info(
            "Assembled context: %d formulas, %d rows (%d dropped)",
            len(kb_entries), len(documents), dropped,
        )
        return context

    def _fit(
        self,
        kb_entries: list[KBEntry],
        documents: list[MatchedDocument],
    ) -> tuple[list[MatchedDocument], int]:
        if self._max_context_tokens is None or not documents:
            return documents, 0

        encoding = self._encoding or get_encoder()
        used = len(encoding.encode(format_context(kb_entries, [])))
        kept: list[MatchedDocument] = []
        for doc in documents:
            # the separator is only paid from the second row on
            cost = len(encoding.encode(doc.content))
            if kept:
                cost += len(encoding.encode(ROW_SEPARATOR))
            if used + cost > self._max_context_tokens:
                break
            kept.append(doc)
            used += cost

        dropped = len(documents) - len(kept)
        if dropped:
            logger.warning(
                "Context budget of %d tokens reached: dropped %d of %d rows",
                self._max_context_tokens, dropped, len(documents),
            )
        return kept, dropped
