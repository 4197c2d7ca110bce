# =============================================================================
# LangGraph Orchestrator: Question → Grounded Answer
# =============================================================================
#
# Wires history, context assembly, the chat model and history persistence
# into a LangGraph StateGraph:
#
#   START ──▶ load_history ──▶ assemble_context ──▶ generate ──▶ save_history ──▶ END
#
# MESSAGE ORDER sent to the model:
#   [*history turns, system: POLICY_PROMPT, system: context block, user: question]
#
# FAILURE SEMANTICS:
#   - load_history never fails (the store degrades to []).
#   - assemble_context / generate errors (ValidationError,
#     UpstreamServiceError) propagate out of answer() unchanged; the graph
#     stops there, so save_history never runs and nothing is persisted.
#   - save_history catches PersistenceError: the answer is still returned,
#     with history_saved=False and a warning for the caller to surface.
#
# DESIGN DECISION: Short-circuit refusal. With no history to discuss and a
# context holding neither formulas nor rows, the only policy-compliant
# reply is REFUSAL_MESSAGE; it is returned without a model call, so the
# model gets no chance to invent a number.
#
# DESIGN DECISION: One compiled graph per Orchestrator. Nodes close over
# the injected collaborators instead of reading module-level singletons,
# so tests build an Orchestrator from fakes.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from ledger_qa.agents.policy import POLICY_PROMPT, REFUSAL_MESSAGE
from ledger_qa.errors import PersistenceError, ValidationError
from ledger_qa.services.context import AssembledContext, ContextAssembler
from ledger_qa.services.document_store import MatchedDocument
from ledger_qa.services.history import ChatTurn, HistoryStore
from ledger_qa.services.llm import LLMProvider

if TYPE_CHECKING:
    from ledger_qa.config import Settings

logger = logging.getLogger(__name__)

# Reported as `model` when the refusal was produced without a model call
NO_MODEL = "none"


# ---------------------------------------------------------------------------
# State & Result
# ---------------------------------------------------------------------------


class AnswerState(TypedDict, total=False):
    """
    State that flows through the graph.

    total=False so nodes only return the keys they update.
    """

    # --- Input ---
    question: str
    scope_id: str

    # --- Intermediate ---
    history: list[ChatTurn]
    context: AssembledContext

    # --- Output ---
    answer: str
    model: str
    history_saved: bool
    warnings: list[str]


@dataclass
class AnswerResult:
    answer: str
    scope_id: str
    documents: list[MatchedDocument] = field(default_factory=list)
    kb_titles: list[str] = field(default_factory=list)
    model: str = NO_MODEL
    history_saved: bool = True
    warnings: list[str] = field(default_factory=list)


def build_messages(
    history: list[ChatTurn],
    context_text: str,
    question: str,
) -> list[dict[str, str]]:
    """History, then the policy, then the context, then the question."""
    return [
        *(turn.to_message() for turn in history),
        {"role": "system", "content": POLICY_PROMPT},
        {"role": "system", "content": context_text},
        {"role": "user", "content": question},
    ]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    def __init__(
        self,
        history_store: HistoryStore,
        assembler: ContextAssembler,
        llm: LLMProvider,
        *,
        match_count: int = 50,
        temperature: float = 0.0,
        max_tokens: int = 700,
    ) -> None:
        self._history_store = history_store
        self._assembler = assembler
        self._llm = llm
        self._match_count = match_count
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._graph = self._build_graph()

    def _build_graph(self):
        builder = StateGraph(AnswerState)
        builder.add_node("load_history", self._load_history)
        builder.add_node("assemble_context", self._assemble_context)
        builder.add_node("generate", self._generate)
        builder.add_node("save_history", self._save_history)

        builder.add_edge(START, "load_history")
        builder.add_edge("load_history", "assemble_context")
        builder.add_edge("assemble_context", "generate")
        builder.add_edge("generate", "save_history")
        builder.add_edge("save_history", END)
        return builder.compile()

    async def answer(self, question: str, scope_id: str) -> AnswerResult:
        """
        Answer one question for one scope and record the exchange.

        Raises:
            ValidationError: Empty question or scope.
            UpstreamServiceError: Retrieval, a store or the model failed
                (nothing is persisted).
        """
        question = (question or "").strip()
        if not question:
            raise ValidationError("Question must not be empty")
        if not scope_id:
            raise ValidationError("scope_id must not be empty")

        logger.info("Answering question for scope %s: '%s'", scope_id, question[:80])
        state = await self._graph.ainvoke({"question": question, "scope_id": scope_id})

        context: AssembledContext = state["context"]
        return AnswerResult(
            answer=state["answer"],
            scope_id=scope_id,
            documents=list(context.documents),
            kb_titles=[e.title for e in context.kb_entries],
            model=state["model"],
            history_saved=state.get("history_saved", False),
            warnings=list(state.get("warnings", [])),
        )

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def _load_history(self, state: AnswerState) -> dict:
        history = await self._history_store.load(state["scope_id"])
        logger.debug("Loaded %d history turns", len(history))
        return {"history": history}

    async def _assemble_context(self, state: AnswerState) -> dict:
        context = await self._assembler.assemble(
            state["question"], state["scope_id"], self._match_count,
        )
        return {"context": context}

    async def _generate(self, state: AnswerState) -> dict:
        history = state.get("history", [])
        context = state["context"]

        if not history and context.is_empty:
            logger.info("No history and empty context: returning refusal")
            return {"answer": REFUSAL_MESSAGE, "model": NO_MODEL}

        messages = build_messages(history, context.text, state["question"])
        response = await self._llm.complete(
            messages,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        logger.info(
            "Answer generated (model=%s, input_tokens=%d, output_tokens=%d)",
            response.model, response.input_tokens, response.output_tokens,
        )
        return {"answer": response.content, "model": response.model}

    async def _save_history(self, state: AnswerState) -> dict:
        # append to what is stored now, not to the copy loaded earlier
        exchange = [
            ChatTurn(role="user", content=state["question"]),
            ChatTurn(role="assistant", content=state["answer"]),
        ]
        try:
            await self._history_store.append(state["scope_id"], exchange)
        except PersistenceError as e:
            logger.warning("Answer produced but history not saved: %s", e)
            return {
                "history_saved": False,
                "warnings": [f"Conversation history was not saved: {e}"],
            }
        return {"history_saved": True, "warnings": []}


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def build_orchestrator(config: Settings) -> Orchestrator:
    """Wire an Orchestrator and its collaborators from settings."""
    from ledger_qa.services.document_store import get_document_store
    from ledger_qa.services.embedder import Embedder
    from ledger_qa.services.history import get_history_store
    from ledger_qa.services.llm import get_llm_provider
    from ledger_qa.services.retriever import Retriever
    from ledger_qa.services.source_store import build_source_store

    retriever = Retriever(Embedder.from_settings(config), get_document_store(config))
    assembler = ContextAssembler(
        build_source_store(config),
        retriever,
        match_threshold=config.retrieval_match_threshold,
        max_context_tokens=config.context_max_tokens,
    )
    return Orchestrator(
        get_history_store(config),
        assembler,
        get_llm_provider(config),
        match_count=config.retrieval_match_count,
        temperature=config.llm_temperature,
        max_tokens=config.llm_max_tokens,
    )
