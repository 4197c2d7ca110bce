# =============================================================================
# Embedding Service: Text → Fixed-Length Vector
# =============================================================================
#
# Wraps any OpenAI-compatible embeddings endpoint (OpenAI, DashScope, ...)
# behind one async call: `await embedder.embed(text, source="table:id")`.
#
# INPUT BOUND:
# text-embedding-3-small accepts at most 8,191 tokens. Inputs are measured
# with tiktoken (cl100k_base, the model's own encoding) and, when too long,
# handled by an explicit policy:
#   - "reject":   ValidationError naming the source row
#   - "truncate": cut to the bound on a character boundary, WARNING logged
#     with both token counts
# Nothing over the bound is ever sent to the API.
#
# FAILURES:
# The OpenAI SDK retries rate limits, 5xx and connection errors itself
# (max_retries = RETRY_ATTEMPTS - 1, timeout = REQUEST_TIMEOUT_SECONDS).
# Whatever it finally raises becomes an UpstreamServiceError naming the
# source row. A vector of the wrong length is also an UpstreamServiceError:
# the `documents.embedding` column has a fixed dimensionality.
#
# DESIGN DECISION: Small in-memory LRU cache keyed by the exact text. The
# indexer never embeds the same Fact twice in a run, but the query path
# often sees repeated questions.
# =============================================================================

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import TYPE_CHECKING, Literal, Protocol

import openai
import tiktoken

from ledger_qa.errors import UpstreamServiceError, ValidationError
from ledger_qa.services.retry import describe_error

if TYPE_CHECKING:
    from openai import AsyncOpenAI

    from ledger_qa.config import Settings

logger = logging.getLogger(__name__)


class TokenEncoding(Protocol):
    """The subset of tiktoken.Encoding used here."""

    def encode(self, text: str) -> list[int]: ...

    def decode(self, tokens: list[int]) -> str: ...


# ---------------------------------------------------------------------------
# Tiktoken Encoder: Cached Singleton
# ---------------------------------------------------------------------------
# Loading the BPE file is slow; load once per process, on first use.
# ---------------------------------------------------------------------------

_encoder: tiktoken.Encoding | None = None


def get_encoder() -> tiktoken.Encoding:
    """Return the cached cl100k_base encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


class Embedder:
    """Async embedding client with input bounds and a small cache."""

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        model: str,
        dimensions: int,
        max_input_tokens: int = 8191,
        overflow_policy: Literal["reject", "truncate"] = "reject",
        cache_size: int = 0,
        encoding: TokenEncoding | None = None,
    ) -> None:
        self._client = client
        self._model = model
        self._dimensions = dimensions
        self._max_input_tokens = max_input_tokens
        self._overflow_policy = overflow_policy
        self._cache_size = cache_size
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self._encoding = encoding

    @classmethod
    def from_settings(cls, config: Settings) -> Embedder:
        """
        Build an Embedder from settings.

        API key resolution order: OPENAI_API_KEY, then LLM_API_KEY (one
        shared key for an OpenAI-compatible provider serving both).
        """
        from openai import AsyncOpenAI

        resolved_key = config.openai_api_key or config.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {
            "api_key": resolved_key,
            "max_retries": config.retry_attempts - 1,
            "timeout": config.request_timeout_seconds,
        }
        if config.embedding_base_url:
            client_kwargs["base_url"] = config.embedding_base_url

        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            config.embedding_model,
            config.embedding_base_url or "https://api.openai.com/v1",
        )
        return cls(
            AsyncOpenAI(**client_kwargs),
            model=config.embedding_model,
            dimensions=config.embedding_dimensions,
            max_input_tokens=config.embedding_max_input_tokens,
            overflow_policy=config.embedding_overflow_policy,
            cache_size=config.embedding_cache_size,
        )

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def encoding(self) -> TokenEncoding:
        if self._encoding is None:
            self._encoding = get_encoder()
        return self._encoding

    async def embed(self, text: str, source: str | None = None) -> list[float]:
        """
        Embed one text.

        Args:
            text: UTF-8 text to embed.
            source: Provenance for logs and errors, e.g. "transactions:42".

        Raises:
            ValidationError: Empty input, or over-long input under "reject".
            UpstreamServiceError: API failure once the SDK stops retrying,
                or a vector of unexpected dimensionality.
        """
        if not text or not text.strip():
            raise ValidationError(f"Cannot embed empty text (source={source})")

        text = self._bound(text, source)

        cached = self._cache.get(text)
        if cached is not None:
            self._cache.move_to_end(text)
            return list(cached)

        create_kwargs: dict = {
            "model": self._model,
            "input": text,
            "encoding_format": "float",
        }
        if self._dimensions:
            create_kwargs["dimensions"] = self._dimensions

        try:
            response = await self._client.embeddings.create(**create_kwargs)
        except openai.APIError as e:
            raise UpstreamServiceError(
                "embeddings", describe_error(e), source=source
            ) from e

        if not response.data:
            raise UpstreamServiceError("embeddings", "empty response", source=source)
        vector = list(response.data[0].embedding)
        if len(vector) != self._dimensions:
            raise UpstreamServiceError(
                "embeddings",
                f"expected {self._dimensions} dimensions, got {len(vector)}",
                source=source,
            )

        logger.debug(
            "Embedded %s (%d dims, %d prompt tokens)",
            source or "text", len(vector),
            response.usage.prompt_tokens if response.usage else 0,
        )
        self._remember(text, vector)
        return vector

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _bound(self, text: str, source: str | None) -> str:
        tokens = self.encoding.encode(text)
        if len(tokens) <= self._max_input_tokens:
            return text

        if self._overflow_policy == "reject":
            raise ValidationError(
                f"Embedding input has {len(tokens)} tokens, limit is "
                f"{self._max_input_tokens} (source={source})"
            )

        logger.warning(
            "Truncating embedding input for %s from %d to %d tokens",
            source or "text", len(tokens), self._max_input_tokens,
        )
        return self._truncate(tokens, source)

    def _truncate(self, tokens: list[int], source: str | None) -> str:
        """
        Longest decodable prefix of `tokens` that still fits the bound.

        A token cut can land inside a multi-byte character; decoding that
        yields U+FFFD, and the replacement re-encodes to more tokens than
        it replaced. Step back one token at a time until neither happens.
        """
        end = self._max_input_tokens
        while end > 0:
            text = self.encoding.decode(tokens[:end])
            if (
                not text.endswith("\ufffd")
                and len(self.encoding.encode(text)) <= self._max_input_tokens
            ):
                return text
            end -= 1
        raise ValidationError(
            f"Embedding input cannot be cut to {self._max_input_tokens} tokens "
            f"(source={source})"
        )

    def _remember(self, text: str, vector: list[float]) -> None:
        if self._cache_size <= 0:
            return
        self._cache[text] = list(vector)
        self._cache.move_to_end(text)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
