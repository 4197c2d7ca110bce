# =============================================================================
# Chat History: Bounded Per-Scope Conversation Log
# =============================================================================
#
# CONTRACT:
#   load(scope_id)         → the last `limit` turns, oldest first; [] when
#                            nothing is stored or the stored state is
#                            unreadable (never raises)
#   save(scope_id, turns)  → replace the scope's history with the last
#                            `limit` of `turns`; PersistenceError on failure
#   append(scope_id, turns)→ add `turns` to what is stored now, keep the
#                            last `limit`; PersistenceError on failure
#
# The orchestrator persists through append(): it never writes back a list
# it read earlier, so two exchanges for one scope running at once both
# land.
#
# BACKENDS:
#   JsonFileHistoryStore - one JSON object {scope_id: [{role, content}]}
#       in a single file. Every write re-reads the file under an
#       asyncio.Lock, changes one scope and goes through temp file +
#       os.replace, so readers never see a torn file. Two *processes*
#       writing at once can still lose an update; use Redis for that.
#   RedisHistoryStore - one Redis list per scope. append() is RPUSH +
#       LTRIM inside MULTI/EXEC: an atomic per-key update, no
#       read-modify-write at all.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol

from ledger_qa.errors import PersistenceError

if TYPE_CHECKING:
    from ledger_qa.config import Settings

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant"]
_ROLES = ("user", "assistant")


@dataclass(frozen=True)
class ChatTurn:
    role: Role
    content: str

    def to_message(self) -> dict[str, str]:
        return asdict(self)


class HistoryStore(Protocol):
    async def load(self, scope_id: str) -> list[ChatTurn]:
        ...

    async def save(self, scope_id: str, turns: list[ChatTurn]) -> None:
        ...

    async def append(self, scope_id: str, turns: list[ChatTurn]) -> None:
        ...


def _parse_turns(raw: Any) -> list[ChatTurn]:
    """Validate a stored list of {role, content} objects."""
    if not isinstance(raw, list):
        raise ValueError(f"expected a list of turns, got {type(raw).__name__}")
    turns = []
    for item in raw:
        if (
            not isinstance(item, dict)
            or item.get("role") not in _ROLES
            or not isinstance(item.get("content"), str)
        ):
            raise ValueError(f"malformed turn: {item!r}")
        turns.append(ChatTurn(role=item["role"], content=item["content"]))
    return turns


# ---------------------------------------------------------------------------
# Implementation 1: JSON file
# ---------------------------------------------------------------------------


class JsonFileHistoryStore:
    def __init__(self, path: str | os.PathLike[str], limit: int = 10) -> None:
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        self._path = Path(path)
        self._limit = limit
        self._lock = asyncio.Lock()

    async def load(self, scope_id: str) -> list[ChatTurn]:
        try:
            state = await asyncio.to_thread(self._read_state)
            turns = _parse_turns(state.get(scope_id, []))
        except (OSError, ValueError) as e:
            logger.warning(
                "Chat history unreadable (%s), continuing without it: %s",
                self._path, e,
            )
            return []
        return turns[-self._limit:]

    async def save(self, scope_id: str, turns: list[ChatTurn]) -> None:
        stored = await self._update(scope_id, lambda _current: list(turns))
        logger.info("Saved %d turns for scope %s", stored, scope_id)

    async def append(self, scope_id: str, turns: list[ChatTurn]) -> None:
        stored = await self._update(scope_id, lambda current: [*current, *turns])
        logger.info("Appended %d turns for scope %s (%d kept)", len(turns), scope_id, stored)

    async def _update(
        self,
        scope_id: str,
        change: Callable[[list[ChatTurn]], list[ChatTurn]],
    ) -> int:
        async with self._lock:
            try:
                return await asyncio.to_thread(self._write_scope, scope_id, change)
            except (OSError, TypeError, ValueError) as e:
                raise PersistenceError(
                    f"Could not save chat history to {self._path}: {e}"
                ) from e

    def _read_state(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        # json.JSONDecodeError is a ValueError
        state = json.loads(self._path.read_text(encoding="utf-8"))
        if not isinstance(state, dict):
            raise ValueError("history file does not hold a JSON object")
        return state

    def _write_scope(
        self,
        scope_id: str,
        change: Callable[[list[ChatTurn]], list[ChatTurn]],
    ) -> int:
        try:
            state = self._read_state()
        except ValueError as e:
            logger.warning("Replacing unreadable history file %s: %s", self._path, e)
            state = {}
        try:
            current = _parse_turns(state.get(scope_id, []))
        except ValueError as e:
            logger.warning("Dropping malformed history for scope %s: %s", scope_id, e)
            current = []
        kept = change(current)[-self._limit:]
        state[scope_id] = [t.to_message() for t in kept]

        directory = self._path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=directory,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state, f, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return len(kept)


# ---------------------------------------------------------------------------
# Implementation 2: Redis
# ---------------------------------------------------------------------------


class RedisHistoryStore:
    """
    One list per scope at `<key_prefix>:<scope_id>`, JSON-encoded turns.

    The client must be created with decode_responses=True.
    """

    def __init__(
        self,
        client: Any,
        limit: int = 10,
        *,
        key_prefix: str = "ledger_qa:history",
        timeout: float | None = 5.0,
    ) -> None:
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        self._client = client
        self._limit = limit
        self._key_prefix = key_prefix
        self._timeout = timeout

    def _key(self, scope_id: str) -> str:
        return f"{self._key_prefix}:{scope_id}"

    async def load(self, scope_id: str) -> list[ChatTurn]:
        from redis.exceptions import RedisError

        try:
            raw = await asyncio.wait_for(
                self._client.lrange(self._key(scope_id), -self._limit, -1),
                self._timeout,
            )
            return _parse_turns([json.loads(item) for item in raw])
        except (RedisError, OSError, TimeoutError, ValueError) as e:
            logger.warning(
                "Chat history unavailable for scope %s, continuing without it: %s",
                scope_id, e,
            )
            return []

    async def save(self, scope_id: str, turns: list[ChatTurn]) -> None:
        from redis.exceptions import RedisError

        key = self._key(scope_id)
        encoded = [
            json.dumps(t.to_message(), ensure_ascii=False)
            for t in turns[-self._limit:]
        ]

        async def _replace() -> None:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                if encoded:
                    pipe.rpush(key, *encoded)
                await pipe.execute()

        try:
            await asyncio.wait_for(_replace(), self._timeout)
        except (RedisError, OSError, TimeoutError) as e:
            raise PersistenceError(
                f"Could not save chat history for scope {scope_id}: {e}"
            ) from e
        logger.info("Saved %d turns for scope %s", len(encoded), scope_id)

    async def append(self, scope_id: str, turns: list[ChatTurn]) -> None:
        from redis.exceptions import RedisError

        key = self._key(scope_id)
        encoded = [json.dumps(t.to_message(), ensure_ascii=False) for t in turns]
        if not encoded:
            return

        async def _push() -> None:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.rpush(key, *encoded)
                pipe.ltrim(key, -self._limit, -1)
                await pipe.execute()

        try:
            await asyncio.wait_for(_push(), self._timeout)
        except (RedisError, OSError, TimeoutError) as e:
            raise PersistenceError(
                f"Could not save chat history for scope {scope_id}: {e}"
            ) from e
        logger.info("Appended %d turns for scope %s", len(encoded), scope_id)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def get_history_store(config: Settings) -> JsonFileHistoryStore | RedisHistoryStore:
    """
    Return the configured history backend.

    - "json"  → JsonFileHistoryStore(history_file) (default)
    - "redis" → RedisHistoryStore on redis_url
    """
    if config.history_backend == "redis":
        import redis.asyncio as aioredis

        logger.info("Using Redis chat history")
        client = aioredis.from_url(config.redis_url, decode_responses=True)
        return RedisHistoryStore(
            client,
            config.history_limit,
            key_prefix=config.history_key_prefix,
            timeout=config.store_timeout_seconds,
        )

    logger.info("Using JSON file chat history (%s)", config.history_file)
    return JsonFileHistoryStore(config.history_file, config.history_limit)
