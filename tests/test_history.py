# =============================================================================
# Unit Tests: Chat History Stores
# =============================================================================
#
# JSON file store against pytest's tmp_path; Redis store against an
# AsyncMock client (no server needed). Appends are checked for lost updates
# when several exchanges for one scope land at once.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import os
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ledger_qa.errors import PersistenceError
from ledger_qa.services.history import ChatTurn, JsonFileHistoryStore, RedisHistoryStore


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _turns(n: int) -> list[ChatTurn]:
    return [
        ChatTurn(role="user" if i % 2 == 0 else "assistant", content=f"turn {i}")
        for i in range(n)
    ]


# ---------------------------------------------------------------------------
# Test: JSON file store
# ---------------------------------------------------------------------------


class TestJsonFileHistoryStore:
    def test_twelve_turns_keep_last_ten(self, tmp_path):
        path = tmp_path / "chat_history.json"
        store = JsonFileHistoryStore(path, limit=10)
        _run(store.save("u1", _turns(12)))

        loaded = _run(store.load("u1"))
        assert len(loaded) == 10
        assert loaded[0].content == "turn 2"
        assert loaded[-1].content == "turn 11"

        on_disk = json.loads(path.read_text(encoding="utf-8"))
        assert len(on_disk["u1"]) == 10
        assert on_disk["u1"][0] == {"role": "user", "content": "turn 2"}

    def test_missing_file_is_empty_history(self, tmp_path):
        store = JsonFileHistoryStore(tmp_path / "nope.json")
        assert _run(store.load("u1")) == []

    def test_corrupt_file_is_empty_history(self, tmp_path):
        path = tmp_path / "chat_history.json"
        path.write_text("{not json", encoding="utf-8")
        assert _run(JsonFileHistoryStore(path).load("u1")) == []

    def test_malformed_turns_are_empty_history(self, tmp_path):
        path = tmp_path / "chat_history.json"
        path.write_text(json.dumps({"u1": [{"role": "robot", "content": 1}]}), encoding="utf-8")
        assert _run(JsonFileHistoryStore(path).load("u1")) == []

    def test_other_scopes_preserved(self, tmp_path):
        store = JsonFileHistoryStore(tmp_path / "h.json")
        _run(store.save("u1", _turns(2)))
        _run(store.save("u2", _turns(4)))
        assert len(_run(store.load("u1"))) == 2
        assert len(_run(store.load("u2"))) == 4

    def test_concurrent_saves_in_one_process_do_not_lose_scopes(self, tmp_path):
        store = JsonFileHistoryStore(tmp_path / "h.json")

        async def save_many():
            await asyncio.gather(*(
                store.save(f"u{i}", _turns(2)) for i in range(10)
            ))

        _run(save_many())
        data = json.loads((tmp_path / "h.json").read_text(encoding="utf-8"))
        assert sorted(data) == sorted(f"u{i}" for i in range(10))

    def test_save_over_corrupt_file_recovers(self, tmp_path):
        path = tmp_path / "h.json"
        path.write_text("[]", encoding="utf-8")
        store = JsonFileHistoryStore(path)
        _run(store.save("u1", _turns(2)))
        assert len(_run(store.load("u1"))) == 2

    def test_unwritable_target_raises_persistence_error(self, tmp_path):
        target = tmp_path / "is_a_directory"
        target.mkdir()
        with pytest.raises(PersistenceError):
            _run(JsonFileHistoryStore(target).save("u1", _turns(2)))

    def test_no_temp_files_left_behind(self, tmp_path):
        store = JsonFileHistoryStore(tmp_path / "h.json")
        _run(store.save("u1", _turns(2)))
        assert [p.name for p in tmp_path.iterdir()] == ["h.json"]

    def test_cancelled_save_leaves_readable_file(self, tmp_path):
        path = tmp_path / "h.json"
        store = JsonFileHistoryStore(path)
        _run(store.save("u1", _turns(2)))
        real_replace = os.replace

        def slow_replace(src, dst):
            time.sleep(0.05)
            real_replace(src, dst)

        async def cancel_mid_write():
            task = asyncio.create_task(store.save("u2", _turns(4)))
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        with patch("ledger_qa.services.history.os.replace", side_effect=slow_replace):
            _run(cancel_mid_write())

        data = json.loads(path.read_text(encoding="utf-8"))
        assert len(data["u1"]) == 2
        assert not list(tmp_path.glob("*.tmp"))


class TestJsonFileHistoryAppend:
    def test_append_adds_to_stored_turns(self, tmp_path):
        store = JsonFileHistoryStore(tmp_path / "h.json", limit=10)
        _run(store.save("u1", _turns(2)))
        _run(store.append("u1", [ChatTurn("user", "q"), ChatTurn("assistant", "a")]))
        assert [t.content for t in _run(store.load("u1"))] == ["turn 0", "turn 1", "q", "a"]

    def test_append_trims_to_limit(self, tmp_path):
        store = JsonFileHistoryStore(tmp_path / "h.json", limit=10)
        _run(store.save("u1", _turns(9)))
        _run(store.append("u1", [ChatTurn("user", "q"), ChatTurn("assistant", "a")]))
        loaded = _run(store.load("u1"))
        assert len(loaded) == 10
        assert loaded[0].content == "turn 1"
        assert loaded[-1].content == "a"

    def test_concurrent_appends_to_one_scope_keep_every_turn(self, tmp_path):
        store = JsonFileHistoryStore(tmp_path / "h.json", limit=10)

        async def append_many():
            await asyncio.gather(*(
                store.append("u1", [ChatTurn("user", f"q{i}"), ChatTurn("assistant", f"a{i}")])
                for i in range(5)
            ))

        _run(append_many())
        contents = [t.content for t in _run(store.load("u1"))]
        assert len(contents) == 10
        expected = [f"q{i}" for i in range(5)] + [f"a{i}" for i in range(5)]
        assert sorted(contents) == sorted(expected)

    def test_append_over_malformed_scope_starts_fresh(self, tmp_path):
        path = tmp_path / "h.json"
        path.write_text(
            json.dumps({"u1": "garbage", "u2": [{"role": "user", "content": "kept"}]}),
            encoding="utf-8",
        )
        store = JsonFileHistoryStore(path)
        _run(store.append("u1", [ChatTurn("user", "q")]))
        assert _run(store.load("u1")) == [ChatTurn("user", "q")]
        assert _run(store.load("u2")) == [ChatTurn("user", "kept")]


# ---------------------------------------------------------------------------
# Test: Redis store
# ---------------------------------------------------------------------------


def _redis_client(stored: list[str] | None = None):
    client = MagicMock()
    client.lrange = AsyncMock(return_value=stored or [])
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, 10])
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    client.pipeline = MagicMock(return_value=pipe)
    return client, pipe


class TestRedisHistoryStore:
    def test_save_replaces_list_in_transaction(self):
        client, pipe = _redis_client()
        store = RedisHistoryStore(client, limit=10, key_prefix="test:history")
        _run(store.save("u1", _turns(12)))

        client.pipeline.assert_called_once_with(transaction=True)
        pipe.delete.assert_called_once_with("test:history:u1")
        pushed = pipe.rpush.call_args.args
        assert pushed[0] == "test:history:u1"
        assert len(pushed) == 11  # key + 10 turns
        assert json.loads(pushed[1]) == {"role": "user", "content": "turn 2"}
        pipe.execute.assert_awaited_once()

    def test_load_reads_last_n(self):
        stored = [json.dumps({"role": "user", "content": "hi"})]
        client, _ = _redis_client(stored)
        store = RedisHistoryStore(client, limit=10, key_prefix="test:history")
        assert _run(store.load("u1")) == [ChatTurn(role="user", content="hi")]
        client.lrange.assert_awaited_once_with("test:history:u1", -10, -1)

    def test_load_failure_degrades_to_empty(self):
        client, _ = _redis_client()
        client.lrange = AsyncMock(side_effect=RedisConnectionError("down"))
        assert _run(RedisHistoryStore(client).load("u1")) == []

    def test_corrupt_entry_degrades_to_empty(self):
        client, _ = _redis_client(["{oops"])
        assert _run(RedisHistoryStore(client).load("u1")) == []

    def test_save_failure_is_persistence_error(self):
        client, pipe = _redis_client()
        pipe.execute = AsyncMock(side_effect=RedisConnectionError("down"))
        with pytest.raises(PersistenceError):
            _run(RedisHistoryStore(client).save("u1", _turns(2)))

    def test_append_pushes_and_trims_in_transaction(self):
        client, pipe = _redis_client()
        store = RedisHistoryStore(client, limit=10, key_prefix="test:history")
        _run(store.append("u1", _turns(2)))

        client.pipeline.assert_called_once_with(transaction=True)
        pipe.delete.assert_not_called()
        pushed = pipe.rpush.call_args.args
        assert pushed[0] == "test:history:u1"
        assert [json.loads(p)["content"] for p in pushed[1:]] == ["turn 0", "turn 1"]
        pipe.ltrim.assert_called_once_with("test:history:u1", -10, -1)
        pipe.execute.assert_awaited_once()

    def test_append_nothing_skips_redis(self):
        client, _ = _redis_client()
        _run(RedisHistoryStore(client).append("u1", []))
        client.pipeline.assert_not_called()

    def test_append_failure_is_persistence_error(self):
        client, pipe = _redis_client()
        pipe.execute = AsyncMock(side_effect=RedisConnectionError("down"))
        with pytest.raises(PersistenceError):
            _run(RedisHistoryStore(client).append("u1", _turns(2)))
