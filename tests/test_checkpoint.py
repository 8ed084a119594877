from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest
from langgraph.checkpoint.base import WRITES_IDX_MAP, empty_checkpoint

from mas_orchestrator.checkpoint import KeyValueCheckpointSaver, checkpoint_config
from mas_orchestrator.kv import InMemoryKeyValueStore, SqliteKeyValueStore, build_key_value_store
from mas_orchestrator.settings import RuntimeSettings


def _checkpoint(n: int) -> Any:
    checkpoint = empty_checkpoint()
    checkpoint["id"] = f"1f000000-0000-6000-8000-{n:012d}"
    return checkpoint


async def _put_chain(saver: KeyValueCheckpointSaver, thread_id: str, count: int, namespace: str = "") -> list[Any]:
    config = checkpoint_config(thread_id, namespace)
    configs = []
    for n in range(1, count + 1):
        config = await saver.aput(config, _checkpoint(n), {"source": "loop", "step": n}, {})
        configs.append(config)
    return configs


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_read_your_writes_returns_latest_checkpoint() -> None:
    saver = KeyValueCheckpointSaver(InMemoryKeyValueStore())

    async def scenario() -> None:
        configs = await _put_chain(saver, "t1", 2)
        latest = await saver.aget_tuple(checkpoint_config("t1"))
        assert latest is not None
        assert latest.checkpoint["id"] == _checkpoint(2)["id"]
        assert latest.metadata["step"] == 2
        assert latest.parent_config == configs[0]

        pinned = await saver.aget_tuple(configs[0])
        assert pinned is not None
        assert pinned.checkpoint["id"] == _checkpoint(1)["id"]
        assert pinned.parent_config is None

    asyncio.run(scenario())


def test_threads_and_namespaces_are_isolated() -> None:
    saver = KeyValueCheckpointSaver(InMemoryKeyValueStore())

    async def scenario() -> None:
        await _put_chain(saver, "t1", 1)
        await _put_chain(saver, "t1", 3, namespace="sub")
        assert await saver.aget_tuple(checkpoint_config("t2")) is None
        root = await saver.aget_tuple(checkpoint_config("t1"))
        sub = await saver.aget_tuple(checkpoint_config("t1", "sub"))
        assert root is not None and sub is not None
        assert root.metadata["step"] == 1
        assert sub.metadata["step"] == 3

    asyncio.run(scenario())


def test_list_supports_before_filter_and_limit() -> None:
    saver = KeyValueCheckpointSaver(InMemoryKeyValueStore())

    async def scenario() -> None:
        configs = await _put_chain(saver, "t1", 3)
        steps = [item.metadata["step"] async for item in saver.alist(checkpoint_config("t1"))]
        assert steps == [3, 2, 1]

        before = [item.metadata["step"] async for item in saver.alist(checkpoint_config("t1"), before=configs[2])]
        assert before == [2, 1]

        filtered = [item.metadata["step"] async for item in saver.alist(checkpoint_config("t1"), filter={"step": 2})]
        assert filtered == [2]

        limited = [item.metadata["step"] async for item in saver.alist(checkpoint_config("t1"), limit=1)]
        assert limited == [3]

        with pytest.raises(ValueError):
            async for _ in saver.alist(None):
                pass

    asyncio.run(scenario())


def test_pending_writes_are_not_duplicated() -> None:
    saver = KeyValueCheckpointSaver(InMemoryKeyValueStore())
    special = next(iter(WRITES_IDX_MAP))

    async def scenario() -> None:
        [config] = await _put_chain(saver, "t1", 1)
        await saver.aput_writes(config, [("events", [1]), (special, "first")], "task-1")
        await saver.aput_writes(config, [("events", [2]), (special, "second")], "task-1")
        found = await saver.aget_tuple(config)
        assert found is not None
        writes = {channel: value for _, channel, value in found.pending_writes}
        assert writes == {"events": [1], special: "second"}
        assert len(found.pending_writes) == 2

    asyncio.run(scenario())


def test_delete_thread_cascades_across_namespaces() -> None:
    store = InMemoryKeyValueStore()
    saver = KeyValueCheckpointSaver(store)

    async def scenario() -> None:
        [config] = await _put_chain(saver, "t1", 1)
        await _put_chain(saver, "t1", 2, namespace="sub")
        await _put_chain(saver, "t2", 1)
        await saver.aput_writes(config, [("events", [1])], "task-1")

        await saver.adelete_thread("t1")

        assert await saver.aget_tuple(checkpoint_config("t1")) is None
        assert await saver.aget_tuple(checkpoint_config("t1", "sub")) is None
        assert [item async for item in saver.alist(checkpoint_config("t1", "sub"))] == []
        assert await store.get(f"lg:checkpoint:writes:t1::{config['configurable']['checkpoint_id']}") is None
        assert await store.smembers("lg:checkpoint:namespaces:t1") == set()
        assert await saver.aget_tuple(checkpoint_config("t2")) is not None

    asyncio.run(scenario())


def test_sync_api_is_not_supported() -> None:
    saver = KeyValueCheckpointSaver(InMemoryKeyValueStore())
    with pytest.raises(NotImplementedError):
        saver.get_tuple(checkpoint_config("t1"))
    with pytest.raises(NotImplementedError):
        saver.delete_thread("t1")


def test_in_memory_store_expires_keys() -> None:
    clock = _Clock()
    store = InMemoryKeyValueStore(clock=clock)

    async def scenario() -> None:
        await store.set("a", "1", ttl_seconds=10)
        await store.sadd("s", "x", ttl_seconds=10)
        assert await store.get("a") == "1"
        clock.now += 11
        assert await store.get("a") is None
        assert await store.smembers("s") == set()

    asyncio.run(scenario())


def test_sqlite_store_round_trip_and_expiry(tmp_path: Path) -> None:
    clock = _Clock()
    store = SqliteKeyValueStore(tmp_path / "kv.sqlite", clock=clock)

    async def scenario() -> None:
        await store.set("a", "1")
        await store.set("a", "2")
        await store.set("b", "x", ttl_seconds=5)
        await store.sadd("s", "m1", "m2")
        assert await store.get("a") == "2"
        assert await store.smembers("s") == {"m1", "m2"}
        clock.now += 6
        assert await store.get("b") is None
        assert await store.delete("a", "s") == 2
        assert await store.get("a") is None

    try:
        asyncio.run(scenario())
    finally:
        store.close()


def test_saver_works_over_sqlite(tmp_path: Path) -> None:
    store = SqliteKeyValueStore(tmp_path / "kv.sqlite")
    saver = KeyValueCheckpointSaver(store)

    async def scenario() -> None:
        await _put_chain(saver, "t1", 2)
        latest = await saver.aget_tuple(checkpoint_config("t1"))
        assert latest is not None and latest.metadata["step"] == 2

    try:
        asyncio.run(scenario())
    finally:
        store.close()


def test_build_key_value_store_selects_backend(tmp_path: Path) -> None:
    assert isinstance(build_key_value_store(RuntimeSettings()), InMemoryKeyValueStore)
    sqlite_store = build_key_value_store(RuntimeSettings(checkpoint_backend="sqlite"), repo_root=tmp_path)
    assert isinstance(sqlite_store, SqliteKeyValueStore)
    sqlite_store.close()
    assert (tmp_path / "state_store" / "checkpoints.sqlite").exists()
