"""LangGraph checkpoint saver backed by a plain key/value store.

Key layout for one thread (``ns`` is the checkpoint namespace, ``""`` for the root graph):

- ``lg:checkpoint:{thread}:{ns}:{id}``         one record: checkpoint, metadata, parent id
- ``lg:checkpoint:writes:{thread}:{ns}:{id}``  pending writes for that checkpoint
- ``lg:checkpoint:index:{thread}:{ns}``        id of the latest checkpoint
- ``lg:checkpoint:set:{thread}:{ns}``          every checkpoint id of the thread
- ``lg:checkpoint:namespaces:{thread}``        namespaces seen, for cascading deletes

Checkpoint ids are time-ordered, so descending lexicographic order is newest first.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, AsyncIterator, Iterator, Sequence

from langchain_core.runnables import RunnableConfig
from langgraph.checkpoint.base import (
    WRITES_IDX_MAP,
    BaseCheckpointSaver,
    ChannelVersions,
    Checkpoint,
    CheckpointMetadata,
    CheckpointTuple,
    get_checkpoint_id,
    get_checkpoint_metadata,
)
from langgraph.checkpoint.serde.base import SerializerProtocol

from .canonical import to_canonical_json
from .kv import KeyValueStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "lg:checkpoint"


def checkpoint_config(thread_id: str, namespace: str = "", checkpoint_id: str | None = None) -> RunnableConfig:
    configurable: dict[str, Any] = {"thread_id": thread_id, "checkpoint_ns": namespace}
    if checkpoint_id is not None:
        configurable["checkpoint_id"] = checkpoint_id
    return {"configurable": configurable}


class KeyValueCheckpointSaver(BaseCheckpointSaver[int]):
    """Async checkpoint saver persisting whole-checkpoint records in a ``KeyValueStore``.

    Every ``aput`` writes a new immutable record and then moves the latest-id
    index, so a ``aget_tuple`` without an explicit id always returns the
    checkpoint that was written last.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_seconds: int | None = None,
        serde: SerializerProtocol | None = None,
    ) -> None:
        super().__init__(serde=serde)
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._writes_lock = asyncio.Lock()

    # -- key helpers --

    @staticmethod
    def _checkpoint_key(thread_id: str, namespace: str, checkpoint_id: str) -> str:
        return f"{KEY_PREFIX}:{thread_id}:{namespace}:{checkpoint_id}"

    @staticmethod
    def _writes_key(thread_id: str, namespace: str, checkpoint_id: str) -> str:
        return f"{KEY_PREFIX}:writes:{thread_id}:{namespace}:{checkpoint_id}"

    @staticmethod
    def _index_key(thread_id: str, namespace: str) -> str:
        return f"{KEY_PREFIX}:index:{thread_id}:{namespace}"

    @staticmethod
    def _set_key(thread_id: str, namespace: str) -> str:
        return f"{KEY_PREFIX}:set:{thread_id}:{namespace}"

    @staticmethod
    def _namespaces_key(thread_id: str) -> str:
        return f"{KEY_PREFIX}:namespaces:{thread_id}"

    # -- serialization --

    def _encode(self, value: Any) -> list[str]:
        type_, payload = self.serde.dumps_typed(value)
        return [type_, base64.b64encode(payload).decode("ascii")]

    def _decode(self, encoded: Sequence[str]) -> Any:
        type_, payload = encoded
        return self.serde.loads_typed((type_, base64.b64decode(payload)))

    async def _load_writes(self, thread_id: str, namespace: str, checkpoint_id: str) -> list[tuple[str, str, Any]]:
        raw = await self.store.get(self._writes_key(thread_id, namespace, checkpoint_id))
        if not raw:
            return []
        entries = json.loads(raw)
        return [(entry["task_id"], entry["channel"], self._decode(entry["value"])) for entry in entries.values()]

    async def _load_tuple(self, thread_id: str, namespace: str, checkpoint_id: str) -> CheckpointTuple | None:
        raw = await self.store.get(self._checkpoint_key(thread_id, namespace, checkpoint_id))
        if raw is None:
            return None
        record = json.loads(raw)
        parent_id = record.get("parent_checkpoint_id")
        return CheckpointTuple(
            config=checkpoint_config(thread_id, namespace, checkpoint_id),
            checkpoint=self._decode(record["checkpoint"]),
            metadata=self._decode(record["metadata"]),
            parent_config=checkpoint_config(thread_id, namespace, parent_id) if parent_id else None,
            pending_writes=await self._load_writes(thread_id, namespace, checkpoint_id),
        )

    # -- async API --

    async def aget_tuple(self, config: RunnableConfig) -> CheckpointTuple | None:
        configurable = config["configurable"]
        thread_id = str(configurable["thread_id"])
        namespace = configurable.get("checkpoint_ns", "")
        checkpoint_id = get_checkpoint_id(config) or await self.store.get(self._index_key(thread_id, namespace))
        if not checkpoint_id:
            return None
        return await self._load_tuple(thread_id, namespace, checkpoint_id)

    async def alist(
        self,
        config: RunnableConfig | None,
        *,
        filter: dict[str, Any] | None = None,
        before: RunnableConfig | None = None,
        limit: int | None = None,
    ) -> AsyncIterator[CheckpointTuple]:
        """Yield the thread's checkpoints newest first.

        Each call re-reads the id set, so the sequence is restartable rather
        than a live cursor.

        Raises:
            ValueError: If ``config`` does not name a thread.
        """
        if config is None or "thread_id" not in config.get("configurable", {}):
            raise ValueError("KeyValueCheckpointSaver.alist requires a thread_id in config")
        configurable = config["configurable"]
        thread_id = str(configurable["thread_id"])
        namespace = configurable.get("checkpoint_ns", "")

        pinned_id = get_checkpoint_id(config)
        if pinned_id:
            ids = [pinned_id]
        else:
            ids = sorted(await self.store.smembers(self._set_key(thread_id, namespace)), reverse=True)
        before_id = get_checkpoint_id(before) if before is not None else None

        yielded = 0
        for checkpoint_id in ids:
            if limit is not None and yielded >= limit:
                break
            if before_id is not None and checkpoint_id >= before_id:
                continue
            found = await self._load_tuple(thread_id, namespace, checkpoint_id)
            if found is None:
                continue
            if filter and not all(found.metadata.get(key) == value for key, value in filter.items()):
                continue
            yielded += 1
            yield found

    async def aput(
        self,
        config: RunnableConfig,
        checkpoint: Checkpoint,
        metadata: CheckpointMetadata,
        new_versions: ChannelVersions,
    ) -> RunnableConfig:
        configurable = config["configurable"]
        thread_id = str(configurable["thread_id"])
        namespace = configurable.get("checkpoint_ns", "")
        checkpoint_id = checkpoint["id"]
        record = {
            "checkpoint": self._encode(checkpoint),
            "metadata": self._encode(get_checkpoint_metadata(config, metadata)),
            "parent_checkpoint_id": configurable.get("checkpoint_id"),
        }
        await self.store.set(
            self._checkpoint_key(thread_id, namespace, checkpoint_id),
            to_canonical_json(record),
            ttl_seconds=self.ttl_seconds,
        )
        await self.store.set(self._index_key(thread_id, namespace), checkpoint_id, ttl_seconds=self.ttl_seconds)
        await self.store.sadd(self._set_key(thread_id, namespace), checkpoint_id, ttl_seconds=self.ttl_seconds)
        await self.store.sadd(self._namespaces_key(thread_id), namespace, ttl_seconds=self.ttl_seconds)
        logger.debug("Stored checkpoint %s for thread %s (ns=%r)", checkpoint_id, thread_id, namespace)
        return checkpoint_config(thread_id, namespace, checkpoint_id)

    async def aput_writes(
        self,
        config: RunnableConfig,
        writes: Sequence[tuple[str, Any]],
        task_id: str,
        task_path: str = "",
    ) -> None:
        configurable = config["configurable"]
        thread_id = str(configurable["thread_id"])
        namespace = configurable.get("checkpoint_ns", "")
        checkpoint_id = configurable["checkpoint_id"]
        key = self._writes_key(thread_id, namespace, checkpoint_id)

        async with self._writes_lock:
            raw = await self.store.get(key)
            entries: dict[str, Any] = json.loads(raw) if raw else {}
            for idx, (channel, value) in enumerate(writes):
                write_idx = WRITES_IDX_MAP.get(channel, idx)
                entry_key = f"{task_id},{write_idx}"
                # Regular writes are recorded once; special channels (errors, interrupts) may be replaced.
                if write_idx >= 0 and entry_key in entries:
                    continue
                entries[entry_key] = {
                    "task_id": task_id,
                    "channel": channel,
                    "value": self._encode(value),
                    "task_path": task_path,
                }
            await self.store.set(key, json.dumps(entries), ttl_seconds=self.ttl_seconds)

    async def adelete_thread(self, thread_id: str) -> None:
        """Delete every checkpoint, write record, index and id set of ``thread_id``."""
        namespaces_key = self._namespaces_key(thread_id)
        namespaces = await self.store.smembers(namespaces_key) | {""}
        keys = [namespaces_key]
        for namespace in sorted(namespaces):
            for checkpoint_id in await self.store.smembers(self._set_key(thread_id, namespace)):
                keys.append(self._checkpoint_key(thread_id, namespace, checkpoint_id))
                keys.append(self._writes_key(thread_id, namespace, checkpoint_id))
            keys.append(self._index_key(thread_id, namespace))
            keys.append(self._set_key(thread_id, namespace))
        removed = await self.store.delete(*keys)
        logger.info("Deleted thread %s (%d keys)", thread_id, removed)

    # -- sync API (unsupported) --

    def get_tuple(self, config: RunnableConfig) -> CheckpointTuple | None:
        raise NotImplementedError("KeyValueCheckpointSaver is async-only; use aget_tuple")

    def list(
        self,
        config: RunnableConfig | None,
        *,
        filter: dict[str, Any] | None = None,
        before: RunnableConfig | None = None,
        limit: int | None = None,
    ) -> Iterator[CheckpointTuple]:
        raise NotImplementedError("KeyValueCheckpointSaver is async-only; use alist")

    def put(
        self,
        config: RunnableConfig,
        checkpoint: Checkpoint,
        metadata: CheckpointMetadata,
        new_versions: ChannelVersions,
    ) -> RunnableConfig:
        raise NotImplementedError("KeyValueCheckpointSaver is async-only; use aput")

    def put_writes(
        self,
        config: RunnableConfig,
        writes: Sequence[tuple[str, Any]],
        task_id: str,
        task_path: str = "",
    ) -> None:
        raise NotImplementedError("KeyValueCheckpointSaver is async-only; use aput_writes")

    def delete_thread(self, thread_id: str) -> None:
        raise NotImplementedError("KeyValueCheckpointSaver is async-only; use adelete_thread")
