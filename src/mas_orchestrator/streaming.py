"""Forwarding of event log entries to external consumers.

The adapter preserves the order in which events were appended to the
``events`` channel. A consumer that fails is detached and the run carries
on; the checkpointed event log stays the source of truth.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Collection, Iterable, Mapping

from .models import Visibility
from .ports import EventSink
from .settings import DEFAULT_STREAM_EVENT_TYPES

logger = logging.getLogger(__name__)

# Diagnostic sinks opt into expert or internal events explicitly.
DEFAULT_VISIBILITIES: frozenset[str] = frozenset({Visibility.USER.value})


class EventStreamAdapter:
    """Filter events by type and visibility and forward them to one sink."""

    def __init__(
        self,
        sink: EventSink | None,
        *,
        event_types: Collection[str] = DEFAULT_STREAM_EVENT_TYPES,
        visibilities: Collection[str] = DEFAULT_VISIBILITIES,
    ) -> None:
        self.sink = sink
        self.event_types = frozenset(event_types)
        self.visibilities = frozenset(visibilities)
        self.forwarded = 0

    @property
    def attached(self) -> bool:
        return self.sink is not None

    def accepts(self, event: Mapping[str, Any]) -> bool:
        visibility = event.get("visibility", Visibility.USER.value)
        return event.get("type") in self.event_types and visibility in self.visibilities

    def forward(self, events: Iterable[Mapping[str, Any]]) -> int:
        """Forward matching events in order; return how many reached the sink."""
        sent = 0
        for event in events:
            if self.sink is None:
                break
            if not self.accepts(event):
                continue
            try:
                self.sink.write(event)
            except Exception as exc:  # noqa: BLE001 - a failing consumer must not stop the run.
                logger.warning("Event sink %s failed and was detached: %s", type(self.sink).__name__, exc)
                self.sink = None
                break
            sent += 1
        self.forwarded += sent
        return sent


class LoggingEventSink:
    """Writes each event as one log record."""

    def __init__(self, log: logging.Logger | None = None, level: int = logging.INFO) -> None:
        self.log = log or logger
        self.level = level

    def write(self, event: Mapping[str, Any]) -> None:
        self.log.log(
            self.level,
            "[%s] %s/%s: %s",
            event.get("stage", "?"),
            event.get("agent", "?"),
            event.get("type", "?"),
            event.get("summary", ""),
        )


class ListEventSink:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def write(self, event: Mapping[str, Any]) -> None:
        self.events.append(dict(event))

    @property
    def types(self) -> list[str]:
        return [event["type"] for event in self.events]


_CLOSED = object()


class QueueEventSink:
    """Bridges the event stream to an async consumer such as a websocket handler.

    The queue is unbounded so ``write`` and ``close`` never block or fail.
    Iterate with ``async for`` until ``close()`` is called; after that every
    ``get()`` returns ``None``.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    def write(self, event: Mapping[str, Any]) -> None:
        if self._closed:
            raise RuntimeError("QueueEventSink is closed")
        self._queue.put_nowait(dict(event))

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def get(self) -> dict[str, Any] | None:
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._drain()

    async def _drain(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self.get()
            if item is None:
                return
            yield item
