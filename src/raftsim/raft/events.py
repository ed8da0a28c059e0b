from __future__ import annotations

import asyncio
import itertools
from collections import deque
from typing import Callable

from .types import EventKind, RaftEvent

Listener = Callable[[RaftEvent], None]


class EventStream:
    """Output channel the nodes write their lifecycle events to.

    Listeners are called synchronously, in subscription order, from inside the
    node handler that produced the event. Sequence numbers are assigned here so
    that events from every node of a cluster share one total order.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._seq = itertools.count(1)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def subscribe_queue(self, maxsize: int = 0) -> tuple[asyncio.Queue[RaftEvent], Callable[[], None]]:
        """Subscribe an asyncio queue. Events are dropped once a bounded queue is full."""
        queue: asyncio.Queue[RaftEvent] = asyncio.Queue(maxsize=maxsize)

        def put(event: RaftEvent) -> None:
            if not queue.full():
                queue.put_nowait(event)

        return queue, self.subscribe(put)

    def publish(self, event: RaftEvent) -> RaftEvent:
        event.seq = next(self._seq)
        for listener in list(self._listeners):
            listener(event)
        return event


class EventRecorder:
    """Bounded history of events, polled by the HTTP API and by tests."""

    def __init__(self, maxlen: int | None = 1000):
        self._events: deque[RaftEvent] = deque(maxlen=maxlen)

    def __call__(self, event: RaftEvent) -> None:
        self._events.append(event)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(list(self._events))

    def since(self, after: int = 0, limit: int | None = None) -> list[RaftEvent]:
        out = [e for e in self._events if e.seq > after]
        return out if limit is None else out[:limit]

    def of_kind(self, kind: EventKind, node_id: str | None = None) -> list[RaftEvent]:
        return [e for e in self._events if e.kind == kind and (node_id is None or e.node_id == node_id)]

    def kinds(self, node_id: str | None = None) -> list[EventKind]:
        return [e.kind for e in self._events if node_id is None or e.node_id == node_id]

    def clear(self) -> None:
        self._events.clear()
