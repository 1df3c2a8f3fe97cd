"""Typed event channel shared by the session, capture service and app."""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncIterator, Callable, TypeVar

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .extractor import ClipResult
    from .session import SessionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StateChanged:
    previous: "SessionState"
    current: "SessionState"


@dataclass(frozen=True, slots=True)
class PeerChanged:
    peer: str
    connected: bool
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class StatusReceived:
    peer: str
    text: str


@dataclass(frozen=True, slots=True)
class CaptureRequested:
    peer: str
    trigger_ms: int
    duration_s: int | None = None
    sent_at_ms: int | None = None


@dataclass(frozen=True, slots=True)
class CaptureCompleted:
    peer: str
    result: "ClipResult"


@dataclass(frozen=True, slots=True)
class CaptureFailed:
    peer: str
    code: str
    detail: str


Event = StateChanged | PeerChanged | StatusReceived | CaptureRequested | CaptureCompleted | CaptureFailed
E = TypeVar("E")


class EventChannel:
    """Deliver each published event to every current subscriber of its kind.

    Handlers may be plain callables or coroutine functions; coroutines are
    scheduled on the running loop. A failing handler is logged and does not
    prevent delivery to the others.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Callable[[object], object]]] = defaultdict(list)
        self._tasks: set[asyncio.Task[object]] = set()

    def subscribe(self, kind: type[E], handler: Callable[[E], object]) -> Callable[[], None]:
        handlers = self._handlers[kind]
        handlers.append(handler)  # type: ignore[arg-type]

        def _unsubscribe() -> None:
            try:
                handlers.remove(handler)  # type: ignore[arg-type]
            except ValueError:
                pass

        return _unsubscribe

    def subscriber_count(self, kind: type) -> int:
        return len(self._handlers.get(kind, ()))

    def publish(self, event: object) -> None:
        for handler in list(self._handlers.get(type(event), ())):
            try:
                outcome = handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", type(event).__name__)
                continue
            if inspect.isawaitable(outcome):
                self._schedule(outcome, type(event).__name__)

    def _schedule(self, awaitable: object, label: str) -> None:
        try:
            task = asyncio.ensure_future(awaitable)  # type: ignore[arg-type]
        except RuntimeError:
            logger.warning("Dropping async %s handler: no running event loop", label)
            close = getattr(awaitable, "close", None)
            if callable(close):
                close()
            return
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[object]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async event handler failed", exc_info=exc)

    @asynccontextmanager
    async def listen(self, *kinds: type, maxsize: int = 0) -> AsyncIterator[asyncio.Queue[object]]:
        """Yield a queue that receives every event of ``kinds`` while open."""

        queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)

        def _offer(event: object) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Event listener queue full; dropping %s", type(event).__name__)

        unsubscribers = [self.subscribe(kind, _offer) for kind in kinds]
        try:
            yield queue
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()

    async def drain(self) -> None:
        """Wait for scheduled async handlers to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def clear(self) -> None:
        self._handlers.clear()


__all__ = [
    "CaptureCompleted",
    "CaptureFailed",
    "CaptureRequested",
    "Event",
    "EventChannel",
    "PeerChanged",
    "StateChanged",
    "StatusReceived",
]
