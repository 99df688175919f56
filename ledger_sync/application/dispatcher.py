"""Typed signal registry with ordered per-kind handlers and a catch-all lane."""

from __future__ import annotations
import asyncio
import inspect
from collections import defaultdict
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from ..domain.events import EventKind, SignalPayload, SignalType
from ..utils.logging_setup import get_logger


logger = get_logger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]
_Key = Tuple[SignalType, Optional[EventKind]]


class SignalDispatcher:
    """
    Dispatches signals to registered handlers.

    Handlers are registered per (signal, kind) and invoked in registration
    order. Sync handlers run inline. Coroutine results are awaited inline
    when `await_handlers` is True; otherwise they are scheduled as tasks
    and emit() returns without waiting. A failing handler is logged and
    counted; it never prevents the remaining handlers from running.
    """

    def __init__(self, await_handlers: bool = True):
        self._handlers: Dict[_Key, List[Handler]] = defaultdict(list)
        self._await_handlers = await_handlers
        self._pending: Set[asyncio.Task] = set()
        self._lock = Lock()
        self._stats = {
            "emitted": 0,
            "dispatched": 0,
            "errors": 0,
        }

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        signal: SignalType,
        handler: Handler,
        kind: Optional[EventKind] = None,
    ) -> None:
        """
        Register a handler.

        Args:
            signal: Signal to listen for.
            handler: Sync or async callable taking the signal payload.
            kind: Required for keyed signals (EVENT, EVENT_FINALIZED), forbidden otherwise.
        """
        if signal.is_keyed and kind is None:
            raise ValueError(f"{signal.name} handlers must name an EventKind")
        if not signal.is_keyed and kind is not None:
            raise ValueError(f"{signal.name} is not keyed by EventKind")
        with self._lock:
            self._handlers[(signal, kind)].append(handler)
        logger.debug(f"Subscribed to {signal.wire_name(kind)}")

    def on_event(self, kind: EventKind, handler: Handler) -> None:
        """Register a handler for one event kind."""
        self.subscribe(SignalType.EVENT, handler, kind)

    def on_any_event(self, handler: Handler) -> None:
        """Register a handler for every ledger event."""
        self.subscribe(SignalType.LEDGER_EVENT, handler)

    def on_finalized(self, kind: EventKind, handler: Handler) -> None:
        """Register a handler for finalization of one event kind."""
        self.subscribe(SignalType.EVENT_FINALIZED, handler, kind)

    def unsubscribe(
        self,
        signal: SignalType,
        handler: Handler,
        kind: Optional[EventKind] = None,
    ) -> None:
        """Remove a previously registered handler."""
        with self._lock:
            handlers = self._handlers.get((signal, kind), [])
            if handler in handlers:
                handlers.remove(handler)
                logger.debug(f"Unsubscribed from {signal.wire_name(kind)}")

    def handler_count(self, signal: SignalType, kind: Optional[EventKind] = None) -> int:
        with self._lock:
            return len(self._handlers.get((signal, kind), []))

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def emit(
        self,
        signal: SignalType,
        payload: SignalPayload,
        kind: Optional[EventKind] = None,
    ) -> int:
        """
        Deliver a payload to all handlers of a signal.

        Returns:
            Number of handlers invoked.
        """
        with self._lock:
            handlers = list(self._handlers.get((signal, kind), []))
            self._stats["emitted"] += 1

        name = signal.wire_name(kind)
        for handler in handlers:
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    if self._await_handlers:
                        await result
                    else:
                        self._track(asyncio.ensure_future(result), name)
                self._stats["dispatched"] += 1
            except Exception as e:
                self._stats["errors"] += 1
                logger.error(f"Handler for {name} failed: {e}", exc_info=True)

        return len(handlers)

    def _track(self, task: asyncio.Future, name: str) -> None:
        self._pending.add(task)

        def _done(t: asyncio.Future) -> None:
            self._pending.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                self._stats["errors"] += 1
                logger.error(f"Background handler for {name} failed: {exc}", exc_info=exc)

        task.add_done_callback(_done)

    async def drain(self, timeout: Optional[float] = None) -> int:
        """
        Wait for background handler tasks.

        Returns:
            Number of tasks still pending after the wait.
        """
        if not self._pending:
            return 0
        done, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} handler task(s) still running after drain")
        return len(pending)

    def get_stats(self) -> Dict[str, Any]:
        """Dispatcher statistics."""
        with self._lock:
            stats = dict(self._stats)
            stats["handler_count"] = sum(len(v) for v in self._handlers.values())
        stats["pending_tasks"] = len(self._pending)
        return stats
