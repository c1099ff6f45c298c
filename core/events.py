"""
Event Bus

In-process publish/subscribe used by the coordinator and the orchestrator to
announce state changes (registered, assigned, completed, started, stopped...).
Dashboards either subscribe or poll the bounded event history.
"""

import asyncio
import inspect
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

WILDCARD = "*"

EventHandler = Callable[[Any], Any]


@dataclass
class Event:
    """A published event"""

    name: str
    source: str
    data: Any = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "source": self.source,
            "data": self.data,
            "timestamp": self.timestamp,
        }


class EventBus:
    """Synchronous fan-out with optional coroutine handlers.

    Plain handlers run inline, in subscription order. Coroutine handlers are
    scheduled on the running loop. A handler that raises is logged and skipped;
    the remaining handlers still receive the event.
    """

    def __init__(self, source: str, max_history: int = 500):
        self.source = source
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._history: Deque[Event] = deque(maxlen=max_history)
        self._pending: Set[asyncio.Task] = set()

    def on(self, event: str, handler: EventHandler) -> EventHandler:
        """Subscribe ``handler`` to ``event`` (``"*"`` for every event)."""
        self._handlers[event].append(handler)
        return handler

    def once(self, event: str, handler: EventHandler) -> EventHandler:
        """Subscribe for a single delivery."""

        def _wrapper(payload):
            self.off(event, _wrapper)
            return handler(payload)

        return self.on(event, _wrapper)

    def off(self, event: str, handler: EventHandler) -> bool:
        handlers = self._handlers.get(event)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._handlers[event]
        return True

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    def emit(self, event: str, payload: Any = None) -> int:
        """Publish ``payload`` under ``event``; returns the number of handlers invoked."""
        record = Event(name=event, source=self.source, data=payload)
        self._history.append(record)

        # Snapshot so handlers may (un)subscribe while being called
        handlers = [(h, payload) for h in self._handlers.get(event, ())]
        handlers += [(h, record) for h in self._handlers.get(WILDCARD, ())]
        for handler, argument in handlers:
            try:
                result = handler(argument)
                if inspect.isawaitable(result):
                    self._schedule(event, result)
            except Exception:
                logger.exception(f"Error in '{event}' handler {getattr(handler, '__name__', handler)!r}")
        return len(handlers)

    def recent_events(self, limit: Optional[int] = None, name: Optional[str] = None) -> List[Event]:
        events = [e for e in self._history if name is None or e.name == name]
        if limit is not None:
            events = events[-limit:]
        return events

    async def drain(self) -> None:
        """Wait for scheduled coroutine handlers to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, event: str, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"Dropping async '{event}' handler: no running event loop")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(self._run_async_handler(event, awaitable))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _run_async_handler(event: str, awaitable) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception(f"Error in async '{event}' handler")
