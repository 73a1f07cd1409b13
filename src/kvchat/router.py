"""Fan-out of notifications to independently registered handlers."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class NotificationRouter(Generic[T]):
    """Registry of handler closures with per-handler fault isolation.

    ``dispatch`` calls every handler registered at the time it is invoked.
    A handler that raises is logged and skipped; the others still run and
    the caller never sees the error. A handler removed before its turn
    (including by an earlier handler in the same dispatch) is not called.

    Handlers may be coroutine functions. Their coroutines are scheduled as
    tasks in registration order; failures are logged when the task ends.
    """

    __slots__ = ("_name", "_handlers", "_next_id", "_tasks")

    def __init__(self, name: str = "notification") -> None:
        self._name = name
        self._handlers: dict[int, Callable[[T], Any]] = {}
        self._next_id = 0
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._handlers)

    def subscribe(self, handler: Callable[[T], Any]) -> Unsubscribe:
        """Register a handler.

        Returns:
            A function that removes exactly this registration. Calling it
            more than once is harmless.
        """
        self._next_id += 1
        handler_id = self._next_id
        self._handlers[handler_id] = handler

        def unsubscribe() -> None:
            self._handlers.pop(handler_id, None)

        return unsubscribe

    def clear(self) -> None:
        self._handlers.clear()

    def dispatch(self, item: T) -> int:
        """Deliver ``item`` to every registered handler.

        Returns:
            The number of handlers invoked.
        """
        invoked = 0
        for handler_id in list(self._handlers):
            handler = self._handlers.get(handler_id)
            if handler is None:
                continue
            invoked += 1
            try:
                result = handler(item)
            except Exception:
                logger.exception("Error in %s handler", self._name)
                continue
            if inspect.isawaitable(result):
                self._track(result)
        return invoked

    async def drain(self) -> None:
        """Wait for handler tasks scheduled by earlier dispatches."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _track(self, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Error in async %s handler", self._name, exc_info=exc)
