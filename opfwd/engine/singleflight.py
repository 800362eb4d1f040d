from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, TypeVar


T = TypeVar("T")
CallFn = Callable[[], Awaitable[T]]


class SingleFlight(Generic[T]):
    """
    Collapse concurrent calls that share a key into one in-flight task.
      - callers arriving while a task for the key runs await that task
      - once it finishes the key is forgotten, so the next call runs afresh
      - the shared task is shielded: one waiter being cancelled does not
        cancel it for the others
    """

    def __init__(self, name: str = "singleflight") -> None:
        self._name = name
        self._calls: dict[str, asyncio.Task[T]] = {}

    def in_flight(self, key: str) -> bool:
        task = self._calls.get(key)
        return task is not None and not task.done()

    async def do(self, key: str, fn: CallFn[T]) -> T:
        task = self._calls.get(key)
        if task is None or task.done():
            task = asyncio.create_task(fn(), name=f"opfwd.{self._name}.{key}")
            self._calls[key] = task
            task.add_done_callback(lambda t, key=key: self._forget(key, t))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task[T]) -> None:
        # Mark the outcome retrieved even if every waiter was cancelled.
        if not task.cancelled():
            task.exception()
        if self._calls.get(key) is task:
            del self._calls[key]
