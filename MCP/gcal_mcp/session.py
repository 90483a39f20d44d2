"""A single OAuth authorization attempt and the callers waiting on it."""

from __future__ import annotations

import asyncio
from typing import Generic, TypeVar

T = TypeVar("T")


class AuthSession(Generic[T]):
    """
    Tracks the waiters, polling task and timeout task of one authorization.

    A session ends in exactly one of three ways: resolved, rejected, or
    cancelled. Cancelling only stops the timers; waiters registered before the
    cancellation are left pending.
    """

    def __init__(self) -> None:
        self._waiters: list[asyncio.Future[T]] = []
        self._poll_task: asyncio.Task[None] | None = None
        self._timeout_task: asyncio.Task[None] | None = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def pending_waiters(self) -> int:
        return len(self._waiters)

    def add_waiter(self, waiter: asyncio.Future[T]) -> None:
        self._waiters.append(waiter)

    def set_poll_task(self, task: asyncio.Task[None]) -> None:
        self._poll_task = task

    def set_timeout_task(self, task: asyncio.Task[None]) -> None:
        self._timeout_task = task

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._clear_timers()

    def resolve_all(self, credential: T) -> None:
        if self._cancelled:
            return
        self._clear_timers()
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(credential)

    def reject_all(self, error: BaseException) -> None:
        if self._cancelled:
            return
        self._clear_timers()
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(error)

    def _clear_timers(self) -> None:
        current = asyncio.current_task() if _loop_running() else None
        for task in (self._poll_task, self._timeout_task):
            # A timer settling its own session finishes on its own.
            if task is not None and task is not current:
                task.cancel()
        self._poll_task = None
        self._timeout_task = None


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
