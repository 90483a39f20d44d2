from __future__ import annotations

import asyncio

import pytest

from gcal_mcp.session import AuthSession


async def _forever() -> None:
    await asyncio.sleep(3600)


def _session_with_timers() -> tuple[AuthSession[str], asyncio.Task, asyncio.Task]:
    session: AuthSession[str] = AuthSession()
    poll, timeout = asyncio.create_task(_forever()), asyncio.create_task(_forever())
    session.set_poll_task(poll)
    session.set_timeout_task(timeout)
    return session, poll, timeout


async def test_resolve_all_settles_every_waiter_and_clears_timers() -> None:
    session, poll, timeout = _session_with_timers()
    loop = asyncio.get_running_loop()
    waiters = [loop.create_future() for _ in range(3)]
    for waiter in waiters:
        session.add_waiter(waiter)

    session.resolve_all("credential")
    await asyncio.sleep(0)

    assert [w.result() for w in waiters] == ["credential"] * 3
    assert session.pending_waiters == 0
    assert poll.cancelled() and timeout.cancelled()


async def test_reject_all_settles_every_waiter() -> None:
    session: AuthSession[str] = AuthSession()
    waiter = asyncio.get_running_loop().create_future()
    session.add_waiter(waiter)

    session.reject_all(TimeoutError("late"))

    with pytest.raises(TimeoutError):
        await waiter


async def test_cancel_clears_timers_but_leaves_waiters_pending() -> None:
    session, poll, timeout = _session_with_timers()
    waiter = asyncio.get_running_loop().create_future()
    session.add_waiter(waiter)

    session.cancel()
    session.cancel()
    await asyncio.sleep(0)

    assert session.cancelled
    assert poll.cancelled() and timeout.cancelled()
    assert not waiter.done()


async def test_cancelled_session_ignores_settlement() -> None:
    session: AuthSession[str] = AuthSession()
    waiter = asyncio.get_running_loop().create_future()
    session.add_waiter(waiter)
    session.cancel()

    session.resolve_all("credential")
    session.reject_all(RuntimeError("boom"))

    assert not waiter.done()
    assert session.pending_waiters == 1


async def test_waiter_cancelled_by_caller_is_skipped() -> None:
    session: AuthSession[str] = AuthSession()
    loop = asyncio.get_running_loop()
    gone, alive = loop.create_future(), loop.create_future()
    gone.cancel()
    session.add_waiter(gone)
    session.add_waiter(alive)

    session.resolve_all("credential")

    assert alive.result() == "credential"


async def test_timer_settling_its_own_session_is_not_cancelled() -> None:
    session: AuthSession[str] = AuthSession()
    waiter = asyncio.get_running_loop().create_future()
    session.add_waiter(waiter)

    async def poll() -> str:
        await asyncio.sleep(0)
        session.resolve_all("credential")
        await asyncio.sleep(0)
        return "finished"

    task = asyncio.create_task(poll())
    session.set_poll_task(task)

    assert await task == "finished"
    assert waiter.result() == "credential"
