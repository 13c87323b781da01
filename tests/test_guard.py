import asyncio

import pytest

from vibecap.exceptions import SessionBusyError
from vibecap.interview.guard import GuardState, SessionGuard


@pytest.mark.asyncio
async def test_hold_marks_processing_and_releases() -> None:
    guard = SessionGuard()
    assert guard.state("s1") is GuardState.IDLE
    async with guard.hold("s1"):
        assert guard.state("s1") is GuardState.PROCESSING
        assert guard.active == 1
    assert guard.state("s1") is GuardState.IDLE
    assert guard.active == 0


@pytest.mark.asyncio
async def test_same_session_is_rejected_while_processing() -> None:
    guard = SessionGuard()
    async with guard.hold("s1"):
        with pytest.raises(SessionBusyError):
            async with guard.hold("s1"):
                pass
        assert await guard.try_acquire("s1") is False
    assert await guard.try_acquire("s1") is True
    guard.release("s1")


@pytest.mark.asyncio
async def test_other_sessions_run_in_parallel_by_default() -> None:
    guard = SessionGuard(single_worker=False)
    async with guard.hold("s1"):
        async with guard.hold("s2"):
            assert guard.active == 2


@pytest.mark.asyncio
async def test_single_worker_rejects_any_second_session() -> None:
    guard = SessionGuard(single_worker=True)
    async with guard.hold("s1"):
        assert await guard.try_acquire("s2") is False
    assert await guard.try_acquire("s2") is True
    guard.release("s2")


@pytest.mark.asyncio
async def test_released_even_when_block_raises() -> None:
    guard = SessionGuard(single_worker=True)
    with pytest.raises(RuntimeError):
        async with guard.hold("s1"):
            raise RuntimeError("processor failed")
    assert guard.is_processing("s1") is False
    assert await guard.try_acquire("s2") is True
    guard.release("s2")


@pytest.mark.asyncio
async def test_concurrent_admissions_only_one_wins() -> None:
    """Overlapping deliveries for one session: exactly one gets in."""
    guard = SessionGuard()
    started = asyncio.Event()
    admitted = []

    async def worker(tag: str) -> None:
        try:
            async with guard.hold("s1"):
                admitted.append(tag)
                started.set()
                await asyncio.sleep(0.01)
        except SessionBusyError:
            pass

    await asyncio.gather(*(worker(str(i)) for i in range(10)))
    assert len(admitted) == 1
    assert started.is_set()
    assert guard.active == 0


@pytest.mark.asyncio
async def test_release_of_unheld_session_is_harmless() -> None:
    guard = SessionGuard(single_worker=True)
    async with guard.hold("s1"):
        guard.release("s2")
        assert guard.is_processing("s1") is True
        assert await guard.try_acquire("s3") is False
