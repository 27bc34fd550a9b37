"""Tests for the ScheduledJob."""

import asyncio
from collections.abc import AsyncGenerator

import pytest

from gitops_local.task import ScheduledJob
from gitops_local.task.service import TaskServiceImpl


class Recorder:
    """A pass callback recording the reasons of each pass."""

    def __init__(self) -> None:
        self.passes: list[frozenset[str]] = []
        self.release = asyncio.Event()
        self.release.set()
        self.started = asyncio.Event()
        self.error: Exception | None = None

    async def __call__(self, reasons: frozenset[str]) -> None:
        self.passes.append(reasons)
        self.started.set()
        await self.release.wait()
        if self.error is not None:
            raise self.error


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
async def job(recorder: Recorder) -> AsyncGenerator[ScheduledJob, None]:
    """A started job using the recorder as its callback."""
    job = ScheduledJob("guestbook", recorder, TaskServiceImpl())
    job.start()
    yield job
    await job.stop()


async def test_trigger(job: ScheduledJob, recorder: Recorder) -> None:
    """Test an explicit trigger runs a pass."""
    assert job.name == "guestbook"
    job.trigger("refresh")
    await asyncio.wait_for(job.wait_idle(), timeout=1.0)

    assert recorder.passes == [frozenset({"refresh"})]
    assert job.passes == 1
    assert not job.running


async def test_triggers_merged(job: ScheduledJob, recorder: Recorder) -> None:
    """Test triggers arriving during a pass are merged into one follow-up pass."""
    recorder.release.clear()
    job.trigger("poll")
    await asyncio.wait_for(recorder.started.wait(), timeout=1.0)
    assert job.running

    job.trigger("refresh")
    job.trigger("sync")
    job.trigger("refresh")
    recorder.release.set()
    await asyncio.wait_for(job.wait_idle(), timeout=1.0)

    assert recorder.passes == [frozenset({"poll"}), frozenset({"refresh", "sync"})]


async def test_periodic_timer(job: ScheduledJob, recorder: Recorder) -> None:
    """Test a timer produces a pass on every interval."""
    job.every(0.01, "poll", immediate=True)
    async with asyncio.timeout(1.0):
        while len(recorder.passes) < 3:
            await asyncio.sleep(0.01)

    assert all(reasons == frozenset({"poll"}) for reasons in recorder.passes)


async def test_timer_not_immediate(job: ScheduledJob, recorder: Recorder) -> None:
    """Test a timer first fires after its interval."""
    job.every(60, "poll")
    await asyncio.sleep(0.05)
    assert recorder.passes == []

    # Registering the reason again replaces the interval
    job.every(0.01, "poll")
    async with asyncio.timeout(1.0):
        while not recorder.passes:
            await asyncio.sleep(0.01)


async def test_trigger_later(job: ScheduledJob, recorder: Recorder) -> None:
    """Test a delayed trigger."""
    job.trigger_later(0.02, "retry")
    await asyncio.sleep(0)
    assert recorder.passes == []

    async with asyncio.timeout(1.0):
        while not recorder.passes:
            await asyncio.sleep(0.01)
    assert recorder.passes == [frozenset({"retry"})]


async def test_error_keeps_running(
    job: ScheduledJob, recorder: Recorder, caplog: pytest.LogCaptureFixture
) -> None:
    """Test a failing pass is logged and the job keeps running."""
    recorder.error = RuntimeError("pass failed")
    job.trigger("poll")
    await asyncio.wait_for(job.wait_idle(), timeout=1.0)
    assert "Job guestbook pass failed" in caplog.text

    recorder.error = None
    job.trigger("refresh")
    await asyncio.wait_for(job.wait_idle(), timeout=1.0)
    assert recorder.passes == [frozenset({"poll"}), frozenset({"refresh"})]


async def test_stop(recorder: Recorder) -> None:
    """Test stopping cancels an in-flight pass and pending delayed triggers."""
    job = ScheduledJob("guestbook", recorder, TaskServiceImpl())
    job.start()
    job.start()
    recorder.release.clear()
    job.trigger("poll")
    job.trigger_later(0.01, "retry")
    await asyncio.wait_for(recorder.started.wait(), timeout=1.0)

    await job.stop()
    await asyncio.sleep(0.05)

    assert recorder.passes == [frozenset({"poll"})]
    await asyncio.wait_for(job.wait_idle(), timeout=1.0)
