from datetime import UTC, datetime, timedelta

import pytest

from pgjobs.infra.adapters import MemoryAdapter
from pgjobs.jobs.locker import Locker
from pgjobs.jobs.service import enqueue

from conftest import FakeClock, held_lock

PAST = datetime(2020, 1, 1, tzinfo=UTC)


class RacingAdapter(MemoryAdapter):
    """Deletes the locked row just before the locker re-checks it."""

    async def execute(self, command, params=None):
        if command == "check_job":
            self.rows.pop(params["job_id"], None)
        return await super().execute(command, params)


@pytest.fixture
def locker(adapter, fake_clock):
    return Locker(adapter, clock=fake_clock)


@pytest.mark.asyncio
async def test_empty_queue_yields_none_repeatedly(adapter, locker):
    for _ in range(3):
        async with locker.locked_job() as job:
            assert job is None

    assert adapter.rows == {}
    assert adapter.locked_job_ids() == set()
    assert locker.cursor == 0


@pytest.mark.asyncio
async def test_lock_held_only_inside_block(adapter, locker):
    queued = await enqueue(adapter, "record", 1)

    async with locker.locked_job() as job:
        assert job.job_id == queued.job_id
        assert job.args == [1]
        assert adapter.locked_job_ids() == {queued.job_id}

    assert adapter.locked_job_ids() == set()
    # The row is untouched; removing it is the worker's job
    assert queued.job_id in adapter.rows


@pytest.mark.asyncio
async def test_lock_released_when_block_raises(adapter, locker):
    await enqueue(adapter, "record")

    with pytest.raises(RuntimeError):
        async with locker.locked_job():
            raise RuntimeError("boom")

    assert adapter.locked_job_ids() == set()


@pytest.mark.asyncio
async def test_locks_lowest_priority_first(adapter, locker):
    for priority in [5, 4, 3, 2, 1]:
        await enqueue(adapter, "record", priority=priority, run_at=PAST)

    async with locker.locked_job() as job:
        assert job.priority == 1


@pytest.mark.asyncio
async def test_skips_jobs_scheduled_in_the_future(adapter, locker):
    await enqueue(adapter, "record", run_at=datetime.now(UTC) + timedelta(seconds=60))

    async with locker.locked_job() as job:
        assert job is None


@pytest.mark.asyncio
async def test_skips_non_retryable_jobs(adapter, locker):
    await enqueue(adapter, "record", retryable=False)

    async with locker.locked_job() as job:
        assert job is None


@pytest.mark.asyncio
async def test_only_locks_from_its_own_queue(adapter, fake_clock):
    await enqueue(adapter, "record", queue="other")
    mine = await enqueue(adapter, "record", queue="mine")

    locker = Locker(adapter, queue="mine", clock=fake_clock)
    async with locker.locked_job() as job:
        assert job.job_id == mine.job_id


@pytest.mark.asyncio
async def test_skips_jobs_locked_by_another_session(adapter, locker):
    first = await enqueue(adapter, "record", run_at=PAST)
    second = await enqueue(adapter, "record", run_at=PAST)

    async with held_lock(adapter, first.job_id):
        async with locker.locked_job() as job:
            assert job.job_id == second.job_id


@pytest.mark.asyncio
async def test_cursor_follows_last_locked_job(adapter, locker):
    queued = await enqueue(adapter, "record")

    async with locker.locked_job():
        pass

    assert locker.cursor == queued.job_id


@pytest.mark.asyncio
async def test_cursor_skips_jobs_behind_it(adapter, locker):
    first = await enqueue(adapter, "record", run_at=PAST)
    second = await enqueue(adapter, "record", run_at=PAST)

    locker.cursor = second.job_id
    locker.cursor_expires_at = 100.0
    async with locker.locked_job() as job:
        assert job.job_id == second.job_id

    # Once the cursor expires, the scan restarts from the front
    locker.cursor_expires_at = 0.0
    async with locker.locked_job() as job:
        assert job.job_id == first.job_id


@pytest.mark.asyncio
async def test_cursor_expires_after_configured_time(adapter, fake_clock):
    locker = Locker(adapter, cursor_expiry=5.0, clock=fake_clock)
    first = await enqueue(adapter, "record", run_at=PAST)
    second = await enqueue(adapter, "record", run_at=PAST)

    async with locker.locked_job():
        pass
    locker.cursor = second.job_id

    fake_clock.advance(4.0)
    async with locker.locked_job() as job:
        assert job.job_id == second.job_id

    fake_clock.advance(5.0)
    async with locker.locked_job() as job:
        assert job.job_id == first.job_id


@pytest.mark.asyncio
async def test_retries_from_front_when_nothing_past_cursor(adapter, locker):
    queued = await enqueue(adapter, "record")
    locker.cursor = queued.job_id + 100
    locker.cursor_expires_at = 100.0

    async with locker.locked_job() as job:
        assert job.job_id == queued.job_id


@pytest.mark.asyncio
async def test_cursor_resets_when_nothing_found(adapter, locker):
    locker.cursor = 42
    locker.cursor_expires_at = 100.0

    async with locker.locked_job() as job:
        assert job is None

    assert locker.cursor == 0


@pytest.mark.asyncio
async def test_vanished_job_is_unlocked_and_reported_as_none(fake_clock):
    adapter = RacingAdapter()
    await enqueue(adapter, "record")
    locker = Locker(adapter, clock=fake_clock)

    async with locker.locked_job() as job:
        assert job is None
        assert adapter.locked_job_ids() == set()

    assert locker.cursor == 0


@pytest.mark.asyncio
async def test_lock_queries_are_throttled(adapter):
    clock = FakeClock()
    locker = Locker(adapter, window=10.0, budget=1.0, clock=clock)

    original = adapter.execute

    async def slow_execute(command, params=None):
        if command == "lock_job":
            clock.advance(1.0)
        return await original(command, params)

    adapter.execute = slow_execute

    async with locker.locked_job():
        pass
    async with locker.locked_job():
        pass

    # The first query overdrew the bucket by 1s, repaid at 0.1s per second
    assert clock.sleeps
    assert sum(clock.sleeps) >= 8.9
