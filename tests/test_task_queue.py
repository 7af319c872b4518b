import logging

import pytest
import pytest_asyncio

from app.services.task_queue import BackgroundTaskQueue


@pytest_asyncio.fixture
async def queue():
    queue = BackgroundTaskQueue()
    queue.start()
    yield queue
    await queue.stop()


@pytest.mark.asyncio
async def test_jobs_run_in_submission_order(queue):
    seen = []

    async def record(value, suffix=""):
        seen.append(f"{value}{suffix}")

    queue.submit(record, "a")
    queue.submit(record, "b", suffix="!")
    queue.submit(record, "c")
    await queue.join()

    assert seen == ["a", "b!", "c"]
    assert queue.processed == 3
    assert queue.failed == 0
    assert queue.pending == 0


@pytest.mark.asyncio
async def test_failing_job_is_logged_and_counted(queue, caplog):
    ran = []

    async def boom():
        raise RuntimeError("store unavailable")

    async def after():
        ran.append(True)

    with caplog.at_level(logging.ERROR, logger="app.services.task_queue"):
        queue.submit(boom, name="usage_increment")
        queue.submit(after)
        await queue.join()

    assert queue.failed == 1
    assert queue.processed == 1
    assert ran == [True]
    assert "usage_increment" in caplog.text


@pytest.mark.asyncio
async def test_delayed_job_counts_as_pending_until_run(queue):
    ran = []

    async def record():
        ran.append(True)

    queue.submit(record, delay=0.01)
    assert queue.pending == 1
    assert ran == []

    await queue.join()
    assert ran == [True]
    assert queue.pending == 0


@pytest.mark.asyncio
async def test_stop_cancels_worker():
    queue = BackgroundTaskQueue()
    queue.start()
    await queue.stop()
    assert queue._worker_task is None
