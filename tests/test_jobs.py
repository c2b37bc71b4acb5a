"""Tests for the single-consumer job queue."""

from __future__ import annotations

import asyncio
from typing import List

import pytest

from conftest import shop_job
from lowcode_crawler.jobs import JobQueue, JobRun, RunStatus


async def wait_until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class TestJobQueue:
    @pytest.mark.asyncio
    async def test_jobs_run_in_submission_order(self) -> None:
        order: List[str] = []

        async def handler(run: JobRun) -> None:
            order.append(run.job_id)
            run.status = RunStatus.SUCCESS

        queue = JobQueue(handler)
        runs = [queue.submit(shop_job(), task_id=f"t{i}") for i in range(3)]
        await queue.start()
        await queue.join()
        await queue.stop()

        assert order == [run.job_id for run in runs]
        assert all(queue.get(run.job_id).status == RunStatus.SUCCESS for run in runs)

    @pytest.mark.asyncio
    async def test_one_job_at_a_time(self) -> None:
        active = {"now": 0, "max": 0}

        async def handler(run: JobRun) -> None:
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
            await asyncio.sleep(0)
            active["now"] -= 1

        queue = JobQueue(handler)
        await queue.start()
        for _ in range(4):
            queue.submit(shop_job())
        await queue.join()
        await queue.stop()

        assert active["max"] == 1

    @pytest.mark.asyncio
    async def test_handler_error_keeps_consumer_alive(self) -> None:
        seen: List[str] = []

        async def handler(run: JobRun) -> None:
            seen.append(run.job_id)
            if len(seen) == 1:
                raise RuntimeError("boom")

        queue = JobQueue(handler)
        await queue.start()
        queue.submit(shop_job())
        queue.submit(shop_job())
        await queue.join()
        await queue.stop()

        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_clear_queue_removes_only_pending_jobs(self) -> None:
        release = asyncio.Event()
        processed: List[str] = []
        removed_reports: List[str] = []

        async def handler(run: JobRun) -> None:
            await release.wait()
            processed.append(run.job_id)
            run.status = RunStatus.SUCCESS

        async def on_removed(run: JobRun) -> None:
            removed_reports.append(run.job_id)

        queue = JobQueue(handler, on_removed=on_removed)
        await queue.start()
        running = queue.submit(shop_job())
        await wait_until(lambda: queue.get_queue_status()["is_processing"])
        waiting = [queue.submit(shop_job()) for _ in range(2)]

        status = queue.get_queue_status()
        assert status["current_job"] == running.job_id
        assert status["queued_jobs"] == [run.job_id for run in waiting]

        removed = await queue.clear_queue()

        assert removed == [run.job_id for run in waiting]
        assert removed_reports == removed
        for run in waiting:
            assert run.status == RunStatus.FAILED
            assert run.message == "Removed from queue"
        assert queue.get_queue_status()["queue_length"] == 0

        release.set()
        await queue.join()
        await queue.stop()
        assert processed == [running.job_id]
        assert running.status == RunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_clear_empty_queue(self) -> None:
        async def handler(run: JobRun) -> None:
            return None

        queue = JobQueue(handler)
        assert await queue.clear_queue() == []

    @pytest.mark.asyncio
    async def test_finished_history_is_bounded(self) -> None:
        async def handler(run: JobRun) -> None:
            run.status = RunStatus.SUCCESS

        queue = JobQueue(handler, max_finished_runs=2)
        runs = [queue.submit(shop_job()) for _ in range(3)]
        await queue.start()
        await queue.join()
        await queue.stop()

        assert queue.get(runs[0].job_id) is None
        assert queue.get(runs[1].job_id) is runs[1]
        assert queue.get(runs[2].job_id) is runs[2]

    @pytest.mark.asyncio
    async def test_removed_jobs_count_towards_history(self) -> None:
        async def handler(run: JobRun) -> None:
            return None

        queue = JobQueue(handler, max_finished_runs=1)
        runs = [queue.submit(shop_job()) for _ in range(2)]

        assert await queue.clear_queue() == [run.job_id for run in runs]
        assert queue.get(runs[0].job_id) is None
        assert queue.get(runs[1].job_id).status == RunStatus.FAILED

    def test_submit_with_given_job_id(self) -> None:
        async def handler(run: JobRun) -> None:
            return None

        queue = JobQueue(handler)
        run = queue.submit(shop_job(), job_id="fixed-id")

        assert run.job_id == "fixed-id"
        assert queue.get("fixed-id") is run
        assert queue.get_queue_status()["queued_jobs"] == ["fixed-id"]

    def test_snapshot_hides_bytes_and_records(self) -> None:
        run = JobRun(job_id="abc", definition=shop_job(), screenshot=b"png")
        run.records = [{"title": "x"}]
        snapshot = run.snapshot()
        assert "screenshot" not in snapshot
        assert "records" not in snapshot
        assert snapshot["result_record_count"] == 1
        assert snapshot["status"] == "queued"
