"""Job runs and the single-consumer FIFO queue.

Jobs run strictly one at a time. ``submit`` never blocks; the consumer task
picks the job up as soon as it is idle. ``clear_queue`` is the only stop
operation and removes jobs that have not started yet.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import uuid
from collections import OrderedDict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from .metrics import QUEUE_SIZE
from .models import JobDefinition


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class JobRun(BaseModel):
    """Mutable state of one execution, owned by the worker running it."""

    job_id: str
    definition: JobDefinition
    task_id: Optional[str] = None
    status: RunStatus = RunStatus.QUEUED
    progress: float = 0.0
    message: str = "Queued"
    records: List[Dict[str, Optional[str]]] = Field(default_factory=list)
    dropped_records: int = 0
    candidates: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)
    screenshot: Optional[bytes] = Field(None, repr=False)
    screenshot_path: Optional[str] = None
    result_path: Optional[str] = None
    archive_path: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    created_at: datetime.datetime = Field(default_factory=datetime.datetime.utcnow)
    started_at: Optional[datetime.datetime] = None
    finished_at: Optional[datetime.datetime] = None

    @property
    def status_with_elapsed(self) -> str:
        """Return status with elapsed time for running jobs."""
        if self.status != RunStatus.RUNNING or not self.started_at:
            return self.status.value
        elapsed_seconds = int((datetime.datetime.utcnow() - self.started_at).total_seconds())
        if elapsed_seconds < 60:
            return f"running {elapsed_seconds}s"
        return f"running {elapsed_seconds // 60}m {elapsed_seconds % 60}s"

    def snapshot(self) -> Dict[str, Any]:
        """Public view without raw screenshot bytes or record bodies."""
        return {
            "job_id": self.job_id,
            "task_id": self.task_id,
            "status": self.status.value,
            "status_with_elapsed": self.status_with_elapsed,
            "progress": round(self.progress, 1),
            "message": self.message,
            "result_record_count": len(self.records),
            "dropped_record_count": self.dropped_records,
            "candidates": self.candidates,
            "screenshot_path": self.screenshot_path,
            "result_path": self.result_path,
            "archive_path": self.archive_path,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


RunHandler = Callable[[JobRun], Awaitable[None]]
RemovedHandler = Callable[[JobRun], Awaitable[None]]

# Finished runs kept for lookup; older ones are forgotten.
MAX_FINISHED_RUNS = 200


class JobQueue:
    """FIFO channel plus exactly one consumer task."""

    def __init__(
        self,
        handler: RunHandler,
        *,
        on_removed: Optional[RemovedHandler] = None,
        max_finished_runs: int = MAX_FINISHED_RUNS,
        logger: Optional[logging.Logger] = None,
    ):
        self._handler = handler
        self._on_removed = on_removed
        self.max_finished_runs = max_finished_runs
        self.logger = logger or logging.getLogger("crawler.jobs")
        self._queue: asyncio.Queue = asyncio.Queue()
        self._runs: Dict[str, JobRun] = {}
        self._finished: "OrderedDict[str, None]" = OrderedDict()  # terminal ids, oldest first
        self._pending: List[str] = []  # queued ids, FIFO order
        self._current: Optional[JobRun] = None
        self._consumer: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume())
            self.logger.info("Job queue consumer started")

    async def stop(self) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None
            self.logger.info("Job queue consumer stopped")

    @staticmethod
    def new_job_id() -> str:
        return uuid.uuid4().hex

    def submit(
        self,
        definition: JobDefinition,
        *,
        task_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> JobRun:
        run = JobRun(job_id=job_id or self.new_job_id(), definition=definition, task_id=task_id)
        self._runs[run.job_id] = run
        self._queue.put_nowait(run.job_id)
        self._pending.append(run.job_id)
        QUEUE_SIZE.set(self._queue.qsize())
        self.logger.info(f"Submitted job {run.job_id} ({len(definition.urls)} targets)")
        return run

    def get(self, job_id: str) -> Optional[JobRun]:
        return self._runs.get(job_id)

    def get_queue_status(self) -> Dict[str, Any]:
        queued = [job_id for job_id in self._pending if job_id in self._runs]
        return {
            "queue_length": len(queued),
            "is_processing": self._current is not None,
            "current_job": self._current.job_id if self._current else None,
            "queued_jobs": queued,
        }

    async def clear_queue(self) -> List[str]:
        """Remove every not-yet-started job and mark it failed."""
        removed: List[str] = []
        while True:
            try:
                job_id = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            self._discard_pending(job_id)
            run = self._runs.get(job_id)
            if run is None or run.status != RunStatus.QUEUED:
                continue
            run.status = RunStatus.FAILED
            run.message = "Removed from queue"
            run.finished_at = datetime.datetime.utcnow()
            removed.append(job_id)
            if self._on_removed is not None:
                try:
                    await self._on_removed(run)
                except Exception as e:
                    self.logger.error(f"Error reporting removal of {job_id}: {e}")
            self._retire(job_id)

        QUEUE_SIZE.set(0)
        self.logger.info(f"Cleared {len(removed)} queued jobs")
        return removed

    async def join(self) -> None:
        """Wait until every submitted job has been processed."""
        await self._queue.join()

    async def _consume(self) -> None:
        while True:
            job_id = await self._queue.get()
            self._discard_pending(job_id)
            QUEUE_SIZE.set(self._queue.qsize())
            run = self._runs.get(job_id)
            try:
                if run is None or run.status != RunStatus.QUEUED:
                    continue
                self._current = run
                await self._handler(run)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # The handler owns job failure; this only keeps the consumer alive.
                self.logger.error(f"Unexpected error processing job {job_id}: {e}", exc_info=True)
            finally:
                if self._current is not None:
                    self._retire(job_id)
                self._current = None
                self._queue.task_done()

    def _discard_pending(self, job_id: str) -> None:
        if job_id in self._pending:
            self._pending.remove(job_id)

    def _retire(self, job_id: str) -> None:
        """Record a finished run and forget the oldest beyond the history limit."""
        self._finished[job_id] = None
        while len(self._finished) > self.max_finished_runs:
            oldest, _ = self._finished.popitem(last=False)
            self._runs.pop(oldest, None)
            self.logger.debug(f"Forgot finished job {oldest}")
