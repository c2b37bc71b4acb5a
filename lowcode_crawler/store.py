"""Persistence collaborator for run state.

The surrounding system owns the real store; the engine only calls three
operations on it. ``SafeRunStore`` makes every call best-effort so a broken
store can never fail a crawl.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, Optional, Protocol


class RunStore(Protocol):
    async def create_run(self, job_id: str, details: Dict[str, Any]) -> None: ...

    async def update_run_status(self, job_id: str, status: str, message: str) -> None: ...

    async def finalize_run(
        self, job_id: str, result_path: str, screenshot_path: Optional[str] = None
    ) -> None: ...


class InMemoryRunStore:
    """Default store when no external one is wired in."""

    def __init__(self) -> None:
        self.runs: Dict[str, Dict[str, Any]] = {}

    async def create_run(self, job_id: str, details: Dict[str, Any]) -> None:
        self.runs[job_id] = {
            **details,
            "status": "queued",
            "log": "",
            "created_at": datetime.datetime.utcnow().isoformat(),
        }

    async def update_run_status(self, job_id: str, status: str, message: str) -> None:
        run = self.runs.setdefault(job_id, {})
        run["status"] = status
        run["log"] = message
        if status in ("success", "failed"):
            run["ended_at"] = datetime.datetime.utcnow().isoformat()

    async def finalize_run(
        self, job_id: str, result_path: str, screenshot_path: Optional[str] = None
    ) -> None:
        run = self.runs.setdefault(job_id, {})
        run["result_path"] = result_path
        if screenshot_path:
            run["screenshot_path"] = screenshot_path


class SafeRunStore:
    """Wraps a store; failures are logged and swallowed."""

    def __init__(self, inner: RunStore, logger: Optional[logging.Logger] = None):
        self.inner = inner
        self.logger = logger or logging.getLogger("crawler.store")

    async def create_run(self, job_id: str, details: Dict[str, Any]) -> None:
        try:
            await self.inner.create_run(job_id, details)
        except Exception as e:
            self.logger.error(f"Failed to create run {job_id}: {e}")

    async def update_run_status(self, job_id: str, status: str, message: str) -> None:
        try:
            await self.inner.update_run_status(job_id, status, message)
        except Exception as e:
            self.logger.error(f"Failed to update run {job_id} to {status}: {e}")

    async def finalize_run(
        self, job_id: str, result_path: str, screenshot_path: Optional[str] = None
    ) -> None:
        try:
            await self.inner.finalize_run(job_id, result_path, screenshot_path)
        except Exception as e:
            self.logger.error(f"Failed to finalize run {job_id}: {e}")
