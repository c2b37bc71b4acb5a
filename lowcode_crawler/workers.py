"""Crawl worker: executes one job from start to terminal status.

Per job: announce running, open one browser session, visit each target
(waits, optional scroll and region detection, extraction), drop empty
records, optionally package them and write the result file. Progress is
broadcast after every sub-step. Target-level failures skip that target;
anything job-fatal ends the run ``failed`` at 0% with partial records
discarded.
"""

from __future__ import annotations

import datetime
import json
import logging
import os
import pathlib
import time
from typing import Any, List, Optional, Sequence, Tuple

import httpx
from playwright.async_api import Page

from .config import ServiceConfig
from .errors import (
    ConfigurationError,
    CrawlError,
    NoValidDataError,
    PackagingError,
    classify_exception,
)
from .extraction.detector import detect
from .extraction.selectors import ListingCursor, Record, extract_records
from .jobs import JobRun, RunStatus
from .metrics import JOB_COUNT, JOB_DURATION, PAGE_COUNT, RECORD_COUNT
from .models import JobDefinition, OutputFormat, PackageConfig, ProgressEvent
from .notifier import ProgressNotifier
from .packaging import PackagePlan, package
from .runtime import BrowserRuntime, viewport_dict
from .store import SafeRunStore

# Share of the progress bar spent on target pages; the rest covers
# writing results and packaging.
TARGETS_SHARE = 95.0

# Fraction of one target's slot reached after each sub-step.
STEP_LOADED = 0.10
STEP_VIEWPORT = 0.20
STEP_WAITS = 0.40
STEP_SCROLLED = 0.50
STEP_DETECTED = 0.60
STEP_EXTRACTED = 0.85
STEP_DONE = 1.0

SCROLL_SCRIPT = """
async ({ distance, delay, maxDistance }) => {
  let scrolled = 0;
  while (scrolled < maxDistance) {
    window.scrollBy(0, distance);
    scrolled += distance;
    await new Promise((resolve) => setTimeout(resolve, delay));
  }
  return scrolled;
}
"""


def is_empty_value(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def filter_records(records: Sequence[Record]) -> Tuple[List[Record], int]:
    """Split off records whose every field is null or blank.

    Returns the kept records and the dropped count; the two always add up to
    ``len(records)``.
    """
    kept = [r for r in records if not all(is_empty_value(v) for v in r.values())]
    return kept, len(records) - len(kept)


def target_progress(index: int, total: int, fraction: float) -> float:
    return (index + fraction) / max(total, 1) * TARGETS_SHARE


class CrawlWorker:
    """Runs jobs handed over by the queue, one at a time."""

    def __init__(
        self,
        *,
        runtime: BrowserRuntime,
        store: SafeRunStore,
        notifier: ProgressNotifier,
        config: ServiceConfig,
        logger: logging.Logger,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.runtime = runtime
        self.store = store
        self.notifier = notifier
        self.config = config
        self.logger = logger.getChild("worker")
        self.http_client = http_client
        self.data_root = pathlib.Path(config.system.data_root)

    # ───────── output locations ─────────

    def job_dir(self, job_id: str) -> pathlib.Path:
        return self.data_root / "jobs" / job_id

    def result_path(self, job_id: str) -> pathlib.Path:
        return self.data_root / "results" / f"job-{job_id}-results.json"

    def screenshot_path(self, job_id: str) -> pathlib.Path:
        return self.data_root / "screenshots" / f"job-{job_id}-screenshot.png"

    def archive_path(self, job_id: str) -> pathlib.Path:
        return self.data_root / "packages" / f"job-{job_id}.zip"

    # ───────── reporting ─────────

    async def _report(self, run: JobRun, progress: float, message: str, **extra: Any) -> None:
        run.progress = progress
        run.message = message
        await self.notifier.publish(ProgressEvent(
            job_id=run.job_id, status=run.status.value, progress=progress, message=message, **extra
        ))

    async def announce_removed(self, run: JobRun) -> None:
        """Report a job dropped by ``clear_queue``."""
        await self.store.update_run_status(run.job_id, RunStatus.FAILED.value, run.message)
        await self._report(run, 0.0, run.message)

    def _setup_job_logger(self, job_id: str, job_output_dir: pathlib.Path) -> logging.Logger:
        """Dedicated logger writing job.log in the job's output directory."""
        job_logger = logging.getLogger(f"crawler.job.{job_id}")
        for handler in job_logger.handlers[:]:
            job_logger.removeHandler(handler)

        fh = logging.FileHandler(job_output_dir / "job.log")
        fh.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        job_logger.addHandler(fh)
        job_logger.setLevel(logging.INFO)
        return job_logger

    @staticmethod
    def _close_job_logger(job_logger: logging.Logger) -> None:
        for handler in job_logger.handlers[:]:
            handler.close()
            job_logger.removeHandler(handler)

    # ───────── job ─────────

    async def run(self, run: JobRun) -> None:
        job_id = run.job_id
        definition = run.definition
        job_output_dir = self.job_dir(job_id)
        os.makedirs(job_output_dir, exist_ok=True)
        job_logger = self._setup_job_logger(job_id, job_output_dir)
        started = time.monotonic()

        run.status = RunStatus.RUNNING
        run.started_at = datetime.datetime.utcnow()
        self.logger.info(f"Processing job {job_id} ({len(definition.urls)} targets)")
        await self.store.update_run_status(job_id, RunStatus.RUNNING.value, "Crawl started")
        await self._report(run, 0.0, "Crawl started")

        try:
            errors = definition.configuration_errors()
            if errors:
                raise ConfigurationError("Invalid job configuration: " + "; ".join(errors))

            records, dropped = await self._crawl(run, job_logger)
            if not records:
                raise NoValidDataError()

            # Archive first: a result file on disk means the run committed.
            archive_path: Optional[str] = None
            if definition.output_format == OutputFormat.PACKAGED and definition.package_config:
                await self._report(run, TARGETS_SHARE, "Packaging results")
                archive_path = await self._package(job_id, records, definition.package_config, job_logger)

            result_path = self.result_path(job_id)
            result_path.parent.mkdir(parents=True, exist_ok=True)
            result_path.write_text(json.dumps(records, ensure_ascii=False), encoding="utf-8")
            job_logger.info(f"✅ Wrote {len(records)} records to {result_path} ({dropped} empty records dropped)")
            await self._report(run, 97.0, f"Saved {len(records)} records")

            await self.store.finalize_run(job_id, str(result_path), run.screenshot_path)

            run.records = records
            run.dropped_records = dropped
            run.result_path = str(result_path)
            run.archive_path = archive_path
            run.status = RunStatus.SUCCESS
            run.finished_at = datetime.datetime.utcnow()
            message = f"Crawl finished: {len(records)} records"
            await self.store.update_run_status(job_id, RunStatus.SUCCESS.value, message)
            await self._report(
                run, 100.0, message,
                result_record_count=len(records),
                result_path=run.result_path,
                screenshot_path=run.screenshot_path,
                archive_path=archive_path,
            )
            JOB_COUNT.labels(status="success").inc()
            job_logger.info(f"🎉 Job {job_id} succeeded")

        except Exception as e:
            error = e if isinstance(e, CrawlError) else CrawlError(str(e) or e.__class__.__name__, cause=e)
            job_logger.error(f"❌ Job {job_id} failed: {error.message}", exc_info=True)
            self.logger.error(f"Job {job_id} failed: {error.message}")

            self._discard_outputs(run, job_logger)
            run.records = []
            run.error = error.to_dict()
            run.status = RunStatus.FAILED
            run.finished_at = datetime.datetime.utcnow()
            await self.store.update_run_status(job_id, RunStatus.FAILED.value, error.message)
            await self._report(run, 0.0, error.message)
            JOB_COUNT.labels(status="failed").inc()

        finally:
            # Bytes are on disk; only the path stays on the run.
            run.screenshot = None
            JOB_DURATION.observe(time.monotonic() - started)
            self._close_job_logger(job_logger)

    def _discard_outputs(self, run: JobRun, log: logging.Logger) -> None:
        """Remove whatever a failed run already wrote under the data root."""
        paths = [self.result_path(run.job_id), self.archive_path(run.job_id)]
        if run.screenshot_path:
            paths.append(pathlib.Path(run.screenshot_path))
        for path in paths:
            try:
                if path.is_file():
                    path.unlink()
                    log.info(f"🧹 Removed partial output {path}")
            except OSError as e:
                log.warning(f"⚠️ Could not remove {path}: {e}")
        run.result_path = None
        run.archive_path = None
        run.screenshot_path = None

    async def _crawl(self, run: JobRun, log: logging.Logger) -> Tuple[List[Record], int]:
        definition = run.definition
        targets = list(definition.urls)
        if definition.max_requests_per_crawl:
            targets = targets[: definition.max_requests_per_crawl]

        kept: List[Record] = []
        dropped = 0
        viewport = definition.viewport
        async with self.runtime.session(
            headless=definition.headless,
            proxy_url=definition.proxy_url,
            viewport=viewport_dict(viewport.width, viewport.height) if viewport else None,
            user_agent=definition.user_agent,
            logger=log,
        ) as session:
            for index, url in enumerate(targets):
                remaining: Optional[int] = None
                if definition.max_items:
                    remaining = definition.max_items - len(kept)
                    if remaining <= 0:
                        log.info(f"maxItems={definition.max_items} reached, skipping {len(targets) - index} targets")
                        break
                page_kept, page_dropped = await self._process_target(
                    session.page, run, url, index, len(targets), log, max_items=remaining
                )
                kept.extend(page_kept)
                dropped += page_dropped

        log.info(f"Kept {len(kept)} records, dropped {dropped} empty records")
        return kept, dropped

    async def _process_target(
        self,
        page: Page,
        run: JobRun,
        url: str,
        index: int,
        total: int,
        log: logging.Logger,
        max_items: Optional[int] = None,
    ) -> Tuple[List[Record], int]:
        definition = run.definition
        crawler = self.config.crawler
        navigation_timeout = definition.navigation_timeout or crawler.navigation_timeout_ms

        async def step(fraction: float, message: str) -> None:
            await self._report(run, target_progress(index, total, fraction), f"[{index + 1}/{total}] {message}")

        log.info(f"⏳ Target {index + 1}/{total}: {url}")
        try:
            await page.goto(url, timeout=navigation_timeout, wait_until="domcontentloaded")
        except Exception as e:
            error = classify_exception(e, url)
            if error.is_fatal:
                raise error from e
            log.error(f"❌ Target {url} skipped ({error.category.value}): {error.message}")
            PAGE_COUNT.labels(outcome="failed").inc()
            await step(STEP_DONE, f"Skipped {url}: {error.message}")
            return [], 0
        await step(STEP_LOADED, "Page loaded")

        if definition.viewport:
            await page.set_viewport_size({"width": definition.viewport.width, "height": definition.viewport.height})
            await step(STEP_VIEWPORT, "Viewport set")

        await self._settle(page, definition, log)
        await step(STEP_WAITS, "Wait conditions satisfied")

        if definition.scroll_enabled:
            await self._scroll(page, definition, log)
            await step(STEP_SCROLLED, "Scrolling done")

        base_selector = definition.base_selector
        if definition.detect_regions:
            candidates = await detect(page, logger=log)
            run.candidates[url] = [
                {"selector": c.selector, "match_count": c.match_count, "score": round(c.score, 2)}
                for c in candidates
            ]
            if not base_selector and candidates:
                base_selector = candidates[0].selector
                log.info(f"Using detected base region {base_selector} ({candidates[0].match_count} matches)")
            await step(STEP_DETECTED, f"Detected {len(candidates)} candidate regions")

        cursor = ListingCursor(
            page,
            base_selector,
            listing_url=url,
            navigation_timeout_ms=navigation_timeout,
            settle=lambda: self._settle(page, definition, log),
            logger=log,
        )
        records = await extract_records(cursor, definition, max_items=max_items, logger=log)
        kept, dropped = filter_records(records)
        RECORD_COUNT.labels(outcome="kept").inc(len(kept))
        RECORD_COUNT.labels(outcome="dropped").inc(dropped)
        PAGE_COUNT.labels(outcome="ok").inc()
        await step(STEP_EXTRACTED, f"Extracted {len(kept)} records ({dropped} empty)")

        if index == 0:
            await self._capture_screenshot(page, run, log)
            await step(STEP_DONE, "Screenshot captured")
        else:
            await step(STEP_DONE, "Page done")
        return kept, dropped

    async def _settle(self, page: Page, definition: JobDefinition, log: logging.Logger) -> None:
        """Listing waits; a missed wait is logged and the page is used as is."""
        crawler = self.config.crawler
        url = page.url

        async def attempt(description: str, action) -> None:
            try:
                await action
            except Exception as e:
                error = classify_exception(e, url)
                if error.is_fatal:
                    raise error from e
                log.warning(f"⚠️ {description} not satisfied, continuing: {error.message}")

        if definition.wait_for_selector:
            await attempt(
                f"Selector {definition.wait_for_selector}",
                page.wait_for_selector(
                    definition.wait_for_selector,
                    timeout=definition.wait_for_timeout or crawler.wait_for_timeout_ms,
                ),
            )
        await attempt(
            "DOM ready",
            page.wait_for_load_state(
                "domcontentloaded", timeout=definition.navigation_timeout or crawler.navigation_timeout_ms
            ),
        )
        await attempt(
            "Network idle",
            page.wait_for_load_state("networkidle", timeout=crawler.network_idle_timeout_ms),
        )

        delay = definition.delay_ms if definition.delay_ms is not None else crawler.settle_delay_ms
        if delay:
            await page.wait_for_timeout(delay)

    async def _scroll(self, page: Page, definition: JobDefinition, log: logging.Logger) -> None:
        crawler = self.config.crawler
        args = {
            "distance": definition.scroll_distance or crawler.scroll_distance,
            "delay": definition.scroll_delay if definition.scroll_delay is not None else crawler.scroll_delay_ms,
            "maxDistance": definition.max_scroll_distance or crawler.max_scroll_distance,
        }
        try:
            scrolled = await page.evaluate(SCROLL_SCRIPT, args)
            log.info(f"Scrolled {scrolled}px")
        except Exception as e:
            error = classify_exception(e, page.url)
            if error.is_fatal:
                raise error from e
            log.warning(f"⚠️ Scrolling failed, continuing: {error.message}")

    async def _capture_screenshot(self, page: Page, run: JobRun, log: logging.Logger) -> None:
        try:
            screenshot = await page.screenshot(full_page=True)
        except Exception as e:
            error = classify_exception(e, page.url)
            if error.is_fatal:
                raise error from e
            log.warning(f"⚠️ Screenshot failed: {error.message}")
            return

        path = self.screenshot_path(run.job_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(screenshot)
        run.screenshot = screenshot
        run.screenshot_path = str(path)
        log.info(f"📸 Screenshot saved to {path}")

    # ───────── packaging ─────────

    async def _package(
        self,
        job_id: str,
        records: Sequence[Record],
        package_config: PackageConfig,
        log: logging.Logger,
    ) -> str:
        plan = PackagePlan.from_config(package_config, records, self.config.packaging)
        return await package(
            records,
            plan,
            self.archive_path(job_id),
            client=self.http_client,
            temp_root=self.data_root / "temp",
            logger=log,
        )

    async def package_run(self, run: JobRun, package_config: PackageConfig) -> str:
        """Package the records of a finished run on demand."""
        if run.status != RunStatus.SUCCESS or not run.records:
            raise PackagingError(f"Job {run.job_id} has no records to package (status: {run.status.value})")
        archive_path = await self._package(run.job_id, run.records, package_config, self.logger)
        run.archive_path = archive_path
        return archive_path
