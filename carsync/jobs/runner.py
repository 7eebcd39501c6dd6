"""Main job runner orchestrating the sync pipeline."""
import asyncio
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import httpx

from carsync.config import Config, METRICS_FILE, STATE_DB, config
from carsync.errors import SyncError
from carsync.fetch.circuit_breaker import CircuitBreaker, CircuitOpenError
from carsync.fetch.client import PageFetcher
from carsync.fetch.concurrency import ConcurrencyLimiter
from carsync.fetch.rate_limit import TokenBucket
from carsync.jobs.metrics import PerformanceTargets, SyncMetrics, check_targets
from carsync.jobs.metrics_exporter import MetricsExporter
from carsync.jobs.progress import PageWatermark
from carsync.jobs.run_control import RunControl
from carsync.store.spool import SpoolManager
from carsync.store.state import CheckpointManager, SyncCheckpoint, new_run_id
from carsync.store.supabase_writer import SupabaseCarWriter
from carsync.transform.models import CachedCarRecord
from carsync.transform.transformer import RecordTransformer

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    INIT = "INIT"
    RUNNING = "RUNNING"
    MERGING = "MERGING"
    FINALIZING = "FINALIZING"
    DONE = "DONE"
    PAUSED = "PAUSED"
    FAILED = "FAILED"


class SyncRunner:
    """Orchestrates fetch, transform, upsert and checkpoint for one sync run.

    Pages are fetched in order so an end-of-data streak stops fetching right
    away. Each non-empty page is transformed and upserted inside a
    ConcurrencyLimiter slot, and the dispatcher stops fetching while
    ``limiter.limit`` pages are in flight. The checkpoint only ever records
    the highest page below which every page is finished.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        writer: Optional[SupabaseCarWriter],
        checkpoints: Optional[CheckpointManager],
        circuit_breaker: CircuitBreaker,
        limiter: ConcurrencyLimiter,
        run_control: RunControl,
        transformer: Optional[RecordTransformer] = None,
        page_size: int = 30,
        start_page: Optional[int] = None,
        resume: bool = True,
        direct: bool = False,
        dry_run: bool = False,
        metrics_file: Optional[Path] = None,
        targets: PerformanceTargets = PerformanceTargets(),
        progress_every: int = 10,
        estimated_total_pages: Optional[int] = None,
    ):
        self.fetcher = fetcher
        if writer is not None and not dry_run and writer.direct != direct:
            raise ValueError(
                f"direct={direct} but the writer targets {writer.table} (direct={writer.direct})"
            )
        self.writer = None if dry_run else writer
        self.checkpoints = None if dry_run else checkpoints
        self.circuit_breaker = circuit_breaker
        self.limiter = limiter
        self.run_control = run_control
        self.transformer = transformer or RecordTransformer()
        self.page_size = page_size
        self.start_page = start_page
        self.resume = resume
        self.direct = direct
        self.dry_run = dry_run
        self.metrics_file = metrics_file
        self.targets = targets
        self.progress_every = progress_every
        self.estimated_total_pages = estimated_total_pages

        self.phase = SyncPhase.INIT
        self.run_id = new_run_id()
        self.resumed = False
        self.first_page = 1
        self.current_page = 1
        self.base_processed = 0
        self.run_start_time = time.time()
        self.metrics = SyncMetrics()
        self.watermark = PageWatermark()
        self.exporter: Optional[MetricsExporter] = None
        self.stop_reason: Optional[str] = None
        self.error: Optional[SyncError] = None
        self.report: Optional[dict[str, Any]] = None
        self._checkpoint_lock = asyncio.Lock()

    def _set_phase(self, phase: SyncPhase) -> None:
        if phase != self.phase:
            logger.info(f"Phase: {self.phase.value} -> {phase.value}")
        self.phase = phase

    async def run(self) -> dict[str, Any]:
        """Run the sync and return the final report. Raises SyncError on failure."""
        self.metrics = SyncMetrics()
        try:
            await self._init()
            paused = await self._run_pages()

            if paused:
                logger.warning("Time budget reached, pausing; next run resumes from checkpoint")
                self._set_phase(SyncPhase.PAUSED)
            elif self.dry_run:
                logger.info("DRY-RUN: skipping merge and finalize")
                self._set_phase(SyncPhase.DONE)
            elif self.direct:
                logger.info("Direct mode: rows written to cache table, skipping merge and finalize")
                if self.checkpoints:
                    await self.checkpoints.clear()
                self._set_phase(SyncPhase.DONE)
            else:
                await self._merge()
                await self._finalize()
                self._set_phase(SyncPhase.DONE)

        except SyncError as e:
            self.error = e
            self._set_phase(SyncPhase.FAILED)
            logger.error(f"Sync failed in {e.phase}: {e.message}")
            await self._final_report()
            raise
        except Exception as e:
            self.error = SyncError(self.phase.value, f"{type(e).__name__}: {e}")
            self._set_phase(SyncPhase.FAILED)
            logger.error(f"Sync failed in {self.error.phase}: {self.error.message}", exc_info=True)
            await self._final_report()
            raise self.error from e
        finally:
            await self.fetcher.aclose()

        return await self._final_report()

    async def _init(self) -> None:
        """Load checkpoint (resume or fresh) and prepare staging."""
        self._set_phase(SyncPhase.INIT)

        checkpoint: Optional[SyncCheckpoint] = None
        if self.checkpoints:
            try:
                await self.checkpoints.initialize()
            except Exception as e:
                logger.warning(f"Checkpoint store unavailable, progress won't be saved: {e}")
            if self.resume:
                checkpoint = await self.checkpoints.load()

        if checkpoint:
            self.run_id = checkpoint.run_id
            self.first_page = checkpoint.last_page + 1
            self.base_processed = checkpoint.total_processed
            self.run_start_time = checkpoint.start_time
            self.resumed = True
            logger.info(
                f"Resuming run {self.run_id} at page {self.first_page} "
                f"({self.base_processed} rows already processed)"
            )
        else:
            logger.info(f"Starting fresh run {self.run_id}")

        if self.start_page is not None:
            self.first_page = self.start_page
            self.resumed = self.resumed or self.start_page > 1
            logger.info(f"Starting at page {self.first_page} (explicit)")

        self.current_page = self.first_page
        self.watermark = PageWatermark(self.first_page - 1)
        if self.metrics_file:
            self.exporter = MetricsExporter(self.run_id, self.metrics_file)

        # Resumed runs need the rows staged before the interruption
        if self.writer and not self.direct and not self.resumed:
            await self.writer.clear_staging()

    async def _run_pages(self) -> bool:
        """Page loop. Returns True when it ended on the time budget."""
        self._set_phase(SyncPhase.RUNNING)
        page = self.first_page
        pending: set[asyncio.Task] = set()

        try:
            while True:
                self.current_page = page
                self._check_error_ceiling()

                should_stop, reason = self.run_control.should_stop(page)
                if should_stop:
                    self.stop_reason = reason
                    logger.info(f"Stopping page loop: {reason}")
                    break

                try:
                    listings = await self.circuit_breaker.execute(
                        lambda: self.fetcher.fetch_page(page, self.page_size, self.metrics)
                    )
                except CircuitOpenError as e:
                    raise SyncError(SyncPhase.RUNNING.value, str(e)) from e
                except Exception as e:
                    self.metrics.failed_pages += 1
                    logger.error(f"Page {page} failed after retries, skipping: {e}")
                    await self._page_done(page)
                    page += 1
                    continue

                if not listings:
                    self.run_control.record_empty_page()
                    self.metrics.empty_pages += 1
                    logger.info(
                        f"Page {page}: empty ({self.run_control.consecutive_empty}/"
                        f"{self.run_control.max_consecutive_empty} empty pages)"
                    )
                    await self._page_done(page)
                    page += 1
                    continue

                self.run_control.record_page()
                self.metrics.pages_fetched += 1
                self.metrics.rows_processed += len(listings)

                task = asyncio.create_task(
                    self.limiter.run(lambda p=page, items=listings: self._process_page(p, items))
                )
                pending.add(task)
                del listings

                # Back-pressure: keep at most ``limit`` pages in memory
                while len(pending) >= self.limiter.limit:
                    done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                    for finished in done:
                        finished.result()

                if page % self.progress_every == 0:
                    await self._progress(page)

                page += 1

            if pending:
                await asyncio.gather(*pending)
                pending = set()
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        self._check_error_ceiling()
        logger.info(
            f"Page fetching complete. Pages: {self.metrics.pages_fetched}, "
            f"Rows: {self.metrics.rows_processed}, Upserted: {self.metrics.rows_upserted}"
        )

        paused = self.run_control.time_budget_exhausted()
        if not paused and not self.dry_run and self.base_processed + self.metrics.rows_upserted == 0:
            raise SyncError(
                SyncPhase.RUNNING.value,
                "No rows were staged, refusing to finalize",
            )
        return paused

    def _check_error_ceiling(self) -> None:
        if self.run_control.error_ceiling_exceeded(self.metrics.api_errors):
            raise SyncError(
                SyncPhase.RUNNING.value,
                f"Too many API errors ({self.metrics.api_errors} > {self.run_control.max_api_errors})",
            )

    async def _process_page(self, page: int, listings: list[dict[str, Any]]) -> None:
        """Transform and upsert one page, then advance the checkpoint."""
        records: list[CachedCarRecord] = self.transformer.transform_page(listings, self.metrics)
        dropped = len(listings) - len(records)

        if records and self.writer:
            result = await self.writer.upsert(records, self.metrics, run_id=self.run_id)
            logger.info(
                f"Page {page}: {result.success}/{len(records)} cars upserted"
                + (f", {result.failed} failed" if result.failed else "")
                + (f", {dropped} dropped" if dropped else "")
            )
        else:
            logger.debug(f"Page {page}: {len(records)} valid cars, {dropped} dropped (not written)")

        await self._page_done(page)

    async def _page_done(self, page: int) -> None:
        """Mark a page finished and save the checkpoint if the watermark moved."""
        async with self._checkpoint_lock:
            if not self.watermark.mark_done(page) or not self.checkpoints:
                return
            await self.checkpoints.save(
                SyncCheckpoint(
                    run_id=self.run_id,
                    last_page=self.watermark.watermark,
                    total_processed=self.base_processed + self.metrics.rows_upserted,
                    start_time=self.run_start_time,
                    last_update_time=time.time(),
                )
            )

    async def _progress(self, page: int) -> None:
        self.metrics.report(page)
        if self.estimated_total_pages:
            eta = self.metrics.eta(page, self.estimated_total_pages)
            logger.info(f"ETA: {eta / 60:.1f} min to page {self.estimated_total_pages}")
        await self._export_metrics()

    async def _merge(self) -> None:
        """Promote staging rows into the cache table."""
        self._set_phase(SyncPhase.MERGING)
        merge_start = time.time()
        try:
            result = await self.writer.merge_from_staging()
        except Exception as e:
            raise SyncError(SyncPhase.MERGING.value, f"Merge failed: {e}") from e
        logger.info(f"Merge completed in {time.time() - merge_start:.1f}s: {result}")

    async def _finalize(self) -> None:
        """Deactivate missing cars, clear staging and the checkpoint."""
        self._set_phase(SyncPhase.FINALIZING)
        if self.metrics.failed_pages:
            # Listings on skipped pages were never staged
            logger.warning(
                f"Skipping mark_missing_inactive: {self.metrics.failed_pages} pages failed this run"
            )
        else:
            try:
                result = await self.writer.mark_missing_inactive()
            except Exception as e:
                raise SyncError(SyncPhase.FINALIZING.value, f"Mark inactive failed: {e}") from e
            logger.info(f"Mark missing inactive completed: {result}")

        await self.writer.clear_staging()
        if self.checkpoints:
            await self.checkpoints.clear()

    async def _export_metrics(self) -> None:
        if not self.exporter:
            return
        try:
            await self.exporter.export_metrics(
                self.phase.value, self.current_page, self.metrics.get_summary()
            )
        except OSError as e:
            logger.warning(f"Failed to export metrics: {e}")

    async def _final_report(self) -> dict[str, Any]:
        """Log and return the final report."""
        summary = self.metrics.get_summary()
        checks = check_targets(summary, self.targets)
        # Skipped pages or unwritten rows make the run incomplete
        success = (
            self.phase in (SyncPhase.DONE, SyncPhase.PAUSED)
            and self.metrics.failed_pages == 0
            and self.metrics.rows_failed == 0
        )

        report = {
            "run_id": self.run_id,
            "phase": self.phase.value,
            "success": success,
            "resumed": self.resumed,
            "first_page": self.first_page,
            "last_page": self.watermark.watermark,
            "stop_reason": self.stop_reason,
            "error": str(self.error) if self.error else None,
            **summary,
            "checks": checks,
        }
        self.report = report

        logger.info("=" * 60)
        logger.info("FINAL REPORT")
        logger.info(f"Run ID: {self.run_id}")
        logger.info(f"Result: {self.phase.value}")
        if self.error:
            logger.info(f"Error: {self.error}")
        logger.info(f"Elapsed: {summary['total_minutes']:.2f} minutes")
        logger.info(f"Pages: {summary['pages_fetched']} fetched, {summary['empty_pages']} empty, {summary['failed_pages']} failed")
        logger.info(f"Rows: {summary['rows_processed']} fetched, {summary['rows_valid']} valid, {summary['rows_rejected']} rejected")
        logger.info(f"Upserted: {summary['rows_upserted']} ok, {summary['rows_failed']} failed")
        logger.info(f"Errors: {summary['api_errors']} API / {summary['db_errors']} DB over {summary['api_requests']} requests")
        logger.info(f"Rates: {summary['pages_per_sec']:.1f} pages/sec, {summary['rows_per_sec']:.0f} rows/sec")
        for name, passed in checks.items():
            logger.info(f"  {name}: {'PASS' if passed else 'FAIL'}")
        logger.info("=" * 60)

        await self._export_metrics()
        return report


def create_runner(
    cfg: Config = config,
    *,
    resume: bool = True,
    start_page: Optional[int] = None,
    direct: bool = False,
    dry_run: bool = False,
    stop_after_minutes: Optional[float] = None,
    max_pages: Optional[int] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> SyncRunner:
    """Wire production components from configuration."""
    bucket = TokenBucket(capacity=max(cfg.RATE_BURST, 1), refill_rate=cfg.RPS)
    fetcher = PageFetcher(
        base_url=cfg.API_BASE_URL,
        api_key=cfg.API_KEY,
        rate_limiter=bucket,
        client=http_client,
        timeout=cfg.REQUEST_TIMEOUT,
        max_retries=cfg.MAX_RETRIES,
        user_agent=cfg.USER_AGENT,
    )
    writer = None
    checkpoints = None
    if not dry_run:
        writer = SupabaseCarWriter.from_config(cfg, direct=direct, spool=SpoolManager())
        checkpoints = CheckpointManager(STATE_DB, cfg.CHECKPOINT_MAX_AGE_HOURS * 3600)

    return SyncRunner(
        fetcher=fetcher,
        writer=writer,
        checkpoints=checkpoints,
        circuit_breaker=CircuitBreaker(cfg.CIRCUIT_FAILURE_THRESHOLD, cfg.CIRCUIT_TIMEOUT),
        limiter=ConcurrencyLimiter(cfg.CONCURRENCY),
        run_control=RunControl(
            max_pages=max_pages or cfg.MAX_PAGES,
            max_consecutive_empty=cfg.MAX_CONSECUTIVE_EMPTY,
            max_api_errors=cfg.MAX_API_ERRORS,
            stop_after_minutes=stop_after_minutes,
        ),
        transformer=RecordTransformer(
            price_markup=cfg.PRICE_MARKUP,
            keep_raw=cfg.STORE_RAW_PAYLOAD,
        ),
        page_size=cfg.PAGE_SIZE,
        start_page=start_page,
        resume=resume,
        direct=direct,
        dry_run=dry_run,
        metrics_file=METRICS_FILE,
    )
