import asyncio
import time
from datetime import datetime
from typing import Callable, Optional, Set, Tuple

from loguru import logger
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from config import settings
from database import SessionLocal, claim_next_waiting, fail_interrupted_jobs, mark_executed, mark_running
from exceptions import InvalidTransitionError, StoreError
from models import ExecutionResult
from monitoring import job_count, job_duration
from utils.browser import format_diagnostics

INTERRUPTED_ERROR = "Interrupted: the worker stopped while this job was running"


class SequentialWorker:
    """Runs queued jobs one at a time on the current event loop.

    A tick claims the oldest Waiting job, executes it and immediately ticks
    again. When nothing is waiting the next tick is scheduled after
    ``poll_interval``. ``notify()`` asks for a tick right away and is a
    no-op while a job is executing. Store access runs in the threadpool.

    If the result of a job cannot be written after ``record_attempts``
    tries, it is held and retried on each poll; nothing new is claimed
    until it lands, so the job is never left Running alongside another.
    """

    def __init__(
        self,
        executor,
        session_factory: Callable[[], Session] = SessionLocal,
        poll_interval: float = settings.poll_interval,
        record_attempts: int = settings.record_attempts,
        record_backoff: float = settings.record_backoff,
    ):
        self.executor = executor
        self.session_factory = session_factory
        self.poll_interval = poll_interval
        self.record_attempts = record_attempts
        self.record_backoff = record_backoff
        self._busy = False
        # (job_id, result, finished_at) not yet written to the store
        self._pending: Optional[Tuple[int, ExecutionResult, datetime]] = None
        self._started = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._started

    def recover_interrupted(self):
        """Finish jobs left Running by a previous process"""
        db = self.session_factory()
        try:
            recovered = fail_interrupted_jobs(db, INTERRUPTED_ERROR)
        finally:
            db.close()
        if recovered:
            logger.warning(f"Marked interrupted jobs as failed: {recovered}")
        return recovered

    def start(self):
        self._started = True
        logger.info("Worker loop started")
        self.notify()

    async def stop(self):
        self._started = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Worker loop stopped")

    def notify(self):
        """Hint that a job may be waiting"""
        if not self._started or self._busy:
            return
        task = asyncio.get_running_loop().create_task(self.tick())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _schedule_poll(self):
        if not self._started:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(self.poll_interval, self.notify)

    async def tick(self) -> Optional[int]:
        """Process at most one job; returns its id, or None if idle or busy"""
        if self._busy:
            return None
        # No await between the check above and this assignment
        self._busy = True
        try:
            # A job whose result could not be written still counts as running
            if not await self._flush_pending():
                self._schedule_poll()
                return None

            try:
                claimed = await run_in_threadpool(self._claim)
            except StoreError as e:
                logger.error(f"Could not claim next job: {e}")
                self._schedule_poll()
                return None

            if claimed is None:
                self._schedule_poll()
                return None

            job_id, url = claimed
            result = await self._execute(job_id, url)
            self._pending = (job_id, result, datetime.utcnow())
            recorded = await self._flush_pending()
        finally:
            self._busy = False

        if recorded:
            self.notify()
        else:
            self._schedule_poll()
        return job_id

    def _claim(self):
        db = self.session_factory()
        try:
            job = claim_next_waiting(db)
            if job is None:
                return None
            mark_running(db, job.id, started_at=datetime.utcnow())
            logger.info(f"Job {job.id}: claimed, URL: {job.url}")
            return job.id, job.url
        finally:
            db.close()

    async def _execute(self, job_id: int, url: str) -> ExecutionResult:
        start = time.monotonic()
        try:
            result = await self.executor.execute(url)
        except Exception as e:
            logger.exception(f"Job {job_id}: executor raised")
            result = ExecutionResult.failed(format_diagnostics(e))

        elapsed = time.monotonic() - start
        outcome = "success" if result.success else "failure"
        job_count.labels(status=outcome).inc()
        job_duration.labels(status=outcome).observe(elapsed)
        logger.info(f"Job {job_id}: finished with {outcome} in {elapsed:.2f}s")
        return result

    async def _flush_pending(self) -> bool:
        """Write the held result, retrying with backoff; True once nothing is held"""
        if self._pending is None:
            return True
        job_id, result, finished_at = self._pending
        for attempt in range(self.record_attempts):
            try:
                await run_in_threadpool(self._record, job_id, result, finished_at)
            except InvalidTransitionError as e:
                # Already finished elsewhere, e.g. by recover_interrupted
                logger.warning(f"Job {job_id}: result dropped: {e}")
                self._pending = None
                return True
            except StoreError as e:
                logger.error(f"Job {job_id}: could not record result "
                             f"(attempt {attempt + 1}/{self.record_attempts}): {e}")
                if attempt + 1 < self.record_attempts:
                    await asyncio.sleep(self.record_backoff * 2 ** attempt)
                continue
            self._pending = None
            return True
        logger.warning(f"Job {job_id}: result held until the store recovers; no new jobs claimed")
        return False

    def _record(self, job_id: int, result: ExecutionResult, finished_at: datetime):
        db = self.session_factory()
        try:
            mark_executed(
                db,
                job_id,
                success=result.success,
                error=result.diagnostics or "Page execution failed",
                finished_at=finished_at,
            )
        finally:
            db.close()
