"""Offer Poller.

Background asyncio task that keeps an OfferMatrix in step with an
extraction job (or a fixed set of documents) while processing runs.

Every tick goes through ``ReconciliationEngine.apply_refresh`` so pending
edits are replayed on top of the fresh data.

Usage:
    poller = OfferPoller(engine, job_id="job-123", interval=2.0)
    poller.start()  # non-blocking, spawns a background task
    ...
    poller.stop()
"""

from __future__ import annotations

import asyncio
import logging

from .models import Job
from .reconcile import ReconciliationEngine

logger = logging.getLogger("offer_matrix.poller")


class OfferPoller:
    """Polls the backend and feeds refreshes into a ReconciliationEngine.

    With a job id, stops once the job reports ``done >= total``. With only
    document ids, polls until stopped.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        *,
        job_id: str | None = None,
        interval: float = 2.0,
    ):
        self.engine = engine
        self.job_id = job_id or engine.job_id
        self.interval = interval
        self.last_job: Job | None = None
        self.ticks = 0
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        """Start polling as a background task."""
        if not self.job_id and not self.engine.document_ids:
            logger.warning("Nothing to poll (no job id or document ids)")
            return
        if self._task and not self._task.done():
            logger.warning("Poller already running")
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "Offer poller started (job=%s, interval=%.1fs)", self.job_id, self.interval
        )

    def stop(self) -> None:
        """Stop polling. In-flight edits are not affected."""
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Offer poller stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def wait(self) -> None:
        """Wait for the loop to finish (job complete or stopped)."""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run_loop(self) -> None:
        while True:
            try:
                if await self.tick():
                    logger.info("Job %s finished, polling stopped", self.job_id)
                    return
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Offer poll failed")
            await asyncio.sleep(self.interval)

    async def tick(self) -> bool:
        """Run one refresh. Returns True when polling should stop."""
        if self.engine.closed:
            return True
        self.ticks += 1
        snapshot = self.engine.write_marker

        if self.job_id:
            job = await self.engine.backend.fetch_job(self.job_id)
            self.last_job = job
            groups = await self.engine.backend.list_offers_by_job(self.job_id)
            self.engine.apply_refresh(groups, snapshot=snapshot)
            logger.debug("Job %s: %d/%d done", self.job_id, job.done, job.total)
            return job.finished

        groups = await self.engine.backend.list_offers_by_documents(self.engine.document_ids)
        self.engine.apply_refresh(groups, snapshot=snapshot)
        return False
