"""
TrainingOrchestrator - the worker loop.

Peeks the queue, runs the balance pre-flight, claims one job and hands it
to the processor, then polls again. One job at a time per orchestrator.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from app.config import settings
from app.services.exceptions import BillingError, InsufficientBalanceError
from scripts.utils import utc_now


class TrainingOrchestrator:
    def __init__(
        self,
        job_store,
        processor,
        notifier,
        environment: Optional[str] = None,
        poll_interval: Optional[float] = None,
        cooldown: Optional[float] = None,
    ):
        self.job_store = job_store
        self.processor = processor
        self.notifier = notifier
        self.environment = environment or settings.training_environment
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval_seconds
        self.cooldown = cooldown if cooldown is not None else settings.post_job_cooldown_seconds

        self.current_job_id = None
        self.jobs_processed = 0
        self.started_at = None
        self._stop = asyncio.Event()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._idle = asyncio.Event()
        self._idle.set()
        self.logger = logging.getLogger("TrainingOrchestrator")

    # ==================== Loop ====================

    async def run(self) -> None:
        """Process jobs until ``request_stop``."""
        self.started_at = utc_now()
        self.logger.info(f"🚀 Orchestrator started (environment={self.environment})")

        while not self._stop.is_set():
            if not self._resumed.is_set():
                await self._wait(1)
                continue

            try:
                handled = await self.run_once()
            except Exception as e:
                self.logger.exception("💥 Orchestrator loop error")
                self.notifier.notify_ops(
                    "Orchestrator loop error", severity="error", data={"error": str(e)}
                )
                handled = False

            await self._wait(self.cooldown if handled else self.poll_interval)

        self.logger.info("🛑 Orchestrator stopped")

    async def run_once(self) -> bool:
        """One poll. True if a queued job was handled (processed, rejected or lost)."""
        job = await self.job_store.fetch_next_queued(self.environment)
        if job is None:
            return False

        try:
            estimate = await self.processor.preflight(job)
        except InsufficientBalanceError as e:
            await self.processor.reject(job, e)
            return True
        except BillingError as e:
            # Ledger outage: leave the job queued and try again next poll
            self.logger.error(f"❌ Pre-flight for job {job.id} failed: {e}")
            self.notifier.notify_ops(
                "Ledger unavailable for pre-flight", severity="error", data={"job_id": str(job.id), "error": str(e)}
            )
            return False

        claimed = await self.job_store.claim_job(job.id)
        if claimed is None:
            self.logger.info(f"Job {job.id} was claimed by another worker")
            return True

        self.current_job_id = claimed.id
        self._idle.clear()
        try:
            await self.processor.process(claimed, estimate)
            self.jobs_processed += 1
        finally:
            self.current_job_id = None
            self._idle.set()
        return True

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ==================== Control ====================

    def request_stop(self) -> None:
        if not self._stop.is_set():
            self.logger.info("Stop requested; finishing current job first")
        self._stop.set()

    def pause(self) -> None:
        self._resumed.clear()
        self.logger.info("⏸️ Orchestrator paused")

    def resume(self) -> None:
        self._resumed.set()
        self.logger.info("▶️ Orchestrator resumed")

    async def shutdown(self, max_wait: Optional[float] = None) -> bool:
        """Stop polling and wait for the in-flight job. False if it did not
        finish within ``max_wait``; the sweeper will clean it up."""
        max_wait = max_wait if max_wait is not None else settings.shutdown_max_wait_seconds
        self.request_stop()
        if self._idle.is_set():
            return True

        self.logger.info(f"⏳ Waiting up to {max_wait}s for job {self.current_job_id}")
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=max_wait)
            return True
        except asyncio.TimeoutError:
            self.notifier.notify_ops(
                f"Worker shutdown timed out with job {self.current_job_id} in flight",
                severity="critical",
                data={"job_id": str(self.current_job_id), "waited_seconds": max_wait},
            )
            return False

    def status(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "running": self.started_at is not None and not self._stop.is_set(),
            "paused": not self._resumed.is_set(),
            "stopping": self._stop.is_set(),
            "current_job_id": str(self.current_job_id) if self.current_job_id else None,
            "jobs_processed": self.jobs_processed,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }
