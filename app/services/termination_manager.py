"""
Termination Manager - tear down a rented instance, retrying until it is gone.

The attempt count is written to the job after every attempt, so the sweeper
can see a struggling termination even if this process dies mid-way.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from app.config import settings
from app.services.exceptions import TerminationFailedError


class TerminationManager:
    def __init__(
        self,
        provider,
        job_store,
        notifier=None,
        backoff: Optional[List[float]] = None,
        max_attempts: Optional[int] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.provider = provider
        self.job_store = job_store
        self.notifier = notifier
        self.backoff = list(backoff or settings.termination_backoff_seconds)
        self.max_attempts = max_attempts or settings.termination_max_attempts
        self._sleep = sleep
        self.logger = logging.getLogger("TerminationManager")

    async def terminate(self, job_id, instance_id: Optional[str]) -> int:
        """Destroy ``instance_id`` and record it on the job.

        Safe to call repeatedly; a provider 404 counts as already terminated.
        ``job_id`` may be None for instances with no job record.
        Returns the attempt on which it succeeded (0 if there was nothing to do).

        Raises:
            TerminationFailedError: after ``max_attempts`` failures (ops already alerted)
        """
        if not instance_id:
            self.logger.debug(f"Job {job_id} has no instance, nothing to terminate")
            return 0

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                existed = await asyncio.to_thread(self.provider.terminate_instance, instance_id)
                if job_id is not None:
                    await self.job_store.mark_instance_terminated(job_id, count_attempt=True)
                if existed:
                    self.logger.info(f"🧹 Instance {instance_id} terminated (attempt {attempt})")
                else:
                    self.logger.info(f"🧹 Instance {instance_id} was already gone")
                return attempt
            except Exception as e:
                last_error = e
                self.logger.error(
                    f"❌ Termination attempt {attempt}/{self.max_attempts} for instance {instance_id} failed: {e}"
                )
                if job_id is not None:
                    await self.job_store.increment_termination_attempts(job_id)

            if attempt < self.max_attempts:
                await self._sleep(self.backoff[min(attempt - 1, len(self.backoff) - 1)])

        message = f"CRITICAL: instance {instance_id} could not be terminated and is still billing"
        if self.notifier is not None:
            self.notifier.notify_ops(
                message,
                severity="critical",
                data={
                    "job_id": str(job_id) if job_id else None,
                    "instance_id": instance_id,
                    "attempts": self.max_attempts,
                    "error": str(last_error),
                },
            )
        raise TerminationFailedError(
            message, instance_id=instance_id, attempts=self.max_attempts, job_id=str(job_id) if job_id else None
        ) from last_error
