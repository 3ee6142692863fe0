"""
Resilience layer for commands on the rented instance.

Connection-class failures are retried with backoff; a command that ran and
failed, or outlived its timeout, is surfaced immediately. When the remote
stays unreachable the provider is asked whether the instance still exists,
so that a flaky network is never mistaken for a dead job.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from app.config import settings
from app.services.exceptions import (
    HardTimeoutError,
    InstanceLostError,
    RemoteCommandError,
    RemoteCommandTimeout,
    RemoteUnreachableError,
)
from scripts.ssh_executor import (
    CommandResult,
    SshCommandError,
    SshCommandTimeout,
    SshConnectionError,
    SshExecutor,
)
from scripts.utils import utc_now
from scripts.vast_client import RUNNING_STATES, VastAIError

INSTANCE_ALIVE = "alive"
INSTANCE_GONE = "gone"
INSTANCE_UNKNOWN = "unknown"


class ResilientRemoteExecutor:
    """Async wrapper around a blocking SshExecutor with retry/backoff."""

    def __init__(
        self,
        ssh: SshExecutor,
        provider=None,
        backoff: Optional[List[float]] = None,
        max_attempts: Optional[int] = None,
        command_timeout: Optional[float] = None,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ssh = ssh
        self.provider = provider
        self.backoff = list(backoff or settings.remote_retry_backoff_seconds)
        self.max_attempts = max_attempts or settings.remote_max_attempts
        self.command_timeout = command_timeout or settings.remote_command_timeout_seconds
        self._sleep = sleep
        self._clock = clock
        self.logger = logging.getLogger("RemoteExecutor")

    def _delay(self, attempt: int) -> float:
        return self.backoff[min(attempt - 1, len(self.backoff) - 1)]

    async def run(self, command: str, timeout: Optional[float] = None, check: bool = True) -> CommandResult:
        """Run ``command``, retrying only when the connection itself fails."""
        timeout = timeout or self.command_timeout
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await asyncio.to_thread(self.ssh.execute_command, command, timeout, check)
            except SshCommandError as e:
                raise RemoteCommandError(
                    str(e), return_code=e.result.return_code, stderr=e.result.stderr
                ) from e
            except SshCommandTimeout as e:
                raise RemoteCommandTimeout(str(e)) from e
            except SshConnectionError as e:
                last_error = e
                if attempt >= self.max_attempts:
                    break
                delay = self._delay(attempt)
                self.logger.warning(
                    f"🔌 Remote unreachable (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay}s: {e}"
                )
                await self._sleep(delay)

        raise RemoteUnreachableError(
            f"Remote unreachable after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
        ) from last_error

    async def check_instance(self, instance_id: str) -> str:
        """Ask the provider about ``instance_id``: alive, gone or unknown."""
        if self.provider is None or not instance_id:
            return INSTANCE_UNKNOWN
        try:
            status = await asyncio.to_thread(self.provider.get_instance_status, instance_id)
        except VastAIError as e:
            self.logger.warning(f"⚠️ Could not query provider for instance {instance_id}: {e}")
            return INSTANCE_UNKNOWN

        if status in RUNNING_STATES:
            return INSTANCE_ALIVE
        self.logger.warning(f"💀 Provider reports instance {instance_id} as {status or 'missing'}")
        return INSTANCE_GONE

    async def run_confirmed(
        self,
        command: str,
        instance_id: str,
        deadline: Optional[datetime],
        timeout: Optional[float] = None,
        check: bool = True,
        heartbeat: Optional[Callable[[], Awaitable]] = None,
    ) -> CommandResult:
        """Like ``run``, but keeps trying while the provider says the instance
        lives, up to ``deadline``. ``heartbeat`` is awaited on every retry
        round so the job does not look abandoned while we wait.

        Raises:
            InstanceLostError: provider reports the instance gone or stopped
            HardTimeoutError: still unreachable when ``deadline`` passes
        """
        while True:
            try:
                return await self.run(command, timeout=timeout, check=check)
            except RemoteUnreachableError:
                state = await self.check_instance(instance_id)
                if state == INSTANCE_GONE:
                    raise InstanceLostError(
                        f"Instance {instance_id} is no longer running", provider_status=state
                    )
                if deadline is not None and self._clock() >= deadline:
                    raise HardTimeoutError(
                        f"Instance {instance_id} unreachable until hard deadline {deadline.isoformat()}"
                    )
                self.logger.info(f"⏳ Instance {instance_id} is {state}, retrying connection")
                if heartbeat is not None:
                    await heartbeat()
                await self._sleep(self.backoff[-1])

    async def close(self):
        await asyncio.to_thread(self.ssh.disconnect)
