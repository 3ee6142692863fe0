"""
Phase 3: Resilient Remote Executor

Tests for ResilientRemoteExecutor:
1. Connection failures are retried on the backoff schedule
2. Command errors and command timeouts are not retried
3. run_confirmed() distinguishes a lost instance from a network blip
4. run_confirmed() keeps the job heart-beating while it waits

Run: pytest tests/test_03_remote_executor.py
"""

import asyncio
import os
import sys
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.services.exceptions import (
    HardTimeoutError,
    InstanceLostError,
    RemoteCommandError,
    RemoteCommandTimeout,
    RemoteUnreachableError,
)
from app.services.remote_executor import (
    INSTANCE_ALIVE,
    INSTANCE_GONE,
    INSTANCE_UNKNOWN,
    ResilientRemoteExecutor,
)
from scripts.ssh_executor import (
    CommandResult,
    SshCommandError,
    SshCommandTimeout,
    SshConnectionError,
)
from scripts.utils import utc_now
from scripts.vast_client import VastAIError

BACKOFF = [5, 15, 30, 60, 120]


def ok(stdout: str = "ok") -> CommandResult:
    return CommandResult(command="cmd", stdout=stdout, stderr="", return_code=0, success=True, duration=0.1)


def make_executor(ssh, provider=None, clock=None):
    sleep = AsyncMock()
    kwargs = {"clock": clock} if clock else {}
    executor = ResilientRemoteExecutor(
        ssh, provider=provider, backoff=BACKOFF, max_attempts=5, sleep=sleep, **kwargs
    )
    return executor, sleep


def test_run_succeeds_first_try():
    ssh = Mock()
    ssh.execute_command.return_value = ok("hello")
    executor, sleep = make_executor(ssh)

    result = asyncio.run(executor.run("echo hello"))
    assert result.stdout == "hello"
    sleep.assert_not_called()


def test_connection_errors_retried_then_succeed():
    ssh = Mock()
    ssh.execute_command.side_effect = [SshConnectionError("reset"), SshConnectionError("reset"), ok()]
    executor, sleep = make_executor(ssh)

    result = asyncio.run(executor.run("ls"))
    assert result.success
    assert ssh.execute_command.call_count == 3
    assert [c.args[0] for c in sleep.await_args_list] == [5, 15]


def test_persistent_connection_failure_raises_unreachable():
    ssh = Mock()
    ssh.execute_command.side_effect = SshConnectionError("no route to host")
    executor, sleep = make_executor(ssh)

    with pytest.raises(RemoteUnreachableError) as exc_info:
        asyncio.run(executor.run("ls"))

    assert exc_info.value.attempts == 5
    assert ssh.execute_command.call_count == 5
    assert [c.args[0] for c in sleep.await_args_list] == [5, 15, 30, 60]


def test_command_error_not_retried():
    ssh = Mock()
    failed = CommandResult(command="false", stdout="", stderr="nope", return_code=2, success=False, duration=0.1)
    ssh.execute_command.side_effect = SshCommandError("exit 2", failed)
    executor, sleep = make_executor(ssh)

    with pytest.raises(RemoteCommandError) as exc_info:
        asyncio.run(executor.run("false"))

    assert exc_info.value.return_code == 2
    assert exc_info.value.stderr == "nope"
    assert ssh.execute_command.call_count == 1
    sleep.assert_not_called()


def test_command_timeout_not_retried():
    ssh = Mock()
    ssh.execute_command.side_effect = SshCommandTimeout("took too long")
    executor, sleep = make_executor(ssh)

    with pytest.raises(RemoteCommandTimeout):
        asyncio.run(executor.run("sleep 999"))
    assert ssh.execute_command.call_count == 1


def test_check_instance_states():
    provider = Mock()
    executor, _ = make_executor(Mock(), provider=provider)

    provider.get_instance_status.return_value = "running"
    assert asyncio.run(executor.check_instance("42")) == INSTANCE_ALIVE

    provider.get_instance_status.return_value = "exited"
    assert asyncio.run(executor.check_instance("42")) == INSTANCE_GONE

    provider.get_instance_status.return_value = None
    assert asyncio.run(executor.check_instance("42")) == INSTANCE_GONE

    provider.get_instance_status.side_effect = VastAIError("api down", status_code=503)
    assert asyncio.run(executor.check_instance("42")) == INSTANCE_UNKNOWN

    no_provider, _ = make_executor(Mock())
    assert asyncio.run(no_provider.check_instance("42")) == INSTANCE_UNKNOWN


def test_run_confirmed_instance_lost():
    ssh = Mock()
    ssh.execute_command.side_effect = SshConnectionError("down")
    provider = Mock()
    provider.get_instance_status.return_value = None
    executor, _ = make_executor(ssh, provider=provider)

    with pytest.raises(InstanceLostError):
        asyncio.run(executor.run_confirmed("ls", "42", deadline=utc_now() + timedelta(hours=1)))


def test_run_confirmed_hard_timeout_while_alive():
    ssh = Mock()
    ssh.execute_command.side_effect = SshConnectionError("down")
    provider = Mock()
    provider.get_instance_status.return_value = "running"
    executor, _ = make_executor(ssh, provider=provider)

    with pytest.raises(HardTimeoutError):
        asyncio.run(executor.run_confirmed("ls", "42", deadline=utc_now() - timedelta(seconds=1)))


def test_run_confirmed_recovers_while_instance_alive():
    ssh = Mock()
    # First full backoff round fails, the next call gets through
    ssh.execute_command.side_effect = [SshConnectionError("blip")] * 5 + [ok("back")]
    provider = Mock()
    provider.get_instance_status.return_value = "running"
    executor, sleep = make_executor(ssh, provider=provider)

    result = asyncio.run(executor.run_confirmed("ls", "42", deadline=utc_now() + timedelta(hours=1)))
    assert result.stdout == "back"
    assert provider.get_instance_status.call_count == 1
    # Four backoff sleeps inside run() plus one long wait before retrying
    assert sleep.await_args_list[-1].args[0] == 120


def test_run_confirmed_heartbeats_every_retry_round():
    ssh = Mock()
    # Two full rounds unreachable, then through
    ssh.execute_command.side_effect = [SshConnectionError("outage")] * 10 + [ok("staged")]
    provider = Mock()
    provider.get_instance_status.return_value = "running"
    executor, _ = make_executor(ssh, provider=provider)
    heartbeat = AsyncMock()

    result = asyncio.run(
        executor.run_confirmed("ls", "42", deadline=utc_now() + timedelta(hours=1), heartbeat=heartbeat)
    )

    assert result.stdout == "staged"
    assert heartbeat.await_count == 2


def test_run_confirmed_no_heartbeat_when_connected():
    ssh = Mock()
    ssh.execute_command.return_value = ok("fine")
    executor, _ = make_executor(ssh, provider=Mock())
    heartbeat = AsyncMock()

    asyncio.run(executor.run_confirmed("ls", "42", deadline=None, heartbeat=heartbeat))
    heartbeat.assert_not_called()
