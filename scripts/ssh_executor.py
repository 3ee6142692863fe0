import paramiko
import os
import socket
import time
from dataclasses import dataclass
from typing import Optional


@dataclass
class CommandResult:
    """Result of a command execution."""

    command: str
    stdout: str
    stderr: str
    return_code: int
    success: bool
    duration: float


class SshError(Exception):
    """Base class for SSH failures."""

    def __init__(self, message: str, host: Optional[str] = None):
        super().__init__(message)
        self.host = host


class SshConnectionError(SshError):
    """The session could not be established or was lost mid-command."""


class SshCommandTimeout(SshError):
    """The command itself ran longer than its per-call timeout."""


class SshCommandError(SshError):
    """The command ran and exited non-zero."""

    def __init__(self, message: str, result: CommandResult, host: Optional[str] = None):
        super().__init__(message, host=host)
        self.result = result


class SshExecutor:
    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str = "root",
        key_path: Optional[str] = None,
        key_password: Optional[str] = None,
        connect_timeout: int = 30,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.key_path = key_path
        self.key_password = key_password
        self.connect_timeout = connect_timeout
        self.client: Optional[paramiko.SSHClient] = None

    @property
    def is_connected(self) -> bool:
        if self.client is None:
            return False
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def connect(self):
        if self.is_connected:
            return

        self.disconnect()
        try:
            self.client = paramiko.SSHClient()
            self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            self.client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                key_filename=os.path.expanduser(self.key_path) if self.key_path else None,
                passphrase=self.key_password,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=self.key_path is None,
            )
        except (paramiko.SSHException, socket.error, EOFError) as e:
            self.disconnect()
            raise SshConnectionError(
                f"Failed to connect to {self.host}:{self.port}: {e}", host=self.host
            ) from e

    def disconnect(self):
        if self.client is not None:
            try:
                self.client.close()
            finally:
                self.client = None

    def execute_command(self, command: str, timeout: Optional[float] = 120, check=True) -> CommandResult:
        self.connect()

        start_time = time.time()
        try:
            stdin, stdout, stderr = self.client.exec_command(command, timeout=timeout)
            stdout_str = stdout.read().decode("utf-8", errors="replace").strip()
            stderr_str = stderr.read().decode("utf-8", errors="replace").strip()
            exit_status = stdout.channel.recv_exit_status()
        except socket.timeout as e:
            raise SshCommandTimeout(
                f"Command {command!r} timed out after {timeout}s on {self.host}",
                host=self.host,
            ) from e
        except (paramiko.SSHException, socket.error, EOFError) as e:
            self.disconnect()
            raise SshConnectionError(
                f"Connection lost while running {command!r} on {self.host}: {e}",
                host=self.host,
            ) from e

        result = CommandResult(
            command=command,
            stdout=stdout_str,
            stderr=stderr_str,
            return_code=exit_status,
            success=exit_status == 0,
            duration=time.time() - start_time,
        )
        # paramiko reports -1 when the channel closed without an exit status
        if exit_status == -1:
            self.disconnect()
            raise SshConnectionError(
                f"Channel closed without exit status for {command!r} on {self.host}",
                host=self.host,
            )
        if check and exit_status != 0:
            raise SshCommandError(
                f"Command {command!r} failed with exit status {exit_status}: {stderr_str}",
                result=result,
                host=self.host,
            )
        return result
