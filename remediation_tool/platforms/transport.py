"""
Command transports.

LocalTransport runs commands on the machine executing the tool, and
SSHTransport runs them on a remote target over paramiko.
"""

import logging
import os
import shutil
import socket
import subprocess
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

import paramiko

from ..core.errors import NotFoundError, TaskTimeoutError, TransportError
from ..core.models import Target
from .base import CommandResult, Transport

logger = logging.getLogger(__name__)


def _elapsed_ms(start_time: datetime) -> int:
    return int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)


def _read_stream(stream, sink: List[Any]) -> None:
    try:
        sink.append(stream.read())
    except Exception as e:
        sink.append(e)


class LocalTransport(Transport):
    """Runs commands through the local shell."""

    def execute_command(self, command: str, timeout: int = 30) -> CommandResult:
        start_time = datetime.now(timezone.utc)
        logger.debug("Executing local command: %s", command)

        try:
            result = subprocess.run(
                ["/bin/sh", "-c", command],
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False
            )
        except subprocess.TimeoutExpired:
            raise TaskTimeoutError(f"Command timed out after {timeout} seconds: {command}") from None
        except OSError as e:
            raise TransportError("Failed to start local command", cause=e) from e

        return CommandResult(
            command=command,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
            execution_time_ms=_elapsed_ms(start_time)
        )

    def fetch_file(self, remote_path: str, local_path: Path) -> Path:
        source = Path(remote_path)
        if not source.exists():
            raise NotFoundError(f"File not found: {remote_path}")
        local_path.parent.mkdir(parents=True, exist_ok=True)
        if source.resolve() != local_path.resolve():
            shutil.copyfile(source, local_path)
        return local_path


class SSHTransport(Transport):
    """
    Runs commands on a remote target over SSH.

    The connection is opened lazily on first use and reused for every
    following command until close() is called.
    """

    def __init__(self, target: Target, connect_timeout: int = 10,
                 strict_host_keys: bool = False):
        """
        Initialize the transport.

        Args:
            target: Target to connect to
            connect_timeout: TCP/SSH handshake timeout in seconds
            strict_host_keys: Reject hosts missing from known_hosts
        """
        self.target = target
        self.connect_timeout = connect_timeout
        self.strict_host_keys = strict_host_keys
        self.client: Optional[paramiko.SSHClient] = None
        self._lock = threading.Lock()

    def connect(self) -> paramiko.SSHClient:
        """Open the SSH connection if it is not open yet."""
        with self._lock:
            if self.client is not None:
                return self.client

            client = paramiko.SSHClient()
            client.load_system_host_keys()
            if self.strict_host_keys:
                client.set_missing_host_key_policy(paramiko.RejectPolicy())
            else:
                client.set_missing_host_key_policy(paramiko.WarningPolicy())

            creds = self.target.credentials
            try:
                client.connect(
                    hostname=self.target.address,
                    port=self.target.port,
                    username=creds.username,
                    password=creds.password,
                    key_filename=os.path.expanduser(creds.private_key_path) if creds.private_key_path else None,
                    passphrase=creds.passphrase,
                    timeout=self.connect_timeout,
                    allow_agent=creds.password is None,
                    look_for_keys=creds.password is None and creds.private_key_path is None
                )
            except paramiko.AuthenticationException as e:
                client.close()
                raise TransportError(f"Authentication failed for {self.target.id}", cause=e) from e
            except (paramiko.SSHException, OSError) as e:
                client.close()
                raise TransportError(f"Cannot connect to {self.target.id} ({self.target.address})",
                                     cause=e) from e

            logger.debug("SSH connection established to %s:%s", self.target.address, self.target.port)
            self.client = client
            return client

    def execute_command(self, command: str, timeout: int = 30) -> CommandResult:
        client = self.connect()
        start_time = datetime.now(timezone.utc)
        logger.debug("Executing command on %s: %s", self.target.id, command)

        try:
            stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
            # stderr is drained alongside stdout so neither can fill the channel window
            sink: List[Any] = []
            reader = threading.Thread(target=_read_stream, args=(stderr, sink),
                                      name=f"stderr-{self.target.id}", daemon=True)
            reader.start()
            stdout_data = stdout.read().decode('utf-8', errors='ignore')
            reader.join(timeout)
            if not sink:
                raise socket.timeout()
            if isinstance(sink[0], Exception):
                raise sink[0]
            stderr_data = sink[0].decode('utf-8', errors='ignore')
            exit_code = stdout.channel.recv_exit_status()
        except socket.timeout:
            raise TaskTimeoutError(f"Command timed out after {timeout} seconds on {self.target.id}: "
                                   f"{command}") from None
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise TransportError(f"Command failed on {self.target.id}", cause=e) from e

        result = CommandResult(
            command=command,
            stdout=stdout_data,
            stderr=stderr_data,
            exit_code=exit_code,
            execution_time_ms=_elapsed_ms(start_time)
        )
        logger.debug("Command executed on %s: %s (exit_code: %s, %sms)",
                     self.target.id, command, exit_code, result.execution_time_ms)
        return result

    def fetch_file(self, remote_path: str, local_path: Path) -> Path:
        client = self.connect()
        local_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with client.open_sftp() as sftp:
                sftp.get(remote_path, str(local_path))
        except FileNotFoundError:
            raise NotFoundError(f"File not found on {self.target.id}: {remote_path}") from None
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(f"Cannot fetch {remote_path} from {self.target.id}", cause=e) from e
        return local_path

    def close(self) -> None:
        with self._lock:
            if self.client:
                self.client.close()
                self.client = None
                logger.debug("SSH connection to %s closed", self.target.id)
