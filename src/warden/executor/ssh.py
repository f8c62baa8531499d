"""SSH transport implementation using paramiko."""

import asyncio
import functools
import logging
import os
import socket
from pathlib import Path

import paramiko

from warden.config import Credentials
from warden.errors import AuthenticationError, RemoteConnectionError
from warden.executor import commands
from warden.executor.base import CommandOutput

logger = logging.getLogger(__name__)

# Failures that mean the connection itself is unusable
TRANSPORT_ERRORS = (paramiko.SSHException, EOFError, OSError, socket.timeout)


class SSHTransport:
    """Paramiko client driven from asyncio.

    Paramiko is blocking, so every call runs in the event loop's default
    executor; one user's slow command never stalls another user's task.
    """

    def __init__(self, client: paramiko.SSHClient, credentials: Credentials):
        self.credentials = credentials
        self._client: paramiko.SSHClient | None = client
        self._sftp: paramiko.SFTPClient | None = None

    @classmethod
    async def open(cls, credentials: Credentials, timeout: float) -> "SSHTransport":
        """Establish an SSH connection."""
        client = await _in_thread(_connect, credentials, timeout)
        return cls(client, credentials)

    @property
    def is_active(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    @property
    def sftp(self) -> paramiko.SFTPClient:
        """Get or create SFTP client."""
        if self._sftp is None:
            self._sftp = self._require_client().open_sftp()
        return self._sftp

    def _require_client(self) -> paramiko.SSHClient:
        if self._client is None:
            raise RemoteConnectionError("SSH transport is closed")
        return self._client

    async def run(
        self,
        command: str,
        cwd: str | None = None,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandOutput:
        full_command = commands.in_directory(command, cwd)
        try:
            return await _in_thread(self._exec, full_command, stdin, timeout)
        except TRANSPORT_ERRORS as e:
            raise RemoteConnectionError(f"SSH command failed: {e}") from e

    def _exec(self, command: str, stdin_data: str | None, timeout: float | None) -> CommandOutput:
        """Execute command and return its exit code and output."""
        stdin, stdout, stderr = self._require_client().exec_command(command, timeout=timeout)
        if stdin_data is not None:
            stdin.write(stdin_data)
            stdin.flush()
        stdin.channel.shutdown_write()
        out = stdout.read().decode(errors="replace")
        err = stderr.read().decode(errors="replace")
        exit_code = stdout.channel.recv_exit_status()
        return CommandOutput(exit_code=exit_code, stdout=out, stderr=err)

    async def put_file(self, local_path: Path, remote_path: str) -> None:
        try:
            await _in_thread(self._put, local_path, remote_path)
        except TRANSPORT_ERRORS as e:
            raise RemoteConnectionError(f"SFTP upload failed: {e}") from e

    def _put(self, local_path: Path, remote_path: str) -> None:
        self.sftp.put(str(local_path), remote_path)

    async def close(self) -> None:
        """Close SSH connection."""
        await _in_thread(self._close)

    def _close(self) -> None:
        if self._sftp is not None:
            self._sftp.close()
            self._sftp = None
        if self._client is not None:
            self._client.close()
            self._client = None


def _connect(credentials: Credentials, timeout: float) -> paramiko.SSHClient:
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    connect_kwargs = {
        "hostname": credentials.host,
        "port": credentials.port,
        "username": credentials.username,
        "timeout": timeout,
        "banner_timeout": timeout,
        "auth_timeout": timeout,
    }

    # Password wins when both secrets are configured
    if credentials.password:
        connect_kwargs["password"] = credentials.password
        connect_kwargs["look_for_keys"] = False
        connect_kwargs["allow_agent"] = False
    else:
        key_path = os.path.expanduser(credentials.key_path)
        if not os.path.exists(key_path):
            raise AuthenticationError(f"Private key file not found at: {key_path}")
        connect_kwargs["key_filename"] = key_path

    logger.info(f"Attempting SSH connection to {credentials.describe()}")
    try:
        client.connect(**connect_kwargs)
    except paramiko.AuthenticationException as e:
        client.close()
        raise AuthenticationError(f"SSH authentication failed for {credentials.username}: {e}") from e
    except TRANSPORT_ERRORS as e:
        client.close()
        raise RemoteConnectionError(
            f"SSH connection to {credentials.host}:{credentials.port} failed: {e}"
        ) from e
    return client


async def _in_thread(func, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args))
