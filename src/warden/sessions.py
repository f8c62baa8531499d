"""Per-user remote shell sessions with persistent working directories."""

import logging
import posixpath
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from warden.config import Credentials, SessionConfig, parse_duration
from warden.errors import (
    AuthenticationError,
    CommandExecutionError,
    RemoteConnectionError,
)
from warden.executor import commands
from warden.executor.base import CommandOutput, Transport, TransportFactory
from warden.executor.ssh import SSHTransport
from warden.locks import UserLocks
from warden.types import CommandLogEntry, Result

logger = logging.getLogger(__name__)


@dataclass
class UserSession:
    """Remote shell state for one user."""

    user_id: str
    transport: Transport | None = None
    connected: bool = False
    cwd: str | None = None
    command_log: list[CommandLogEntry] = field(default_factory=list)
    # Last credentials that produced a working connection; None means no silent reconnect
    active_credentials: Credentials | None = None

    @property
    def live(self) -> bool:
        return self.connected and self.transport is not None and self.transport.is_active


class SessionRegistry:
    """Process-wide map from user id to remote shell session.

    Every public operation runs under the user's lock from ``locks``; callers
    that already hold it (supervisor, recovery) re-enter without blocking.
    """

    def __init__(
        self,
        config: SessionConfig,
        locks: UserLocks,
        transport_factory: TransportFactory = SSHTransport.open,
    ):
        self.config = config
        self.locks = locks
        self.transport_factory = transport_factory
        self._sessions: dict[str, UserSession] = {}

    def session(self, user_id: str) -> UserSession:
        """Get the user's session, creating a disconnected one on first reference."""
        session = self._sessions.get(user_id)
        if session is None:
            session = self._sessions[user_id] = UserSession(user_id=user_id)
        return session

    def user_ids(self) -> list[str]:
        return list(self._sessions)

    def is_connected(self, user_id: str) -> bool:
        session = self._sessions.get(user_id)
        return session is not None and session.live

    def cwd(self, user_id: str) -> str | None:
        session = self._sessions.get(user_id)
        return session.cwd if session else None

    def command_log(self, user_id: str) -> list[CommandLogEntry]:
        session = self._sessions.get(user_id)
        return list(session.command_log) if session else []

    # Connection lifecycle

    async def connect(self, user_id: str, credentials: Credentials) -> Result[dict]:
        """Open a session for the user. Returns the initial working directory."""
        async with self.locks(user_id):
            return await self._connect(self.session(user_id), credentials)

    async def _connect(self, session: UserSession, credentials: Credentials) -> Result[dict]:
        if session.live and session.active_credentials == credentials:
            logger.debug(f"SSH already connected for user {session.user_id}")
            return Result.success({"cwd": session.cwd}, "Already connected")

        await self._dispose(session)

        missing = credentials.missing_fields()
        if missing:
            session.active_credentials = None
            error = AuthenticationError(
                f"SSH connection details are incomplete: missing {', '.join(missing)}"
            )
            logger.error(f"Cannot connect user {session.user_id}: {error}")
            return Result.failure(error)

        timeout = parse_duration(self.config.connect_timeout)
        try:
            transport = await self.transport_factory(credentials, timeout)
        except (AuthenticationError, RemoteConnectionError) as e:
            session.active_credentials = None
            logger.error(f"SSH connection failed for user {session.user_id}: {e}")
            return Result.failure(e)

        session.transport = transport
        session.connected = True
        session.active_credentials = credentials

        try:
            output = await transport.run(commands.PWD)
        except RemoteConnectionError as e:
            await self._dispose(session)
            session.active_credentials = None
            logger.error(f"Connection for user {session.user_id} dropped during setup: {e}")
            return Result.failure(e)

        if output.failed:
            logger.warning(f"Could not determine initial working directory: {output.stderr.strip()}")
            session.cwd = None
        else:
            session.cwd = commands.first_line(output.stdout)
            logger.info(f"Initial working directory for user {session.user_id}: {session.cwd}")

        return Result.success({"cwd": session.cwd}, f"SSH connection to {credentials.host} successful")

    async def ensure_connected(self, user_id: str) -> Result[dict]:
        """Check the transport is live, reconnecting once from stored credentials."""
        async with self.locks(user_id):
            return await self._ensure_connected(self.session(user_id))

    async def _ensure_connected(self, session: UserSession) -> Result[dict]:
        if session.live:
            return Result.success({"cwd": session.cwd})

        if session.connected or session.transport is not None:
            logger.warning(f"Transport for user {session.user_id} is no longer active")
            await self._dispose(session)

        if session.active_credentials is None:
            return Result.failure(
                RemoteConnectionError("SSH not connected. Please initialize connection first.")
            )

        logger.info(f"Reconnecting user {session.user_id} with stored credentials")
        return await self._connect(session, session.active_credentials)

    async def disconnect(self, user_id: str) -> None:
        async with self.locks(user_id):
            session = self.session(user_id)
            if session.transport is not None:
                logger.info(f"Disconnecting SSH session for user {user_id}")
            await self._dispose(session)
            session.active_credentials = None

    async def disconnect_all(self) -> None:
        for user_id in self.user_ids():
            await self.disconnect(user_id)

    async def _dispose(self, session: UserSession) -> None:
        transport = session.transport
        session.transport = None
        session.connected = False
        session.cwd = None
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.warning(f"Error closing transport for user {session.user_id}: {e}")

    # Command execution

    async def execute(self, user_id: str, command: str) -> Result[CommandOutput]:
        """Run a command in the user's session, tracking directory changes."""
        async with self.locks(user_id):
            session = self.session(user_id)
            command = command.strip()

            connection = await self._ensure_connected(session)
            if not connection.ok:
                output = CommandOutput(exit_code=-1, stderr=connection.message)
                await self._record(session, command, output, success=False)
                return Result.failure(connection.error, value=output)

            try:
                if commands.is_directory_change(command):
                    output, result = await self._change_directory(session, command)
                else:
                    output, result = await self._run(session, command)
            except RemoteConnectionError as e:
                logger.error(f"Transport failure for user {user_id} running '{command}': {e}")
                # Keep active_credentials so the next call can reconnect
                await self._dispose(session)
                output = CommandOutput(exit_code=-1, stderr=str(e))
                result = Result.failure(e, value=output)

            await self._record(session, command, output, success=result.ok)
            return result

    async def _change_directory(
        self, session: UserSession, command: str
    ) -> tuple[CommandOutput, Result[CommandOutput]]:
        full_command = commands.change_directory(command)
        logger.info(f"Executing cd command: {full_command} in {session.cwd or 'default directory'}")
        output = await session.transport.run(full_command, cwd=session.cwd)

        new_cwd = commands.last_line(output.stdout)
        if output.failed or not new_cwd:
            error = CommandExecutionError(
                f"Failed to change directory: {output.stderr.strip() or 'no directory reported'}",
                exit_code=output.exit_code,
                stdout=output.stdout,
                stderr=output.stderr,
            )
            return output, Result.failure(error, value=output)

        session.cwd = new_cwd
        logger.info(f"Working directory changed to: {new_cwd}")
        return output, Result.success(
            CommandOutput(exit_code=0, stdout=new_cwd, stderr=output.stderr),
            f"Working directory changed to {new_cwd}",
        )

    async def _run(
        self,
        session: UserSession,
        command: str,
        stdin: str | None = None,
    ) -> tuple[CommandOutput, Result[CommandOutput]]:
        logger.debug(f"Executing command: {command} in {session.cwd or 'default directory'}")
        output = await session.transport.run(command, cwd=session.cwd, stdin=stdin)
        if output.failed:
            error = CommandExecutionError(
                f"Command exited with status {output.exit_code}: {output.stderr.strip()}",
                exit_code=output.exit_code,
                stdout=output.stdout,
                stderr=output.stderr,
            )
            return output, Result.failure(error, value=output)
        return output, Result.success(output, "Command executed successfully")

    async def _record(
        self,
        session: UserSession,
        command: str,
        output: CommandOutput,
        success: bool,
    ) -> None:
        entry = CommandLogEntry(
            timestamp=datetime.now(),
            command=command,
            stdout=output.stdout,
            stderr=output.stderr,
            success=success,
        )
        session.command_log.append(entry)
        overflow = len(session.command_log) - self.config.max_log_entries
        if overflow > 0:
            del session.command_log[:overflow]

        if not session.live:
            logger.warning(
                f"SSH not connected, cannot append to remote command log for user {session.user_id}"
            )
            return

        log_path = self.config.command_log_file
        if session.cwd and not posixpath.isabs(log_path):
            log_path = posixpath.join(session.cwd, log_path)
        try:
            result = await session.transport.run(
                commands.write_stdin_to(log_path, append=True),
                stdin=entry.format_line(),
            )
            if result.failed:
                logger.warning(f"Failed to append to remote command log ({log_path}): {result.stderr.strip()}")
        except Exception as e:
            logger.warning(f"Error appending to remote command log ({log_path}): {e}")

    # File helpers

    async def read_file(self, user_id: str, path: str) -> Result[str]:
        """Read a remote file, relative paths resolved against the session cwd."""
        async with self.locks(user_id):
            session = self.session(user_id)
            connection = await self._ensure_connected(session)
            if not connection.ok:
                return Result.failure(connection.error)
            try:
                output, result = await self._run(session, commands.read_file(path))
            except RemoteConnectionError as e:
                await self._dispose(session)
                return Result.failure(e)
            if not result.ok:
                return Result.failure(result.error)
            return Result.success(output.stdout, f"Read {path}")

    async def write_file(self, user_id: str, path: str, content: str) -> Result[None]:
        """Create or overwrite a remote file with ``content``."""
        async with self.locks(user_id):
            session = self.session(user_id)
            connection = await self._ensure_connected(session)
            if not connection.ok:
                return Result.failure(connection.error)
            try:
                _, result = await self._run(session, commands.write_stdin_to(path), stdin=content)
            except RemoteConnectionError as e:
                await self._dispose(session)
                return Result.failure(e)
            if not result.ok:
                return Result.failure(result.error)
            logger.info(f"Wrote {len(content)} bytes to {path} for user {user_id}")
            return Result.success(None, f"File content uploaded to {path}")

    async def upload(self, user_id: str, local_path: Path, remote_path: str) -> Result[None]:
        """Copy a local file to the remote host over SFTP."""
        async with self.locks(user_id):
            session = self.session(user_id)
            connection = await self._ensure_connected(session)
            if not connection.ok:
                return Result.failure(connection.error)
            try:
                await session.transport.put_file(local_path, remote_path)
            except RemoteConnectionError as e:
                await self._dispose(session)
                return Result.failure(e)
            return Result.success(None, f"Uploaded {local_path} to {remote_path}")
