"""Start, stop and probe the detached worker process on the remote host."""

import asyncio
import logging
from datetime import datetime

from warden.config import ArtifactConfig, ProcessConfig, parse_duration
from warden.errors import (
    DeploymentError,
    NotRunningError,
    PortConflictError,
    ProcessStartupError,
    WardenError,
)
from warden.executor import commands
from warden.executor.base import CommandOutput
from warden.sessions import SessionRegistry
from warden.types import ProcessStatus, RemoteProcess, Result

logger = logging.getLogger(__name__)


class ProcessSupervisor:
    """Tracks one supervised process per user.

    Records are created on the first start attempt and mutated in place;
    stopped and errored records are kept for inspection.
    """

    def __init__(
        self,
        sessions: SessionRegistry,
        artifact: ArtifactConfig,
        config: ProcessConfig,
    ):
        self.sessions = sessions
        self.artifact = artifact
        self.config = config
        self._processes: dict[str, RemoteProcess] = {}

    @property
    def log_path(self) -> str:
        return commands.sibling_path(self.artifact.remote_path, self.config.log_file)

    def get(self, user_id: str) -> RemoteProcess | None:
        return self._processes.get(user_id)

    def mark_error(self, user_id: str, port: int, message: str) -> RemoteProcess:
        """Degrade (or create) the user's record to ``error``."""
        process = self._processes.get(user_id)
        if process is None:
            process = self._processes[user_id] = RemoteProcess(
                user_id=user_id, port=port, start_time=datetime.now()
            )
        process.status = ProcessStatus.ERROR
        process.last_error = message
        return process

    def _fail(self, process: RemoteProcess, error: WardenError) -> Result[RemoteProcess]:
        process.status = ProcessStatus.ERROR
        process.last_error = str(error)
        logger.error(f"Worker for user {process.user_id}: {error}")
        return Result.failure(error, value=process)

    async def listeners(self, user_id: str, port: int) -> Result[list[int]]:
        """Pids currently bound to ``port``."""
        result = await self.sessions.execute(user_id, commands.port_listeners(port))
        if not result.ok:
            return Result.failure(result.error)
        return Result.success(commands.parse_pids(result.value.stdout))

    async def is_alive(self, user_id: str, pid: int) -> Result[bool]:
        result = await self.sessions.execute(user_id, commands.process_alive(pid))
        if not result.ok:
            return Result.failure(result.error)
        return Result.success(commands.last_line(result.value.stdout) == commands.ALIVE)

    async def tail_log(self, user_id: str, lines: int) -> Result[CommandOutput]:
        return await self.sessions.execute(user_id, commands.tail_file(self.log_path, lines))

    async def _free_port(self, user_id: str, port: int) -> Result[None]:
        holders = await self.listeners(user_id, port)
        if not holders.ok:
            return Result.failure(holders.error)
        if not holders.value:
            return Result.success()

        logger.info(f"Port {port} held by pid(s) {holders.value}; terminating for user {user_id}")
        await self.sessions.execute(user_id, commands.signal_pids(holders.value, force=True))
        await asyncio.sleep(parse_duration(self.config.port_release_delay))

        remaining = await self.listeners(user_id, port)
        if not remaining.ok:
            return Result.failure(remaining.error)
        if remaining.value:
            return Result.failure(PortConflictError(port, remaining.value))
        return Result.success()

    async def start(self, user_id: str, port: int | None = None) -> Result[RemoteProcess]:
        """Launch the worker detached on ``port`` unless it is already running."""
        port = port if port is not None else self.config.port
        async with self.sessions.locks(user_id):
            existing = self._processes.get(user_id)
            if existing is not None and existing.status == ProcessStatus.RUNNING:
                return Result.success(
                    existing, f"Worker is already running on port {existing.port} (pid {existing.pid})"
                )

            connection = await self.sessions.ensure_connected(user_id)
            if not connection.ok:
                return Result.failure(connection.error, value=existing)

            process = existing or RemoteProcess(user_id=user_id, port=port, start_time=datetime.now())
            process.port = port
            process.pid = None
            process.url = None
            process.status = ProcessStatus.STARTING
            process.start_time = datetime.now()
            process.last_error = None
            process.initial_output = None
            self._processes[user_id] = process

            freed = await self._free_port(user_id, port)
            if not freed.ok:
                return self._fail(process, freed.error)

            binary = self.artifact.remote_path
            probe = await self.sessions.execute(user_id, commands.file_state(binary))
            if not probe.ok or commands.last_line(probe.value.stdout) != commands.EXECUTABLE:
                return self._fail(
                    process,
                    DeploymentError(f"{binary} not found or not executable. Deploy it first."),
                )

            launch_command = commands.launch_detached(binary, self.log_path)
            logger.info(f"Starting worker for user {user_id}: {launch_command}")
            launch = await self.sessions.execute(user_id, launch_command)
            if not launch.ok:
                return self._fail(process, ProcessStartupError(f"Failed to launch worker: {launch.message}"))

            pids = commands.parse_pids(launch.value.stdout)
            if not pids:
                return self._fail(
                    process,
                    ProcessStartupError(f"Launch did not report a pid: {launch.value.stdout!r}"),
                )
            pid = pids[-1]

            await asyncio.sleep(parse_duration(self.config.startup_grace))

            alive = await self.is_alive(user_id, pid)
            if not alive.ok or not alive.value:
                tail = await self.tail_log(user_id, self.config.log_tail_lines)
                log_tail = tail.value.stdout.strip() if tail.ok and tail.value else ""
                return self._fail(
                    process,
                    ProcessStartupError(
                        f"Worker terminated immediately. Log: {log_tail or 'No log available'}",
                        log_tail=log_tail,
                    ),
                )

            process.pid = pid
            process.status = ProcessStatus.RUNNING
            process.url = f"http://localhost:{port}"
            logger.info(f"Worker started for user {user_id} with pid {pid} on port {port}")

            await self._capture_initial_output(user_id, process)
            return Result.success(process, f"Worker started with pid {pid} on port {port}")

    async def _capture_initial_output(self, user_id: str, process: RemoteProcess) -> None:
        await asyncio.sleep(parse_duration(self.config.snapshot_delay))
        tail = await self.tail_log(user_id, self.config.log_tail_lines)
        if tail.ok and tail.value.stdout.strip():
            process.initial_output = tail.value.stdout.strip()
        elif not tail.ok:
            logger.warning(f"Failed to fetch initial logs for pid {process.pid}: {tail.message}")

    async def stop(self, user_id: str) -> Result[RemoteProcess]:
        """Terminate the tracked worker."""
        async with self.sessions.locks(user_id):
            process = self._processes.get(user_id)
            if process is None or process.status != ProcessStatus.RUNNING or process.pid is None:
                return Result.failure(NotRunningError(f"No running worker found for user {user_id}"))

            logger.info(f"Stopping worker for user {user_id} with pid {process.pid}")
            result = await self.sessions.execute(user_id, commands.terminate(process.pid))
            if not result.ok:
                return Result.failure(result.error, value=process)

            process.status = ProcessStatus.STOPPED
            return Result.success(process, f"Worker with pid {process.pid} stopped")

    async def status(self, user_id: str) -> Result[RemoteProcess]:
        """Re-probe the tracked pid and update the record."""
        async with self.sessions.locks(user_id):
            process = self._processes.get(user_id)
            if process is None or process.pid is None:
                return Result.failure(NotRunningError(f"No worker has been started for user {user_id}"))

            alive = await self.is_alive(user_id, process.pid)
            if not alive.ok:
                return Result.failure(alive.error, value=process)

            process.status = ProcessStatus.RUNNING if alive.value else ProcessStatus.STOPPED
            logger.info(f"Worker for user {user_id} is {process.status.value}")
            return Result.success(process, f"Worker is {process.status.value}")

    async def logs(self, user_id: str, lines: int = 100) -> Result[str]:
        """Tail of the supervised process's log file."""
        result = await self.tail_log(user_id, lines)
        if not result.ok:
            return Result.failure(result.error)
        return Result.success(result.value.stdout or "No logs found")

    async def run_once(self, user_id: str, args: list[str] | None = None) -> Result[CommandOutput]:
        """Run the artifact in the foreground and return its output."""
        async with self.sessions.locks(user_id):
            binary = self.artifact.remote_path
            probe = await self.sessions.execute(user_id, commands.file_state(binary))
            if not probe.ok:
                return Result.failure(probe.error)
            if commands.last_line(probe.value.stdout) != commands.EXECUTABLE:
                return Result.failure(DeploymentError(f"{binary} not found or not executable. Deploy it first."))
            return await self.sessions.execute(user_id, commands.run_foreground(binary, args))
