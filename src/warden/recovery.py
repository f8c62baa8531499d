"""Bounded repair of an unhealthy worker: clear the port, redeploy, restart."""

import asyncio
import logging
from pathlib import Path

from warden.config import ArtifactConfig, MonitorConfig, ProcessConfig, parse_duration
from warden.deployer import ArtifactDeployer
from warden.errors import PortConflictError, WardenError
from warden.executor import commands
from warden.sessions import SessionRegistry
from warden.supervisor import ProcessSupervisor
from warden.types import ProcessStatus, Result

logger = logging.getLogger(__name__)


class RecoveryEngine:
    """One recovery attempt per ``recover`` call; retries are the caller's job."""

    def __init__(
        self,
        sessions: SessionRegistry,
        deployer: ArtifactDeployer,
        supervisor: ProcessSupervisor,
        artifact: ArtifactConfig,
        process: ProcessConfig,
        monitor: MonitorConfig,
    ):
        self.sessions = sessions
        self.deployer = deployer
        self.supervisor = supervisor
        self.artifact = artifact
        self.process = process
        self.monitor = monitor

    def _port(self, user_id: str) -> int:
        record = self.supervisor.get(user_id)
        return record.port if record is not None else self.process.port

    async def recover(self, user_id: str) -> bool:
        """Clear port conflicts, ensure the artifact, and restart the worker."""
        port = self._port(user_id)
        async with self.sessions.locks(user_id):
            try:
                result = await self._recover(user_id, port)
            except WardenError as e:
                result = Result.failure(e)

            if not result.ok:
                logger.error(f"Recovery for user {user_id} failed: {result.message}")
                self.supervisor.mark_error(user_id, port, result.message)
                return False

            logger.info(f"Successfully recovered worker for user {user_id}")
            return True

    async def _recover(self, user_id: str, port: int) -> Result[None]:
        cleared = await self.clear_port(user_id, port)
        if not cleared.ok:
            return cleared

        # A tracked process that survived port clearing is alive but unhealthy
        record = self.supervisor.get(user_id)
        if record is not None and record.status == ProcessStatus.RUNNING:
            status = await self.supervisor.status(user_id)
            if status.ok and status.value.status == ProcessStatus.RUNNING:
                await self.supervisor.stop(user_id)

        deployed = await self.deployer.deploy(
            user_id, Path(self.artifact.local_path), self.artifact.remote_path
        )
        if not deployed.ok:
            return Result.failure(deployed.error)

        started = await self.supervisor.start(user_id, port)
        if not started.ok:
            return Result.failure(started.error)
        return Result.success()

    async def clear_port(self, user_id: str, port: int) -> Result[None]:
        """Terminate whatever holds ``port``: graceful first, then forced."""
        holders = await self.supervisor.listeners(user_id, port)
        if not holders.ok:
            return Result.failure(holders.error)
        if not holders.value:
            return Result.success()

        logger.info(f"Port {port} appears to be in use by pid(s) {holders.value}")
        wait = parse_duration(self.monitor.kill_wait)

        await self.sessions.execute(user_id, commands.signal_pids(holders.value))
        await self.sessions.execute(user_id, commands.kill_matching(self.artifact.remote_path))
        await asyncio.sleep(wait)

        remaining = await self.supervisor.listeners(user_id, port)
        if not remaining.ok:
            return Result.failure(remaining.error)
        if remaining.value:
            await self.sessions.execute(user_id, commands.signal_pids(remaining.value, force=True))
            await asyncio.sleep(wait)

        verify = await self.supervisor.listeners(user_id, port)
        if not verify.ok:
            return Result.failure(verify.error)
        if verify.value:
            return Result.failure(PortConflictError(port, verify.value))

        logger.info(f"Successfully cleared port {port}")
        return Result.success()
