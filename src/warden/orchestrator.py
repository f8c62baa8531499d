"""The process-wide registry tying sessions, deployment, supervision and monitoring together."""

import logging
from pathlib import Path

import httpx

from warden.config import DeploymentTarget, WardenConfig, parse_duration
from warden.deployer import ArtifactDeployer
from warden.errors import WardenError
from warden.executor.base import CommandOutput, TransportFactory
from warden.executor.ssh import SSHTransport
from warden.health import HealthChecker
from warden.locks import UserLocks
from warden.monitor import MonitorHandle, MonitorResult
from warden.recovery import RecoveryEngine
from warden.sessions import SessionRegistry
from warden.supervisor import ProcessSupervisor
from warden.targets import ConfigTargetResolver, TargetResolver
from warden.types import HealthCheckResult, RemoteProcess, Result

logger = logging.getLogger(__name__)


class Warden:
    """Owns all per-user state for the lifetime of the entry point.

    Use as ``async with Warden(config) as warden``; leaving the block stops
    every monitor and disconnects every session.
    """

    def __init__(
        self,
        config: WardenConfig,
        resolver: TargetResolver | None = None,
        transport_factory: TransportFactory = SSHTransport.open,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.resolver = resolver or ConfigTargetResolver(config)
        self.locks = UserLocks()
        self.sessions = SessionRegistry(config.session, self.locks, transport_factory)
        self.deployer = ArtifactDeployer(self.sessions)
        self.supervisor = ProcessSupervisor(self.sessions, config.artifact, config.process)
        self.health = HealthChecker(config.monitor, http_client)
        self.recovery = RecoveryEngine(
            self.sessions,
            self.deployer,
            self.supervisor,
            config.artifact,
            config.process,
            config.monitor,
        )
        self._monitors: dict[str, MonitorHandle] = {}
        self._active_projects: dict[str, str] = {}
        self._closed = False

    async def __aenter__(self) -> "Warden":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # Projects

    def set_active_project(self, user_id: str, project_id: str) -> None:
        if not user_id or not project_id:
            logger.warning("Attempted to set active project with invalid user or project id")
            return
        self._active_projects[user_id] = project_id
        logger.info(f"User {user_id} active project set to {project_id}")

    def active_project(self, user_id: str) -> str | None:
        return self._active_projects.get(user_id)

    async def select_project(self, user_id: str, project_id: str) -> DeploymentTarget | None:
        """Make ``project_id`` the user's active project and register its health endpoint."""
        target = await self.resolver.resolve(project_id)
        if target is None:
            return None

        self.set_active_project(user_id, project_id)
        if target.public_url:
            self.health.register(user_id, target.public_url)
        else:
            self.health.unregister(user_id)
        return target

    async def connect_project(self, user_id: str, project_id: str) -> Result[dict]:
        """Resolve the project's target, open the user's session and register its health endpoint."""
        target = await self.select_project(user_id, project_id)
        if target is None:
            return Result.failure(WardenError(f"Project '{project_id}' has no deployment target configured"))

        logger.info(f"User {user_id} connecting to project '{project_id}' ({target.host})")
        return await self.sessions.connect(user_id, target.credentials())

    # Session operations

    async def execute(self, user_id: str, command: str) -> Result[CommandOutput]:
        return await self.sessions.execute(user_id, command)

    async def disconnect(self, user_id: str) -> None:
        await self.stop_monitoring(user_id)
        await self.sessions.disconnect(user_id)

    # Worker operations

    async def deploy_artifact(self, user_id: str) -> Result[str]:
        return await self.deployer.deploy(
            user_id, Path(self.config.artifact.local_path), self.config.artifact.remote_path
        )

    async def start_worker(self, user_id: str, port: int | None = None) -> Result[RemoteProcess]:
        return await self.supervisor.start(user_id, port)

    async def stop_worker(self, user_id: str) -> Result[RemoteProcess]:
        return await self.supervisor.stop(user_id)

    async def worker_status(self, user_id: str) -> Result[RemoteProcess]:
        return await self.supervisor.status(user_id)

    async def worker_logs(self, user_id: str, lines: int = 100) -> Result[str]:
        return await self.supervisor.logs(user_id, lines)

    async def check_health(self, user_id: str) -> HealthCheckResult:
        return await self.health.check_health(user_id)

    async def recover(self, user_id: str) -> bool:
        return await self.recovery.recover(user_id)

    async def release_port(self, user_id: str, port: int | None = None) -> Result[None]:
        """Terminate whatever holds the worker port, tracked or not."""
        port = port if port is not None else self.config.process.port
        async with self.locks(user_id):
            return await self.recovery.clear_port(user_id, port)

    # Monitoring

    def monitor_for(self, user_id: str) -> MonitorHandle | None:
        return self._monitors.get(user_id)

    async def monitor(
        self,
        user_id: str,
        interval: float | None = None,
        max_retries: int | None = None,
    ) -> MonitorResult:
        """Start (or replace) the user's background health monitor."""
        if self._closed:
            return MonitorResult(False, "Warden is shutting down")
        if not self.sessions.is_connected(user_id):
            return MonitorResult(False, "SSH not connected. Please connect first.")
        if not self.health.endpoint(user_id):
            return MonitorResult(
                False, "Public address not configured for the project. Required for health monitoring."
            )

        await self.stop_monitoring(user_id)

        monitor_config = self.config.monitor
        interval = interval if interval is not None else parse_duration(monitor_config.interval)
        max_retries = max_retries if max_retries is not None else monitor_config.max_retries

        handle = MonitorHandle(
            user_id,
            self.health,
            self.recovery,
            interval=interval,
            max_retries=max_retries,
            failure_threshold=monitor_config.failure_threshold,
            retry_delay=parse_duration(monitor_config.retry_delay),
        )
        self._monitors[user_id] = handle
        handle.start()

        logger.info(f"Worker monitoring started for user {user_id} with {interval:g}s interval")
        return MonitorResult(True, f"Worker monitoring started with {interval:g}s interval.", handle)

    async def stop_monitoring(self, user_id: str) -> bool:
        handle = self._monitors.pop(user_id, None)
        if handle is None:
            return False
        await handle.aclose()
        return True

    async def aclose(self) -> None:
        """Stop every monitor, close the HTTP client and disconnect all sessions."""
        if self._closed:
            return
        self._closed = True

        handles = list(self._monitors.values())
        self._monitors.clear()
        for handle in handles:
            handle.stop()
        for handle in handles:
            await handle.wait()

        await self.health.aclose()
        await self.sessions.disconnect_all()
        logger.info("Warden shut down")
