"""Idempotent artifact deployment to the remote host."""

import logging
from pathlib import Path

from warden.errors import DeploymentError
from warden.executor import commands
from warden.sessions import SessionRegistry
from warden.types import Result

logger = logging.getLogger(__name__)


class ArtifactDeployer:
    """Ensures a local executable is present and executable on the remote host."""

    def __init__(self, sessions: SessionRegistry):
        self.sessions = sessions

    async def remote_state(self, user_id: str, remote_path: str) -> Result[str]:
        """One of ``executable``, ``present`` or ``missing``."""
        result = await self.sessions.execute(user_id, commands.file_state(remote_path))
        if not result.ok:
            return Result.failure(result.error)
        state = commands.last_line(result.value.stdout)
        if state not in (commands.EXECUTABLE, commands.PRESENT, commands.MISSING):
            return Result.failure(DeploymentError(f"Unexpected file probe output: {result.value.stdout!r}"))
        return Result.success(state)

    async def deploy(self, user_id: str, local_path: Path, remote_path: str) -> Result[str]:
        """Upload the artifact if missing and make sure it is executable."""
        async with self.sessions.locks(user_id):
            connection = await self.sessions.ensure_connected(user_id)
            if not connection.ok:
                return Result.failure(connection.error)

            probe = await self.remote_state(user_id, remote_path)
            if not probe.ok:
                return Result.failure(probe.error)

            if probe.value == commands.EXECUTABLE:
                logger.debug(f"Artifact already deployed at {remote_path} for user {user_id}")
                return Result.success(remote_path, f"{remote_path} already present and executable")

            if probe.value == commands.MISSING:
                local_path = Path(local_path)
                if not local_path.is_file():
                    return Result.failure(DeploymentError(f"Local artifact not found at {local_path}"))

                logger.info(f"Uploading {local_path} to {remote_path} for user {user_id}")
                upload = await self.sessions.upload(user_id, local_path, remote_path)
                if not upload.ok:
                    logger.error(f"Failed to upload artifact for user {user_id}: {upload.message}")
                    return Result.failure(DeploymentError(f"Upload to {remote_path} failed: {upload.message}"))

            chmod = await self.sessions.execute(user_id, commands.make_executable(remote_path))
            if not chmod.ok:
                logger.error(f"Failed to chmod {remote_path} for user {user_id}: {chmod.message}")
                return Result.failure(DeploymentError(f"Could not make {remote_path} executable: {chmod.message}"))

            logger.info(f"Artifact ready at {remote_path} for user {user_id}")
            return Result.success(remote_path, f"Deployed {remote_path} and set it executable")
