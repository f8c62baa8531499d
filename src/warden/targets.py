"""Collaborator interfaces: where a project's worker is deployed."""

from typing import Protocol

from warden.config import DeploymentTarget, WardenConfig


class TargetResolver(Protocol):
    """Resolve the deployment target for a project id."""

    async def resolve(self, project_id: str) -> DeploymentTarget | None: ...


class ConfigTargetResolver:
    """Targets declared under ``projects`` in the config file."""

    def __init__(self, config: WardenConfig):
        self._targets = dict(config.projects)

    async def resolve(self, project_id: str) -> DeploymentTarget | None:
        return self._targets.get(project_id)
