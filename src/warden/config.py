"""Configuration models for Warden."""

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, field_validator


class Credentials(BaseModel):
    """SSH connection parameters accepted for a session."""

    model_config = ConfigDict(frozen=True)

    host: str | None = None
    port: int = 22
    username: str | None = None
    password: str | None = None
    key_path: str | None = None

    def missing_fields(self) -> list[str]:
        """Names of the fields that keep these credentials from being usable."""
        missing = []
        if not self.host:
            missing.append("host")
        if not self.username:
            missing.append("username")
        if not self.password and not self.key_path:
            missing.append("password or key_path")
        return missing

    def is_complete(self) -> bool:
        return not self.missing_fields()

    def describe(self) -> str:
        method = "password" if self.password else f"key {self.key_path}"
        return f"{self.username}@{self.host}:{self.port} ({method})"


class DeploymentTarget(BaseModel):
    """Where a project's worker lives and how it is reached."""

    host: str
    port: int = 22
    username: str
    password: str | None = None
    key_path: str | None = None
    public_url: str | None = None

    def credentials(self) -> Credentials:
        return Credentials(
            host=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            key_path=self.key_path,
        )


class ArtifactConfig(BaseModel):
    """Local executable and its remote location."""

    local_path: str = "bin/worker"
    remote_path: str = "/home/devbox/worker"


class ProcessConfig(BaseModel):
    """Supervised process parameters."""

    port: int = 3051
    log_file: str = "worker_server.log"  # Sibling of the remote executable
    startup_grace: str = "2s"
    snapshot_delay: str = "500ms"
    port_release_delay: str = "2s"
    log_tail_lines: int = 20

    @field_validator("startup_grace", "snapshot_delay", "port_release_delay")
    @classmethod
    def validate_duration(cls, v: str) -> str:
        parse_duration(v)
        return v


class MonitorConfig(BaseModel):
    """Health monitoring and recovery parameters."""

    interval: str = "30s"
    max_retries: int = 3
    failure_threshold: int = 2
    retry_delay: str = "5s"
    kill_wait: str = "3s"
    health_path: str = "/health"
    logs_path: str = "/logs"
    log_lines: int = 40
    health_timeout: str = "10s"
    logs_timeout: str = "5s"

    @field_validator("interval", "retry_delay", "kill_wait", "health_timeout", "logs_timeout")
    @classmethod
    def validate_duration(cls, v: str) -> str:
        parse_duration(v)
        return v

    @field_validator("health_timeout", "logs_timeout")
    @classmethod
    def validate_timeout(cls, v: str) -> str:
        if parse_duration(v) <= 0:
            raise ValueError("HTTP timeouts must be positive")
        return v


class SessionConfig(BaseModel):
    """Remote shell session parameters."""

    connect_timeout: str = "10s"
    command_log_file: str = "command.log"
    max_log_entries: int = 1000

    @field_validator("connect_timeout")
    @classmethod
    def validate_duration(cls, v: str) -> str:
        parse_duration(v)
        return v


class WardenConfig(BaseModel):
    """Main Warden configuration."""

    projects: dict[str, DeploymentTarget] = {}
    artifact: ArtifactConfig = ArtifactConfig()
    process: ProcessConfig = ProcessConfig()
    monitor: MonitorConfig = MonitorConfig()
    session: SessionConfig = SessionConfig()


def parse_duration(duration_str: str) -> float:
    """Parse duration string to seconds. Supports: 250ms, 30s, 5m, 2h, 1d."""
    duration_str = duration_str.strip().lower()
    if not duration_str:
        raise ValueError("Empty duration string")

    if duration_str.endswith("ms"):
        unit, raw = "ms", duration_str[:-2]
    else:
        unit, raw = duration_str[-1], duration_str[:-1]

    multipliers = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}
    if unit not in multipliers:
        raise ValueError(f"Invalid duration unit: {unit}. Use ms, s, m, h, or d.")

    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"Invalid duration value: {raw}")

    return value * multipliers[unit]


def load_config(path: Path) -> WardenConfig:
    """Load configuration from YAML file."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return WardenConfig(**data)


def get_config_template() -> str:
    """Get the default configuration template."""
    return """# Warden Configuration

# Deployment targets, keyed by project id.
projects:
  demo:
    host: devbox.example.com
    port: 22
    username: devbox
    password: change-me
    # key_path: ~/.ssh/id_ed25519  # Used when no password is set
    public_url: https://demo.example.com  # Fronts the worker's HTTP API

artifact:
  local_path: bin/worker
  remote_path: /home/devbox/worker

process:
  port: 3051
  log_file: worker_server.log  # Written next to the remote executable
  startup_grace: 2s
  snapshot_delay: 500ms
  port_release_delay: 2s
  log_tail_lines: 20

monitor:
  interval: 30s
  max_retries: 3
  failure_threshold: 2  # Consecutive failed checks before recovery
  retry_delay: 5s
  kill_wait: 3s
  health_path: /health
  logs_path: /logs
  log_lines: 40
  health_timeout: 10s
  logs_timeout: 5s

session:
  connect_timeout: 10s
  command_log_file: command.log  # Relative to the session's working directory
  max_log_entries: 1000
"""
