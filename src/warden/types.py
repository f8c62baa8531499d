"""Core type definitions for Warden."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Generic, TypeVar

from pydantic import BaseModel

from warden.errors import WardenError

T = TypeVar("T")


class ProcessStatus(str, Enum):
    """Lifecycle states of a supervised remote process."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class Result(Generic[T]):
    """Outcome of a session or process operation.

    Exactly one of ``value`` (when ``ok``) or ``error`` (when not) is meaningful.
    """

    ok: bool
    value: T | None = None
    error: WardenError | None = None
    message: str = ""

    @classmethod
    def success(cls, value: T | None = None, message: str = "") -> "Result[T]":
        return cls(ok=True, value=value, message=message)

    @classmethod
    def failure(cls, error: WardenError, value: T | None = None) -> "Result[T]":
        return cls(ok=False, value=value, error=error, message=str(error))


class CommandLogEntry(BaseModel):
    """One executed remote command."""

    timestamp: datetime
    command: str
    stdout: str = ""
    stderr: str = ""
    success: bool

    def format_line(self) -> str:
        """Render the entry the way it is appended to the remote command log."""
        stamp = self.timestamp.isoformat()
        marker = "OK" if self.success else "FAIL"
        lines = [f"[{stamp}] {marker} CMD: {self.command}"]
        if self.stdout:
            lines.append(f"[{stamp}] STDOUT: {self.stdout.rstrip()}")
        if self.stderr:
            lines.append(f"[{stamp}] STDERR: {self.stderr.rstrip()}")
        return "\n".join(lines) + "\n"


class RemoteProcess(BaseModel):
    """The supervised worker process for one user."""

    user_id: str
    port: int
    status: ProcessStatus = ProcessStatus.STARTING
    start_time: datetime
    pid: int | None = None
    url: str | None = None
    last_error: str | None = None
    initial_output: str | None = None


@dataclass
class HealthCheckState:
    """Counters for a single monitoring loop."""

    check_count: int = 0
    consecutive_failures: int = 0


@dataclass
class HealthCheckResult:
    """Verdict of a single health probe."""

    healthy: bool
    message: str
    status_code: int | None = None
    logs: str | None = None
    error: WardenError | None = None

