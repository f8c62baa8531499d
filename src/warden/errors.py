"""Error taxonomy for Warden."""


class WardenError(Exception):
    """Base class for all Warden errors."""


class AuthenticationError(WardenError):
    """Credentials are incomplete or were rejected by the remote host."""


class RemoteConnectionError(WardenError):
    """Transport-level failure talking to the remote host."""


class CommandExecutionError(WardenError):
    """A remote command exited with a non-zero status."""

    def __init__(self, message: str, exit_code: int = -1, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class DeploymentError(WardenError):
    """Artifact missing locally, or upload/permission change failed remotely."""


class PortConflictError(WardenError):
    """The target port is still bound after trying to free it."""

    def __init__(self, port: int, holders: list[int] | None = None):
        self.port = port
        self.holders = holders or []
        detail = f" (held by pid {', '.join(map(str, self.holders))})" if self.holders else ""
        super().__init__(f"Port {port} is still in use and could not be freed{detail}")


class ProcessStartupError(WardenError):
    """The launched process exited immediately after start."""

    def __init__(self, message: str, log_tail: str = ""):
        super().__init__(message)
        self.log_tail = log_tail


class NotRunningError(WardenError):
    """No tracked process for the requested operation."""


class HealthCheckTimeout(WardenError):
    """The health endpoint did not answer within the timeout."""


class RecoveryExhausted(WardenError):
    """Every recovery attempt in a monitoring cycle failed."""

    def __init__(self, user_id: str, attempts: int):
        self.user_id = user_id
        self.attempts = attempts
        super().__init__(f"Recovery failed for user {user_id} after {attempts} attempt(s)")
