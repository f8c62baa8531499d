"""Transport protocol for remote command execution."""

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from warden.config import Credentials


@dataclass
class CommandOutput:
    """Captured result of a remote command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def failed(self) -> bool:
        return self.exit_code != 0


class Transport(Protocol):
    """An open connection to one remote host."""

    @property
    def is_active(self) -> bool:
        """Whether the underlying connection is still usable."""
        ...

    async def run(
        self,
        command: str,
        cwd: str | None = None,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandOutput:
        """Run a shell command, optionally inside ``cwd`` and feeding ``stdin``.

        Raises RemoteConnectionError when the transport itself fails.
        """
        ...

    async def put_file(self, local_path: Path, remote_path: str) -> None:
        """Copy a local file to the remote host."""
        ...

    async def close(self) -> None:
        """Dispose the connection."""
        ...


class TransportFactory(Protocol):
    """Opens transports. Raises AuthenticationError or RemoteConnectionError."""

    async def __call__(self, credentials: Credentials, timeout: float) -> Transport: ...
