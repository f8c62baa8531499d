"""Shared fixtures: an in-memory remote host that understands Warden's shell commands."""

import asyncio
import posixpath
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

import httpx
import pytest

from warden.config import (
    ArtifactConfig,
    Credentials,
    DeploymentTarget,
    MonitorConfig,
    ProcessConfig,
    SessionConfig,
    WardenConfig,
)
from warden.errors import AuthenticationError, RemoteConnectionError
from warden.executor.base import CommandOutput
from warden.locks import UserLocks
from warden.sessions import SessionRegistry

HOME = "/home/devbox"
WORKER = f"{HOME}/worker"
WORKER_LOG = f"{HOME}/worker_server.log"


def split_and_list(command: str) -> list[str]:
    """Split on top-level `` && `` outside quotes, subshells and groups."""
    parts, current = [], []
    depth, quote, i = 0, None, 0
    while i < len(command):
        ch = command[i]
        if quote:
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch in "({":
            depth += 1
        elif ch in ")}":
            depth -= 1
        elif depth == 0 and command.startswith(" && ", i):
            parts.append("".join(current))
            current = []
            i += 4
            continue
        current.append(ch)
        i += 1
    parts.append("".join(current))
    return parts


@dataclass
class FakeProcess:
    pid: int
    command: str
    alive: bool = True
    ignores_term: bool = False
    ignores_kill: bool = False


@dataclass
class FakeRemote:
    """Filesystem, process table and port bindings of a simulated host."""

    home: str = HOME
    dirs: set[str] = field(default_factory=lambda: {"/", "/home", HOME, f"{HOME}/project", "/tmp"})
    files: dict[str, str] = field(default_factory=dict)
    executables: set[str] = field(default_factory=set)
    processes: dict[int, FakeProcess] = field(default_factory=dict)
    listeners: dict[int, list[int]] = field(default_factory=dict)
    next_pid: int = 4000

    # Worker behaviour on launch
    worker_port: int = 3051
    worker_output: str = "worker listening on :3051\n"
    crash_on_start: bool = False
    crash_output: str = "fatal: could not bind to port\n"
    foreground_output: str = "worker 1.0.0\n"

    # Failure injection
    reject_auth: bool = False
    unreachable: bool = False
    fail_uploads: bool = False
    drop_on: str | None = None  # Substring of a command that raises mid-command
    delay: float = 0  # Seconds each command takes, to expose interleaving
    responses: dict[str, CommandOutput] = field(default_factory=dict)

    # Observations
    commands: list[tuple[str, str | None, str | None]] = field(default_factory=list)
    puts: list[tuple[str, str]] = field(default_factory=list)
    connects: list[Credentials] = field(default_factory=list)
    transports: list["FakeTransport"] = field(default_factory=list)

    # Setup helpers

    def add_file(self, path: str, content: str = "", executable: bool = False) -> None:
        self.files[path] = content
        if executable:
            self.executables.add(path)

    def spawn(self, command: str, port: int | None = None, **kwargs) -> int:
        pid = self.next_pid
        self.next_pid += 1
        self.processes[pid] = FakeProcess(pid=pid, command=command, **kwargs)
        if port is not None:
            self.listeners.setdefault(port, []).append(pid)
        return pid

    def kill(self, pid: int) -> None:
        process = self.processes.get(pid)
        if process is not None:
            process.alive = False
        for pids in self.listeners.values():
            if pid in pids:
                pids.remove(pid)

    def drop_connections(self) -> None:
        for transport in self.transports:
            transport.active = False

    def alive(self, pid: int) -> bool:
        process = self.processes.get(pid)
        return process is not None and process.alive

    def port_holders(self, port: int) -> list[int]:
        return [pid for pid in self.listeners.get(port, []) if self.alive(pid)]

    def ran(self, fragment: str) -> list[str]:
        return [command for command, _, _ in self.commands if fragment in command]

    # Command interpreter

    def _resolve(self, path: str, cwd: str | None) -> str:
        if not path or path == "~":
            return self.home
        if path.startswith("~/"):
            path = posixpath.join(self.home, path[2:])
        return posixpath.normpath(posixpath.join(cwd or self.home, path))

    def run(self, command: str, cwd: str | None = None, stdin: str | None = None) -> CommandOutput:
        if command in self.responses:
            return self.responses[command]

        cwd = cwd or self.home
        if cwd not in self.dirs:
            return CommandOutput(1, "", f"cd: {cwd}: No such file or directory\n")

        if command.startswith(("cd", "(", "{")):
            return self._run_list(command, cwd, stdin)
        return self._run_simple(command, cwd, stdin)

    def _run_list(self, command: str, cwd: str, stdin: str | None) -> CommandOutput:
        """Run an ``&&`` list as sh does: stop at the first failure, ``cd`` carries forward."""
        stdout = ""
        for part in split_and_list(command):
            part = part.strip()
            if part.startswith("(") and part.endswith(")"):
                # Subshell: its directory changes do not leak into this list
                output = self._run_list(part[1:-1].strip(), cwd, stdin)
            elif part.startswith("{") and part.endswith("}"):
                output = self._run_simple(part[1:-1].strip().rstrip(";").strip(), cwd, stdin)
            elif part == "cd" or part.startswith(("cd ", "cd\t")):
                args = shlex.split(part)[1:]
                target = self._resolve(args[0] if args else "", cwd)
                if target not in self.dirs:
                    return CommandOutput(1, stdout, f"bash: cd: {args[0]}: No such file or directory\n")
                cwd = target
                continue
            else:
                output = self._run_simple(part, cwd, stdin)

            stdout += output.stdout
            if output.failed:
                return CommandOutput(output.exit_code, stdout, output.stderr)
        return CommandOutput(0, stdout)

    def _run_simple(self, command: str, cwd: str, stdin: str | None) -> CommandOutput:
        if command == "pwd":
            return CommandOutput(0, f"{cwd}\n")

        if "nohup" in command:
            return self._launch(command, cwd)

        tokens = shlex.split(command)

        if command.startswith("if [ -f "):
            path = self._resolve(tokens[3], cwd)
            if path not in self.files:
                return CommandOutput(0, "missing\n")
            return CommandOutput(0, "executable\n" if path in self.executables else "present\n")

        if tokens[:2] == ["chmod", "+x"]:
            path = self._resolve(tokens[2], cwd)
            if path not in self.files:
                return CommandOutput(1, "", f"chmod: cannot access '{tokens[2]}': No such file or directory\n")
            self.executables.add(path)
            return CommandOutput(0)

        if tokens[0] == "cat" and len(tokens) == 3 and tokens[1] in (">", ">>"):
            path = self._resolve(tokens[2], cwd)
            if posixpath.dirname(path) not in self.dirs:
                return CommandOutput(1, "", f"cat: {tokens[2]}: No such file or directory\n")
            previous = self.files.get(path, "") if tokens[1] == ">>" else ""
            self.files[path] = previous + (stdin or "")
            return CommandOutput(0)

        if tokens[0] == "cat" and len(tokens) == 2:
            path = self._resolve(tokens[1], cwd)
            if path not in self.files:
                return CommandOutput(1, "", f"cat: {tokens[1]}: No such file or directory\n")
            return CommandOutput(0, self.files[path])

        if tokens[0] == "tail":
            lines, path = int(tokens[2]), self._resolve(tokens[3], cwd)
            if path not in self.files:
                return CommandOutput(1, "", f"tail: cannot open '{tokens[3]}' for reading\n")
            content = self.files[path].splitlines(keepends=True)
            return CommandOutput(0, "".join(content[-lines:]))

        if tokens[0] == "lsof":
            port = int(tokens[3].lstrip(":"))
            return CommandOutput(0, "".join(f"{pid}\n" for pid in self.port_holders(port)))

        if tokens[0] == "kill" and tokens[1] in ("-TERM", "-KILL"):
            force = tokens[1] == "-KILL"
            for token in tokens[2:]:
                if not token.isdigit():
                    break
                process = self.processes.get(int(token))
                if process is None or not process.alive:
                    continue
                if (force and not process.ignores_kill) or (not force and not process.ignores_term):
                    self.kill(process.pid)
            return CommandOutput(0)

        if tokens[0] == "kill" and tokens[1] == "-0":
            return CommandOutput(0, "running\n" if self.alive(int(tokens[2])) else "stopped\n")

        if tokens[0] == "kill":
            pid = int(tokens[1])
            process = self.processes.get(pid)
            if process is None or not process.alive:
                return CommandOutput(1, "", f"bash: kill: ({pid}) - No such process\n")
            if not process.ignores_term:
                self.kill(pid)
            return CommandOutput(0)

        if tokens[0] == "pkill":
            pattern = tokens[3]
            for process in list(self.processes.values()):
                if process.alive and re.search(pattern, process.command) and not process.ignores_term:
                    self.kill(process.pid)
            return CommandOutput(0)

        if tokens[0] == "echo":
            return CommandOutput(0, " ".join(tokens[1:]) + "\n")

        if tokens[0] == "ls":
            prefix = cwd.rstrip("/") + "/"
            names = sorted(
                path[len(prefix):]
                for path in [*self.files, *self.dirs]
                if path.startswith(prefix) and "/" not in path[len(prefix):]
            )
            return CommandOutput(0, "".join(f"{name}\n" for name in names))

        if tokens[0] == "false":
            return CommandOutput(1)

        path = self._resolve(tokens[0], cwd)
        if path in self.executables:
            return CommandOutput(0, self.foreground_output)

        return CommandOutput(127, "", f"bash: {tokens[0]}: command not found\n")

    def _launch(self, command: str, cwd: str) -> CommandOutput:
        tokens = shlex.split(command)
        start = tokens.index("nohup")
        binary = self._resolve(tokens[start + 1], cwd)
        log_file = self._resolve(tokens[tokens.index(">") + 1], cwd)
        if binary not in self.executables:
            self.files[log_file] = f"nohup: failed to run command '{binary}': Permission denied\n"
            return CommandOutput(0, f"{self.spawn(binary, alive=False)}\n")

        if self.crash_on_start:
            self.files[log_file] = self.crash_output
            return CommandOutput(0, f"{self.spawn(binary, alive=False)}\n")

        self.files[log_file] = self.worker_output
        return CommandOutput(0, f"{self.spawn(binary, port=self.worker_port)}\n")


class FakeTransport:
    """Transport bound to a ``FakeRemote``."""

    def __init__(self, remote: FakeRemote):
        self.remote = remote
        self.active = True
        self.closed = False

    @property
    def is_active(self) -> bool:
        return self.active and not self.closed

    async def run(
        self,
        command: str,
        cwd: str | None = None,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandOutput:
        if not self.is_active:
            raise RemoteConnectionError("SSH session not active")
        if self.remote.delay:
            await asyncio.sleep(self.remote.delay)
        self.remote.commands.append((command, cwd, stdin))
        if self.remote.drop_on and self.remote.drop_on in command:
            self.remote.drop_on = None
            self.active = False
            raise RemoteConnectionError("Socket is closed")
        return self.remote.run(command, cwd, stdin)

    async def put_file(self, local_path: Path, remote_path: str) -> None:
        if not self.is_active:
            raise RemoteConnectionError("SSH session not active")
        if self.remote.fail_uploads:
            raise RemoteConnectionError("SFTP transfer failed")
        self.remote.puts.append((str(local_path), remote_path))
        self.remote.add_file(remote_path, Path(local_path).read_text())

    async def close(self) -> None:
        self.closed = True


class FakeTransportFactory:
    """Opens ``FakeTransport`` instances, honoring the remote's failure switches."""

    def __init__(self, remote: FakeRemote):
        self.remote = remote

    async def __call__(self, credentials: Credentials, timeout: float) -> FakeTransport:
        self.remote.connects.append(credentials)
        if self.remote.reject_auth:
            raise AuthenticationError(f"Authentication failed for {credentials.describe()}")
        if self.remote.unreachable:
            raise RemoteConnectionError(f"Could not connect to {credentials.host}: Connection refused")
        transport = FakeTransport(self.remote)
        self.remote.transports.append(transport)
        return transport


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def transport_factory(remote):
    return FakeTransportFactory(remote)


@pytest.fixture
def credentials():
    return Credentials(host="devbox.example.com", username="devbox", password="secret")


@pytest.fixture
def artifact(tmp_path):
    """A local worker executable to deploy."""
    path = tmp_path / "bin" / "worker"
    path.parent.mkdir()
    path.write_text("#!/bin/sh\necho worker\n")
    return path


@pytest.fixture
def config(artifact):
    """Config with every delay collapsed so tests run instantly."""
    return WardenConfig(
        projects={
            "demo": DeploymentTarget(
                host="devbox.example.com",
                username="devbox",
                password="secret",
                public_url="https://demo.example.com",
            ),
            "headless": DeploymentTarget(host="devbox.example.com", username="devbox", password="secret"),
        },
        artifact=ArtifactConfig(local_path=str(artifact), remote_path=WORKER),
        process=ProcessConfig(startup_grace="0s", snapshot_delay="0s", port_release_delay="0s"),
        monitor=MonitorConfig(interval="10ms", retry_delay="0s", kill_wait="0s"),
        session=SessionConfig(),
    )


@pytest.fixture
def sessions(config, transport_factory):
    return SessionRegistry(config.session, UserLocks(), transport_factory)


def mock_client(handler) -> httpx.AsyncClient:
    """An AsyncClient whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
