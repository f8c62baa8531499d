"""Remote shell command construction.

Every path and argument is passed through ``shlex.quote``; integers (ports,
pids, line counts) are coerced with ``int`` before interpolation.
"""

import posixpath
import shlex

PWD = "pwd"

# Markers printed by probe commands
EXECUTABLE = "executable"
PRESENT = "present"
MISSING = "missing"
ALIVE = "running"
DEAD = "stopped"


def quote(value: str) -> str:
    return shlex.quote(value)


def is_directory_change(command: str) -> bool:
    """True for ``cd`` on its own or followed by arguments."""
    stripped = command.strip()
    return stripped == "cd" or stripped.startswith("cd ") or stripped.startswith("cd\t")


def change_directory(command: str) -> str:
    """Run a directory change and print the resulting directory."""
    return f"{command.strip()} && {PWD}"


def in_directory(command: str, cwd: str | None) -> str:
    """Prefix a command so it runs inside ``cwd``."""
    if not cwd:
        return command
    return f"cd {quote(cwd)} && {command}"


def file_state(path: str) -> str:
    """Print one of executable/present/missing for a remote file."""
    q = quote(path)
    return (
        f"if [ -f {q} ]; then "
        f"if [ -x {q} ]; then echo {EXECUTABLE}; else echo {PRESENT}; fi; "
        f"else echo {MISSING}; fi"
    )


def make_executable(path: str) -> str:
    return f"chmod +x {quote(path)}"


def write_stdin_to(path: str, append: bool = False) -> str:
    """Copy stdin into a file (content never touches the command line)."""
    redirect = ">>" if append else ">"
    return f"cat {redirect} {quote(path)}"


def read_file(path: str) -> str:
    return f"cat {quote(path)}"


def tail_file(path: str, lines: int) -> str:
    return f"tail -n {int(lines)} {quote(path)}"


def port_listeners(port: int) -> str:
    """Print the pids bound to a TCP port, one per line (nothing when free)."""
    return f"lsof -t -i :{int(port)} 2>/dev/null || true"


def signal_pids(pids: list[int], force: bool = False) -> str:
    signal = "-KILL" if force else "-TERM"
    targets = " ".join(str(int(pid)) for pid in pids)
    return f"kill {signal} {targets} 2>/dev/null || true"


def kill_matching(pattern: str) -> str:
    """Gracefully terminate every process whose command line matches.

    The first character is bracketed so the pattern cannot match the shell
    running this very command.
    """
    if pattern:
        pattern = f"[{pattern[0]}]{pattern[1:]}"
    return f"pkill -TERM -f {quote(pattern)} 2>/dev/null || true"


def terminate(pid: int) -> str:
    return f"kill {int(pid)}"


def process_alive(pid: int) -> str:
    return f"kill -0 {int(pid)} 2>/dev/null && echo {ALIVE} || echo {DEAD}"


def launch_detached(binary: str, log_file: str, args: list[str] | None = None) -> str:
    """Start ``binary`` in the background from its own directory and print its pid.

    The subshell keeps the directory change out of the caller's tracked cwd.
    """
    directory = posixpath.dirname(binary) or "."
    argv = " ".join(quote(arg) for arg in [binary, *(args or [])])
    # The group keeps `&` scoped to nohup so $! is the worker's pid, not a subshell's
    return (
        f"( cd {quote(directory)} && "
        f"{{ nohup {argv} > {quote(log_file)} 2>&1 < /dev/null & echo $!; }} )"
    )


def run_foreground(binary: str, args: list[str] | None = None) -> str:
    """Run ``binary`` from its own directory in a subshell and wait for it."""
    directory = posixpath.dirname(binary) or "."
    argv = " ".join(quote(arg) for arg in [binary, *(args or [])])
    return f"( cd {quote(directory)} && {argv} )"


def sibling_path(binary: str, name: str) -> str:
    """Resolve ``name`` next to ``binary`` unless it is already absolute."""
    if posixpath.isabs(name):
        return name
    return posixpath.join(posixpath.dirname(binary) or ".", name)


def parse_pids(output: str) -> list[int]:
    """Integers found one per line in command output."""
    pids = []
    for line in output.splitlines():
        line = line.strip()
        if line.isdigit():
            pids.append(int(line))
    return pids


def last_line(output: str) -> str | None:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    return lines[-1] if lines else None


def first_line(output: str) -> str | None:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    return lines[0] if lines else None
