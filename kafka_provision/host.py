"""Host capabilities used by the provisioning steps.

Every side effect a step has on the machine (files, packages, processes,
swap, sockets) goes through a ``HostEnvironment``. ``LinuxHost`` is the real
implementation, built on ``sh`` for external commands; tests substitute an
in-memory fake.
"""
import enum
import os
import signal
import shutil
import socket
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import sh

from kafka_provision.utils import log_debug


@dataclass(frozen=True)
class ProcessProbe:
    """Result of looking up running processes by command-line pattern."""

    pattern: str
    pids: List[int] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.pids)


@dataclass
class BrokerHandle:
    """A broker start request that has been issued but not yet confirmed."""

    command: str
    started_at: float
    process: Optional[Any] = None


class Readiness(enum.Enum):
    """Outcome of waiting for the broker port."""

    READY = "ready"
    TIMED_OUT = "timed_out"


class HostEnvironment(Protocol):
    """Everything a provisioning step may do to the machine."""

    def update_package_cache(self) -> None: ...
    def install_package(self, package: str) -> None: ...
    def exists(self, path: str) -> bool: ...
    def make_dirs(self, path: str, mode: Optional[int] = None) -> None: ...
    def write_file(self, path: str, content: str) -> bool: ...
    def read_file(self, path: str) -> str: ...
    def tail_file(self, path: str, lines: int) -> str: ...
    def ensure_line(self, path: str, line: str) -> bool: ...
    def chmod(self, path: str, mode: int) -> None: ...
    def chown(self, path: str, user: str, group: str) -> None: ...
    def download(self, url: str, dest: str) -> bool: ...
    def extract(self, archive: str, dest: str) -> None: ...
    def find_processes(self, pattern: str) -> ProcessProbe: ...
    def kill(self, pid: int) -> None: ...
    def run(self, command: str, *args: str) -> str: ...
    def run_background(self, command: str, *args: str, env: Optional[Dict[str, str]] = None) -> Any: ...
    def active_swaps(self) -> List[str]: ...
    def file_size(self, path: str) -> int: ...
    def allocate_file(self, path: str, size: str) -> None: ...
    def make_swap(self, path: str) -> None: ...
    def enable_swap(self, path: str) -> None: ...
    def port_open(self, host: str, port: int) -> bool: ...
    def memory_usage(self) -> str: ...
    def socket_table(self) -> str: ...
    def process_table(self) -> str: ...
    def sleep(self, seconds: float) -> None: ...
    def monotonic(self) -> float: ...


class LinuxHost:
    """HostEnvironment backed by the local Linux machine."""

    def _run(self, name: str, *args: Any, **kwargs: Any) -> Any:
        return sh.Command(name)(*args, **kwargs)

    # Packages

    def update_package_cache(self) -> None:
        self._run("apt-get", "update", "-q")

    def install_package(self, package: str) -> None:
        self._run("apt-get", "install", "-y", "-q", package,
                  _env={**os.environ, "DEBIAN_FRONTEND": "noninteractive"})

    # Files

    def exists(self, path: str) -> bool:
        return Path(path).exists()

    def make_dirs(self, path: str, mode: Optional[int] = None) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)
        if mode is not None:
            os.chmod(path, mode)

    def write_file(self, path: str, content: str) -> bool:
        """Overwrite ``path`` with ``content``; return True if it changed."""
        target = Path(path)
        if target.exists() and target.read_text() == content:
            return False
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        return True

    def read_file(self, path: str) -> str:
        return Path(path).read_text()

    def tail_file(self, path: str, lines: int) -> str:
        with open(path, "r", errors="replace") as f:
            return "".join(deque(f, maxlen=lines))

    def ensure_line(self, path: str, line: str) -> bool:
        """Append ``line`` to ``path`` unless an identical line exists."""
        target = Path(path)
        existing = target.read_text() if target.exists() else ""
        if line in existing.splitlines():
            return False
        with open(target, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write(line + "\n")
        return True

    def chmod(self, path: str, mode: int) -> None:
        os.chmod(path, mode)

    def chown(self, path: str, user: str, group: str) -> None:
        shutil.chown(path, user=user, group=group)

    def download(self, url: str, dest: str) -> bool:
        """Fetch ``url`` to ``dest`` unless it is already there."""
        if Path(dest).exists():
            return False
        partial = f"{dest}.part"
        try:
            self._run("curl", "-fsSL", "-o", partial, url)
            os.replace(partial, dest)
        finally:
            Path(partial).unlink(missing_ok=True)
        return True

    def extract(self, archive: str, dest: str) -> None:
        self._run("tar", "-xzf", archive, "-C", dest)

    # Processes

    def find_processes(self, pattern: str) -> ProcessProbe:
        try:
            output = str(self._run("pgrep", "-f", "-i", pattern))
        except sh.ErrorReturnCode_1:
            # pgrep exits 1 when nothing matches
            return ProcessProbe(pattern)
        except (sh.ErrorReturnCode, sh.CommandNotFound) as e:
            log_debug(f"Process probe for {pattern!r} failed: {e}")
            return ProcessProbe(pattern)
        pids = [int(token) for token in output.split() if token.isdigit()]
        return ProcessProbe(pattern, [pid for pid in pids if pid != os.getpid()])

    def kill(self, pid: int) -> None:
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            log_debug(f"Process {pid} already exited")

    def run(self, command: str, *args: str) -> str:
        return str(self._run(command, *args))

    def run_background(self, command: str, *args: str, env: Optional[Dict[str, str]] = None) -> Any:
        return self._run(command, *args, _env={**os.environ, **(env or {})}, _bg=True)

    # Swap

    def active_swaps(self) -> List[str]:
        output = str(self._run("swapon", "--show=NAME", "--noheadings"))
        return [line.strip() for line in output.splitlines() if line.strip()]

    def file_size(self, path: str) -> int:
        return os.stat(path).st_size

    def allocate_file(self, path: str, size: str) -> None:
        """Create ``path`` with exactly ``size`` bytes, replacing any old file."""
        Path(path).unlink(missing_ok=True)
        self._run("fallocate", "-l", size, path)

    def make_swap(self, path: str) -> None:
        self._run("mkswap", path)

    def enable_swap(self, path: str) -> None:
        self._run("swapon", path)

    # Network and diagnostics

    def port_open(self, host: str, port: int) -> bool:
        try:
            with socket.create_connection((host, port), timeout=1):
                return True
        except OSError:
            return False

    def memory_usage(self) -> str:
        return str(self._run("free", "-h"))

    def socket_table(self) -> str:
        return str(self._run("netstat", "-an"))

    def process_table(self) -> str:
        return str(self._run("ps", "aux"))

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def monotonic(self) -> float:
        return time.monotonic()
