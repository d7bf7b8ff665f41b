"""Shared fixtures: an in-memory stand-in for the host machine."""
import re

import pytest
import sh

from kafka_provision.config import KAFKA_PORT, ProvisionConfig, parse_size
from kafka_provision.host import ProcessProbe


class FakeHost:
    """Records what the steps do to a pretend machine."""

    def __init__(self):
        self.now = 0.0
        self.files = {}
        self.sizes = {}
        self.dirs = set()
        self.modes = {}
        self.owners = {}
        self.installed = []
        self.cache_updates = 0
        self.failing_packages = set()
        self.downloads = []
        self.extracted = []
        self.processes = {}
        self.next_pid = 1000
        self.killed = []
        self.commands = []
        self.background = []
        self.swaps = []
        self.formatted_swaps = set()
        self.open_ports = {}
        self.broker_boot_seconds = 40.0
        self.broker_boots = True

    # Helpers for arranging scenarios

    def spawn(self, cmdline, pid=None):
        if pid is None:
            pid = self.next_pid
            self.next_pid += 1
        self.processes[pid] = cmdline
        return pid

    def spawn_broker(self, pid=None):
        pid = self.spawn("java -Xmx1G kafka.Kafka /opt/kafka/config/server.properties", pid)
        self.open_ports[KAFKA_PORT] = self.now
        return pid

    # Packages

    def update_package_cache(self):
        self.cache_updates += 1

    def install_package(self, package):
        if package in self.failing_packages:
            raise sh.ErrorReturnCode_1("apt-get", b"", b"E: Unable to locate package")
        if package not in self.installed:
            self.installed.append(package)

    # Files

    def exists(self, path):
        return path in self.files or path in self.dirs

    def make_dirs(self, path, mode=None):
        self.dirs.add(path)
        if mode is not None:
            self.modes[path] = mode

    def write_file(self, path, content):
        changed = self.files.get(path) != content
        self.files[path] = content
        return changed

    def read_file(self, path):
        return self.files[path]

    def tail_file(self, path, lines):
        if path not in self.files:
            raise FileNotFoundError(path)
        return "\n".join(self.files[path].splitlines()[-lines:])

    def ensure_line(self, path, line):
        content = self.files.get(path, "")
        if line in content.splitlines():
            return False
        self.files[path] = content + line + "\n"
        return True

    def chmod(self, path, mode):
        self.modes[path] = mode

    def chown(self, path, user, group):
        self.owners[path] = (user, group)

    def download(self, url, dest):
        if dest in self.files:
            return False
        self.downloads.append(url)
        self.files[dest] = "archive"
        return True

    def extract(self, archive, dest):
        self.extracted.append((archive, dest))

    # Processes

    def find_processes(self, pattern):
        pids = [pid for pid, cmd in sorted(self.processes.items()) if re.search(pattern, cmd, re.I)]
        return ProcessProbe(pattern, pids)

    def kill(self, pid):
        cmd = self.processes.pop(pid, "")
        self.killed.append(pid)
        if "kafka.Kafka" in cmd:
            self.open_ports.pop(KAFKA_PORT, None)

    def run(self, command, *args):
        self.commands.append((command, args))
        if command.endswith("zkServer.sh") and args == ("start",):
            self.spawn("java org.apache.zookeeper.server.quorum.QuorumPeerMain conf/zoo.cfg")
        return ""

    def run_background(self, command, *args, env=None):
        self.background.append((command, args, dict(env or {})))
        if self.broker_boots:
            self.spawn(f"java kafka.Kafka {args[-1]}")
            self.open_ports[KAFKA_PORT] = self.now + self.broker_boot_seconds
        return object()

    # Swap

    def active_swaps(self):
        return list(self.swaps)

    def file_size(self, path):
        return self.sizes.get(path, len(self.files[path]))

    def allocate_file(self, path, size):
        self.files[path] = f"<{size}>"
        self.sizes[path] = parse_size(size)

    def make_swap(self, path):
        self.formatted_swaps.add(path)

    def enable_swap(self, path):
        if path not in self.formatted_swaps:
            raise sh.ErrorReturnCode_1("swapon", b"", b"swapon: read swap header failed")
        if path not in self.swaps:
            self.swaps.append(path)

    # Network and diagnostics

    def port_open(self, host, port):
        ready_at = self.open_ports.get(port)
        return ready_at is not None and self.now >= ready_at

    def memory_usage(self):
        return "Mem: 1.9Gi 1.2Gi 700Mi"

    def socket_table(self):
        lines = ["tcp 0 0 0.0.0.0:22 0.0.0.0:* LISTEN"]
        if self.port_open("localhost", KAFKA_PORT):
            lines.append(f"tcp6 0 0 :::{KAFKA_PORT} :::* LISTEN")
        return "\n".join(lines)

    def process_table(self):
        return "\n".join(f"root {pid} {cmd}" for pid, cmd in sorted(self.processes.items()))

    def sleep(self, seconds):
        self.now += seconds

    def monotonic(self):
        return self.now


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def config():
    return ProvisionConfig()
