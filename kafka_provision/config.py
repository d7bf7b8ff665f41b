"""Configuration for the Kafka/ZooKeeper provisioning run."""
import os
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict

from dotenv import find_dotenv, load_dotenv

ZOOKEEPER_CLIENT_PORT = 2181
KAFKA_PORT = 9092
SCALA_VERSION = "2.13"

DEFAULT_ZOOKEEPER_VERSION = "3.7.0"
DEFAULT_KAFKA_VERSION = "2.8.0"

RESTART_ALWAYS = "always"
RESTART_ON_CHANGE = "on-change"
RESTART_POLICIES = (RESTART_ALWAYS, RESTART_ON_CHANGE)

# Main classes of the two JVMs, matched against full command lines
ZOOKEEPER_PROCESS_PATTERN = "org.apache.zookeeper.server.quorum.QuorumPeerMain"
KAFKA_PROCESS_PATTERN = r"kafka\.Kafka"

_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}

_dotenvs_loaded = False


def load_dotenvs() -> None:
    """
    Load environment variables from .env files.

    Loads variables from:
    - .env.common
    - .env.{ENV} (where ENV defaults to 'dev')

    Variables already present in the environment win.
    """
    global _dotenvs_loaded

    if _dotenvs_loaded:
        return

    load_dotenv(find_dotenv(".env.common", usecwd=True))
    load_dotenv(find_dotenv(f".env.{os.getenv('ENV', 'dev')}", usecwd=True))

    _dotenvs_loaded = True


@dataclass(frozen=True)
class InstallTarget:
    """A downloadable release unpacked under an install directory."""

    name: str
    version: str
    download_url: str
    install_dir: str
    dist_name: str

    @property
    def archive_path(self) -> str:
        return str(PurePosixPath("/tmp") / PurePosixPath(self.download_url).name)

    @property
    def home(self) -> str:
        return str(PurePosixPath(self.install_dir) / self.dist_name)


def zookeeper_target(version: str = DEFAULT_ZOOKEEPER_VERSION, download_url: str = "",
                     install_dir: str = "/opt/zookeeper") -> InstallTarget:
    url = download_url or (
        f"https://archive.apache.org/dist/zookeeper/zookeeper-{version}/"
        f"apache-zookeeper-{version}-bin.tar.gz"
    )
    return InstallTarget("zookeeper", version, url, install_dir, f"apache-zookeeper-{version}-bin")


def kafka_target(version: str = DEFAULT_KAFKA_VERSION, download_url: str = "",
                 install_dir: str = "/opt/kafka") -> InstallTarget:
    url = download_url or (
        f"https://archive.apache.org/dist/kafka/{version}/kafka_{SCALA_VERSION}-{version}.tgz"
    )
    return InstallTarget("kafka", version, url, install_dir, f"kafka_{SCALA_VERSION}-{version}")


@dataclass
class ProvisionConfig:
    """Everything a provisioning run needs, resolved up front."""

    zookeeper: InstallTarget = field(default_factory=zookeeper_target)
    kafka: InstallTarget = field(default_factory=kafka_target)
    host: str = "localhost"
    java_package: str = "openjdk-11-jdk"
    diagnostics_package: str = "net-tools"
    service_user: str = "ubuntu"
    service_group: str = "ubuntu"
    swap_file: str = "/swapfile"
    swap_size: str = "1G"
    fstab_path: str = "/etc/fstab"
    heap_max: str = "512M"
    heap_min: str = "256M"
    ready_delay: float = 30
    ready_timeout: float = 120
    ready_interval: float = 1
    restart_policy: str = RESTART_ALWAYS
    log_tail_lines: int = 50

    def __post_init__(self):
        if self.restart_policy not in RESTART_POLICIES:
            raise ValueError(
                f"Unknown restart policy {self.restart_policy!r}, "
                f"expected one of {', '.join(RESTART_POLICIES)}"
            )

    @property
    def zookeeper_config_path(self) -> str:
        return f"{self.zookeeper.home}/conf/zoo.cfg"

    @property
    def zookeeper_data_dir(self) -> str:
        return f"{self.zookeeper.home}/data"

    @property
    def zookeeper_start_script(self) -> str:
        return f"{self.zookeeper.home}/bin/zkServer.sh"

    @property
    def kafka_log_dir(self) -> str:
        return f"{self.kafka.home}/logs"

    @property
    def kafka_config_path(self) -> str:
        return f"{self.kafka.home}/config/server.properties"

    @property
    def kafka_start_script(self) -> str:
        return f"{self.kafka.home}/bin/kafka-server-start.sh"

    @property
    def swap_size_bytes(self) -> int:
        return parse_size(self.swap_size)

    @property
    def swap_fstab_line(self) -> str:
        return f"{self.swap_file} none swap sw 0 0"


def parse_size(size: str) -> int:
    """Convert a fallocate-style size such as ``1G`` or ``512M`` to bytes."""
    number, unit = size[:-1], size[-1:].upper()
    if unit.isdigit():
        number, unit = size, ""
    if unit not in _SIZE_UNITS or not number.isdigit():
        raise ValueError(f"Invalid size {size!r}")
    return int(number) * _SIZE_UNITS[unit]


def render_zookeeper_config(config: ProvisionConfig) -> str:
    """Render zoo.cfg for a standalone ZooKeeper."""
    return (
        "tickTime=2000\n"
        f"dataDir={config.zookeeper_data_dir}\n"
        f"clientPort={ZOOKEEPER_CLIENT_PORT}\n"
        "initLimit=5\n"
        "syncLimit=2\n"
    )


def render_broker_config(config: ProvisionConfig) -> str:
    """Render server.properties for a single broker."""
    return (
        "broker.id=0\n"
        f"log.dirs={config.kafka_log_dir}\n"
        f"zookeeper.connect={config.host}:{ZOOKEEPER_CLIENT_PORT}\n"
        f"listeners=PLAINTEXT://:{KAFKA_PORT}\n"
        "num.partitions=1\n"
    )


def broker_environment(config: ProvisionConfig) -> Dict[str, str]:
    """Environment overrides passed to kafka-server-start.sh."""
    return {"KAFKA_HEAP_OPTS": f"-Xmx{config.heap_max} -Xms{config.heap_min}"}
