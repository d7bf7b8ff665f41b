"""Provisioning workflow steps."""
import platform
from dataclasses import dataclass
from typing import Dict, Optional

import sh

from kafka_provision.config import (
    KAFKA_PORT,
    KAFKA_PROCESS_PATTERN,
    RESTART_ALWAYS,
    ZOOKEEPER_PROCESS_PATTERN,
    InstallTarget,
    ProvisionConfig,
    broker_environment,
    render_broker_config,
    render_zookeeper_config,
)
from kafka_provision.host import BrokerHandle, HostEnvironment, LinuxHost, Readiness
from kafka_provision.utils import log_action, log_debug, log_info

# Errors from advisory commands that are reported but never abort a run
SUPPRESSED_ERRORS = (sh.ErrorReturnCode, sh.CommandNotFound, OSError)


class ProvisionError(RuntimeError):
    """A provisioning step failed in a way that fails the whole run."""


@dataclass
class Diagnostics:
    """Observations gathered after the broker came up."""

    log_tail: str
    port_status: str
    process_table: str


def ensure_runtime(host: HostEnvironment, config: ProvisionConfig, dry_run: bool = False) -> None:
    """Install the Java runtime. Any failure here aborts the run."""
    if dry_run:
        log_action(f"[DRY RUN] Would update the package cache and install {config.java_package}")
        return

    log_action("Updating package cache...")
    host.update_package_cache()
    log_action(f"Installing {config.java_package}...")
    host.install_package(config.java_package)


def ensure_diagnostic_tools(host: HostEnvironment, config: ProvisionConfig, dry_run: bool = False) -> None:
    """Install the package providing netstat."""
    if dry_run:
        log_action(f"[DRY RUN] Would install {config.diagnostics_package}")
        return

    log_action(f"Installing {config.diagnostics_package}...")
    host.install_package(config.diagnostics_package)


def install_release(host: HostEnvironment, target: InstallTarget, dry_run: bool = False) -> None:
    """Create the install directory, download the release and unpack it."""
    if dry_run:
        log_action(f"[DRY RUN] Would download {target.download_url} and extract it to {target.install_dir}")
        return

    host.make_dirs(target.install_dir)
    if host.download(target.download_url, target.archive_path):
        log_action(f"Downloaded {target.name} {target.version} to {target.archive_path}")
    else:
        log_info(f"{target.archive_path} already downloaded.")
    log_action(f"Extracting {target.archive_path} into {target.install_dir}...")
    host.extract(target.archive_path, target.install_dir)


def provision_zookeeper(host: HostEnvironment, config: ProvisionConfig, dry_run: bool = False) -> None:
    """Install ZooKeeper and write its configuration."""
    log_info(f"Provisioning ZooKeeper {config.zookeeper.version}...")
    install_release(host, config.zookeeper, dry_run=dry_run)

    if dry_run:
        log_action(f"[DRY RUN] Would write {config.zookeeper_config_path}")
        return

    host.make_dirs(f"{config.zookeeper.home}/conf")
    host.write_file(config.zookeeper_config_path, render_zookeeper_config(config))
    log_action(f"Wrote {config.zookeeper_config_path}")


def start_zookeeper(host: HostEnvironment, config: ProvisionConfig, dry_run: bool = False) -> None:
    """Start ZooKeeper unless an instance is already running."""
    probe = host.find_processes(ZOOKEEPER_PROCESS_PATTERN)
    if probe.found:
        log_info(f"ZooKeeper is already running (pid {', '.join(map(str, probe.pids))}).")
        return

    if dry_run:
        log_action("[DRY RUN] Would start ZooKeeper")
        return

    log_action("Starting ZooKeeper...")
    try:
        host.run(config.zookeeper_start_script, "start")
    except SUPPRESSED_ERRORS as e:
        log_action(f"Failed to start ZooKeeper: {e}")


def provision_broker(host: HostEnvironment, config: ProvisionConfig, dry_run: bool = False) -> bool:
    """Install Kafka and write its configuration.

    Returns True when server.properties was created or its content changed.
    """
    log_info(f"Provisioning Kafka {config.kafka.version}...")
    install_release(host, config.kafka, dry_run=dry_run)

    if dry_run:
        log_action(f"[DRY RUN] Would create {config.kafka_log_dir} and write {config.kafka_config_path}")
        return False

    host.make_dirs(config.kafka_log_dir, mode=0o755)
    changed = host.write_file(config.kafka_config_path, render_broker_config(config))
    if changed:
        log_action(f"Wrote {config.kafka_config_path}")
    else:
        log_info(f"{config.kafka_config_path} is up to date.")
    return changed


def reconcile_broker(host: HostEnvironment, config: ProvisionConfig, config_changed: bool = True,
                     dry_run: bool = False) -> bool:
    """Stop a running broker so the new configuration takes effect.

    Returns True when a broker has to be started afterwards.
    """
    probe = host.find_processes(KAFKA_PROCESS_PATTERN)
    if not probe.found:
        return True

    if config.restart_policy != RESTART_ALWAYS and not config_changed:
        log_info("Kafka is already running with the current configuration.")
        return False

    if dry_run:
        log_action(f"[DRY RUN] Would kill running Kafka (pid {', '.join(map(str, probe.pids))})")
        return True

    for pid in probe.pids:
        log_action(f"Killing running Kafka process {pid}...")
        host.kill(pid)
    return True


def fix_log_permissions(host: HostEnvironment, config: ProvisionConfig, dry_run: bool = False) -> None:
    """Hand the Kafka log directory to the service user."""
    if dry_run:
        log_action(f"[DRY RUN] Would set {config.service_user}:{config.service_group} 0755 on {config.kafka_log_dir}")
        return

    host.chown(config.kafka_log_dir, config.service_user, config.service_group)
    host.chmod(config.kafka_log_dir, 0o755)


def report_memory(host: HostEnvironment) -> Optional[str]:
    """Print the current memory usage."""
    try:
        usage = host.memory_usage()
    except SUPPRESSED_ERRORS as e:
        log_debug(f"Memory check failed: {e}")
        return None
    log_info(f"Memory usage:\n{usage}")
    return usage


def ensure_swap(host: HostEnvironment, config: ProvisionConfig, dry_run: bool = False) -> None:
    """Make sure some swap is active, creating the swap file if needed."""
    swaps = host.active_swaps()
    if config.swap_file in swaps:
        log_info(f"Swap file {config.swap_file} is already active.")
        if not dry_run and host.ensure_line(config.fstab_path, config.swap_fstab_line):
            log_action(f"Added {config.swap_file} to {config.fstab_path}")
        return

    if swaps:
        log_info(f"Swap is already enabled ({', '.join(swaps)}).")
        return

    if dry_run:
        log_action(f"[DRY RUN] Would create and enable a {config.swap_size} swap file at {config.swap_file}")
        return

    if host.exists(config.swap_file) and host.file_size(config.swap_file) == config.swap_size_bytes:
        log_info(f"Reusing existing {config.swap_file}.")
    else:
        log_action(f"Allocating {config.swap_size} swap file at {config.swap_file}...")
        host.allocate_file(config.swap_file, config.swap_size)
    host.chmod(config.swap_file, 0o600)
    log_action("Enabling swap...")
    host.make_swap(config.swap_file)
    host.enable_swap(config.swap_file)
    if host.ensure_line(config.fstab_path, config.swap_fstab_line):
        log_action(f"Added {config.swap_file} to {config.fstab_path}")


def apply_memory_tuning(config: ProvisionConfig) -> Dict[str, str]:
    """Environment carrying the broker heap bounds."""
    env = broker_environment(config)
    log_debug(f"Broker environment: {env}")
    return env


def start_broker(host: HostEnvironment, config: ProvisionConfig, env: Dict[str, str],
                 dry_run: bool = False) -> Optional[BrokerHandle]:
    """Launch the broker in the background without waiting for it."""
    command = f"{config.kafka_start_script} -daemon {config.kafka_config_path}"
    if dry_run:
        log_action(f"[DRY RUN] Would run {command}")
        return None

    log_action("Starting Kafka in the background...")
    handle = BrokerHandle(command=command, started_at=host.monotonic())
    try:
        handle.process = host.run_background(
            config.kafka_start_script, "-daemon", config.kafka_config_path, env=env
        )
    except SUPPRESSED_ERRORS as e:
        log_action(f"Failed to launch Kafka: {e}")
    return handle


def await_broker_ready(host: HostEnvironment, config: ProvisionConfig, handle: Optional[BrokerHandle] = None,
                       initial_delay: Optional[float] = None, timeout: Optional[float] = None) -> Readiness:
    """Wait for the broker port to accept connections.

    Sleeps ``initial_delay`` seconds, then polls until the port opens or
    ``timeout`` seconds have passed.
    """
    initial_delay = config.ready_delay if initial_delay is None else initial_delay
    timeout = config.ready_timeout if timeout is None else timeout

    log_action(f"Waiting for Kafka on {config.host}:{KAFKA_PORT}...")
    if handle is not None:
        log_debug(f"Waiting on: {handle.command}")
    host.sleep(initial_delay)

    deadline = host.monotonic() + timeout
    while True:
        if host.port_open(config.host, KAFKA_PORT):
            log_info(f"Kafka is listening on port {KAFKA_PORT}.")
            return Readiness.READY
        if host.monotonic() >= deadline:
            return Readiness.TIMED_OUT
        host.sleep(config.ready_interval)


def _filter_lines(text: str, needle: str) -> str:
    return "\n".join(line for line in text.splitlines() if needle in line)


def collect_diagnostics(host: HostEnvironment, config: ProvisionConfig) -> Diagnostics:
    """Gather the broker log tail, port binding and process listing."""
    log_path = f"{config.kafka_log_dir}/server.log"

    try:
        log_tail = host.tail_file(log_path, config.log_tail_lines)
    except SUPPRESSED_ERRORS as e:
        log_debug(f"Could not read {log_path}: {e}")
        log_tail = ""

    try:
        port_status = _filter_lines(host.socket_table(), f":{KAFKA_PORT}")
    except SUPPRESSED_ERRORS as e:
        log_debug(f"Could not list sockets: {e}")
        port_status = ""

    try:
        process_table = _filter_lines(host.process_table(), "kafka")
    except SUPPRESSED_ERRORS as e:
        log_debug(f"Could not list processes: {e}")
        process_table = ""

    log_info(f"Last {config.log_tail_lines} lines of {log_path}:\n{log_tail}")
    log_info(f"Port {KAFKA_PORT} binding:\n{port_status}")
    log_info(f"Kafka processes:\n{process_table}")
    return Diagnostics(log_tail=log_tail, port_status=port_status, process_table=process_table)


def provision_system(config: Optional[ProvisionConfig] = None, dry_run: bool = False,
                     host: Optional[HostEnvironment] = None) -> Optional[Diagnostics]:
    """Main provisioning workflow."""
    current_platform = platform.system()

    if current_platform != 'Linux':
        raise NotImplementedError(f"Platform {current_platform} is not supported")

    config = config or ProvisionConfig()
    host = host or LinuxHost()

    # Phase 1: Runtime and tools
    ensure_runtime(host, config, dry_run=dry_run)
    ensure_diagnostic_tools(host, config, dry_run=dry_run)

    # Phase 2: ZooKeeper
    provision_zookeeper(host, config, dry_run=dry_run)
    start_zookeeper(host, config, dry_run=dry_run)

    # Phase 3: Kafka
    config_changed = provision_broker(host, config, dry_run=dry_run)
    needs_start = reconcile_broker(host, config, config_changed=config_changed, dry_run=dry_run)
    fix_log_permissions(host, config, dry_run=dry_run)

    # Phase 4: Memory
    report_memory(host)
    ensure_swap(host, config, dry_run=dry_run)
    env = apply_memory_tuning(config)

    # Phase 5: Start and verify
    handle = None
    if needs_start:
        handle = start_broker(host, config, env, dry_run=dry_run)
    if dry_run:
        log_action("[DRY RUN] Would wait for Kafka and collect diagnostics")
        return None

    # Nothing was started, so poll right away
    initial_delay = None if handle is not None else 0
    if await_broker_ready(host, config, handle, initial_delay=initial_delay) is Readiness.TIMED_OUT:
        raise ProvisionError(
            f"Kafka did not open {config.host}:{KAFKA_PORT} within {config.ready_timeout:g}s"
        )

    return collect_diagnostics(host, config)
