"""CLI interface for the provisioning tool."""
import sh
import typer

from . import config as cfg
from . import utils
from . import steps

# Read .env files before typer resolves envvar-backed options
cfg.load_dotenvs()


def setup(
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview changes without applying them"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
    host: str = typer.Option("localhost", envvar="PROVISION_HOST", help="Host the broker and ZooKeeper are reached on"),
    kafka_version: str = typer.Option(cfg.DEFAULT_KAFKA_VERSION, envvar="KAFKA_VERSION", help="Kafka release to install"),
    kafka_url: str = typer.Option("", envvar="KAFKA_URL", help="Override the Kafka download URL"),
    kafka_install_dir: str = typer.Option("/opt/kafka", envvar="KAFKA_INSTALL_DIR"),
    zookeeper_version: str = typer.Option(cfg.DEFAULT_ZOOKEEPER_VERSION, envvar="ZOOKEEPER_VERSION",
                                          help="ZooKeeper release to install"),
    zookeeper_url: str = typer.Option("", envvar="ZOOKEEPER_URL", help="Override the ZooKeeper download URL"),
    zookeeper_install_dir: str = typer.Option("/opt/zookeeper", envvar="ZOOKEEPER_INSTALL_DIR"),
    service_user: str = typer.Option("ubuntu", envvar="SERVICE_USER", help="Owner of the Kafka log directory"),
    service_group: str = typer.Option("ubuntu", envvar="SERVICE_GROUP", help="Group of the Kafka log directory"),
    restart_policy: str = typer.Option(
        cfg.RESTART_ALWAYS, envvar="RESTART_POLICY",
        help="Restart a running broker 'always' or only 'on-change' of its configuration",
    ),
    ready_delay: float = typer.Option(30, envvar="READY_DELAY", help="Seconds to wait before polling the broker port"),
    ready_timeout: float = typer.Option(120, envvar="READY_TIMEOUT", help="Seconds to poll the broker port"),
):
    """Install and start ZooKeeper and Kafka on this machine."""
    utils.setup_logging(verbose)

    if restart_policy not in cfg.RESTART_POLICIES:
        typer.echo(f"❗ Unknown restart policy '{restart_policy}', expected one of: {', '.join(cfg.RESTART_POLICIES)}")
        raise typer.Exit(2)

    # Check root if needed
    if not dry_run and not utils.is_root():
        typer.echo("❗ Provisioning requires root. Run with sudo or use --dry-run")
        raise typer.Exit(1)

    config = cfg.ProvisionConfig(
        zookeeper=cfg.zookeeper_target(zookeeper_version, zookeeper_url, zookeeper_install_dir),
        kafka=cfg.kafka_target(kafka_version, kafka_url, kafka_install_dir),
        host=host,
        service_user=service_user,
        service_group=service_group,
        restart_policy=restart_policy,
        ready_delay=ready_delay,
        ready_timeout=ready_timeout,
    )

    try:
        steps.provision_system(config, dry_run=dry_run)
    except (steps.ProvisionError, sh.ErrorReturnCode, sh.CommandNotFound, OSError) as e:
        typer.echo(f"❗ {e}")
        raise typer.Exit(1)
    typer.echo("✅ Provisioning complete!")


app = typer.Typer(
    name="kafka-provision",
    help="Provisioning tool for a single-node Kafka broker and ZooKeeper.",
    add_completion=False,
    invoke_without_command=True,
    callback=setup,
)


if __name__ == "__main__":
    app()
