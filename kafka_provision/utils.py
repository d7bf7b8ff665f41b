"""Utility functions for the provisioning tool."""
import logging
import os

logger = logging.getLogger("kafka_provision")


def is_root() -> bool:
    """Check if the script is running as root."""
    return os.geteuid() == 0


def log_info(message: str) -> None:
    """Log an informational message."""
    print(f"[INFO] {message}")


def log_action(message: str) -> None:
    """Log an action being performed."""
    print(f"  -> {message}")


def log_debug(message: str) -> None:
    """Log a debug message, shown only with --verbose."""
    logger.debug(message)


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logging.basicConfig(format="[DEBUG] %(message)s", force=True)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
