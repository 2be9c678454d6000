"""
Logging setup for Retain.

Configures the ``retain`` logger hierarchy with a console handler and
size-rotated log files under the XDG state directory.
"""

import logging
import logging.handlers
import sys

from retain.config import settings

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _rotating_handler(filename: str, level: int) -> logging.Handler:
    log_dir = settings.log_directory
    log_dir.mkdir(parents=True, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        log_dir / filename,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(context: str = "cli") -> logging.Logger:
    """
    Configure logging for a Retain entry point.

    Args:
        context: Name of the entry point ("cli", "worker", "audit"); used as
            the log file stem, e.g. ``cli.log`` and ``cli.error.log``.

    Returns:
        The configured ``retain`` logger.

    Raises:
        PermissionError: If the log directory cannot be created.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger("retain")
    root.setLevel(level)
    # Idempotent: repeated CLI invocations in one process must not stack handlers
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if settings.log_console_enabled:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(level)
        console.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(console)

    if settings.log_file_enabled:
        root.addHandler(_rotating_handler(f"{context}.log", level))
        root.addHandler(_rotating_handler(f"{context}.error.log", logging.ERROR))

    root.propagate = False
    return root
