"""
Logging setup for dbmanager.

Library modules only create loggers under the ``dbmanager`` namespace.
Handlers are attached here, by the CLI or by the embedding application.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

PACKAGE_LOGGER = "dbmanager"
OPS_LOG_FILENAME = "dbmanager-ops.log"


def _has_stderr_handler(logger: logging.Logger) -> bool:
    return any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
        for h in logger.handlers
    )


def enable_debug_mode() -> None:
    """Send DEBUG and above from every logger to stderr."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    if not _has_stderr_handler(root):
        stderr = logging.StreamHandler(sys.stderr)
        stderr.setLevel(logging.DEBUG)
        stderr.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S",
        ))
        root.addHandler(stderr)
    logging.getLogger(PACKAGE_LOGGER).setLevel(logging.DEBUG)


def configure_ops_log(store_path) -> logging.Handler:
    """
    Record INFO and above from dbmanager in ``{store_path}/dbmanager-ops.log``.

    The file rotates at 1 MB and keeps 3 backups. The handler is returned so
    the caller can detach and close it when the store is closed.
    """
    log_path = Path(store_path) / OPS_LOG_FILENAME
    log_path.parent.mkdir(parents=True, exist_ok=True)

    ops = RotatingFileHandler(log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
    ops.setLevel(logging.INFO)
    ops.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S",
    ))

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.addHandler(ops)
    if not package_logger.isEnabledFor(logging.INFO):
        package_logger.setLevel(logging.INFO)
    return ops
