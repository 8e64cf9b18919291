"""
Pegkeeper: Logging Setup

The engine logs from the host thread, from the two scheduler threads and
from the HTTP workers, so every record carries its thread name. Loggers
live under the ``pegkeeper`` namespace; ``LOG_LEVEL`` and ``LOG_FILE``
from :class:`~pegkeeper.core.config.PegkeeperConfig` decide the level and
the file handler target.

External dependencies:
- logging: Python standard library logging framework
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

import logging
import sys
from typing import Optional

from pegkeeper.core.config import PegkeeperConfig, get_config

# ============================================================================
# Public API
# ============================================================================


def setup_logging(config: Optional[PegkeeperConfig] = None) -> None:
    """Attach console and file handlers to the root logger once.

    A host that configured logging before importing pegkeeper keeps its
    own handlers; only the ``pegkeeper`` namespace level is left unset in
    that case.

    Args:
        config: Settings to read the level and log file from. Defaults to
            :func:`get_config`.
    """

    if config is None:
        config = get_config()

    root_logger = logging.getLogger()
    if root_logger.handlers:
        return

    log_level = getattr(logging, config.log_level.upper(), logging.INFO)

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    file_handler = logging.FileHandler(config.log_file)
    file_handler.setFormatter(formatter)

    root_logger.setLevel(log_level)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    logging.getLogger("pegkeeper").setLevel(log_level)


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``pegkeeper`` namespace.

    Names already under ``pegkeeper`` (every module's ``__name__``) are
    used unchanged; anything else is prefixed.
    """

    setup_logging()
    if name == "pegkeeper" or name.startswith("pegkeeper."):
        return logging.getLogger(name)
    return logging.getLogger(f"pegkeeper.{name}")
