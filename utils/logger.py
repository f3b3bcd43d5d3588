"""Console + file logging for the CLI.

Library code under spotify_session/ logs through ``logging.getLogger(__name__)``;
the menus talk to the user through the ``log_*`` helpers below, which go to
the same handlers.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_DIR = "logs"
LOG_FILE = "spotify_session.log"

_CLI_LOGGER = "spotify_session.cli"

_configured = False


class ConsoleFormatter(logging.Formatter):
    """Bare messages for INFO, level-prefixed for everything else."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if record.levelno == logging.INFO:
            return message
        return f"[{record.levelname}] {message}"


def setup_logging(level: int = logging.INFO, log_dir: Optional[str] = LOG_DIR) -> logging.Logger:
    """Configure the root logger once: console handler plus a rotating file under ``log_dir``.

    Pass ``log_dir=None`` to skip the file handler.
    """
    global _configured

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    if _configured:
        return root_logger

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(ConsoleFormatter("%(message)s"))
    root_logger.addHandler(console)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, LOG_FILE),
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        )
        root_logger.addHandler(file_handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    _configured = True
    return root_logger


def log_info(message: str) -> None:
    logging.getLogger(_CLI_LOGGER).info(message)


def log_success(message: str) -> None:
    logging.getLogger(_CLI_LOGGER).info(f"✅ {message}")


def log_warning(message: str) -> None:
    logging.getLogger(_CLI_LOGGER).warning(message)


def log_error(message: str) -> None:
    logging.getLogger(_CLI_LOGGER).error(message)


def log_debug(message: str) -> None:
    logging.getLogger(_CLI_LOGGER).debug(message)
