from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
CONSOLE_PREFIX = "[hostdeploy]"

logger = logging.getLogger("hostdeploy")


def log_file_name(started_at: datetime) -> str:
    return f"deploy_{started_at.strftime('%Y%m%d_%H%M%S')}.log"


def setup_file_logging(*, log_dir: Path, started_at: datetime | None = None) -> Path:
    """Attach an append-only file handler named after the run start time."""
    started_at = started_at or datetime.now()
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_dir / log_file_name(started_at)

    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return path


def close_file_logging() -> None:
    for handler in list(logger.handlers):
        if isinstance(handler, logging.FileHandler):
            logger.removeHandler(handler)
            handler.close()


class StepReporter:
    """Console + log file progress output for one run."""

    def __init__(self) -> None:
        self.step_number = 0

    def step(self, message: str, *, icon: str = "🚀") -> None:
        self.step_number += 1
        print(f"\033[95m{CONSOLE_PREFIX} {icon} Step {self.step_number}: {message}\033[0m")
        logger.info(message)

    def info(self, message: str, *, icon: str = "ℹ️") -> None:
        print(f"{CONSOLE_PREFIX} {icon} {message}")
        logger.info(message)

    def error(self, message: str) -> None:
        print(f"{CONSOLE_PREFIX} ❌ {message}", file=sys.stderr)
        logger.error("ERROR: %s", message)

    def detail(self, text: str) -> None:
        for line in text.splitlines():
            if not line.strip():
                continue
            print(f"{CONSOLE_PREFIX}   {line}", file=sys.stderr)
            logger.error("  %s", line)

    def remote_output(self, text: str) -> None:
        for line in text.splitlines():
            if not line.strip():
                continue
            print(f"{CONSOLE_PREFIX}   | {line}")
            logger.info("remote: %s", line)
