"""Process-wide logging configuration for the CLI and long-running workers."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

_PACKAGE_PREFIX = "agent_foundry"


class _ConsoleNoiseFilter(logging.Filter):
    """
    Keep the console readable:
    - agent_foundry logs pass at the handler level
    - captured Python warnings and third-party loggers only at ERROR+
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name == _PACKAGE_PREFIX or record.name.startswith(f"{_PACKAGE_PREFIX}."):
            return True
        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_dir: str | Path = "./data/logs",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> Path:
    """
    Configure the root logger with a filtered stderr handler and a full file log.

    Safe to call more than once; existing root handlers are replaced.
    Returns the path of the log file.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agent_foundry.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(fmt)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
    file_handler.setLevel(file_level)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    logging.captureWarnings(True)
    return log_file
