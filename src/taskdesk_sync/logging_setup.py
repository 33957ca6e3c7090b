# src/taskdesk_sync/logging_setup.py

from __future__ import annotations

import logging
import sys
from pathlib import Path

# Minimum level a record needs to reach the console, by logger-name prefix.
# The most specific prefix wins; names matching nothing fall back to DEFAULT_CONSOLE_LEVEL.
CONSOLE_LEVELS: dict[str, int] = {
    "taskdesk_sync": logging.DEBUG,
    # Connection state changes and "reconnecting in Ns" are what the user watches for.
    "taskdesk_sync.realtime.connection": logging.INFO,
    "taskdesk_sync.realtime.availability": logging.INFO,
    "taskdesk_sync.realtime.indicator": logging.INFO,
    # Per-frame and per-replay chatter goes to the file only.
    "taskdesk_sync.realtime": logging.WARNING,
    "taskdesk_sync.storage": logging.WARNING,
    "taskdesk_sync.cache": logging.WARNING,
    "websockets": logging.ERROR,
    "httpx": logging.ERROR,
    "httpcore": logging.ERROR,
    "py.warnings": logging.ERROR,
}
DEFAULT_CONSOLE_LEVEL = logging.ERROR


def _matches(name: str, prefix: str) -> bool:
    return name == prefix or name.startswith(prefix + ".")


class _ConsoleNoiseFilter(logging.Filter):
    """Drop records below the console threshold for their logger (see CONSOLE_LEVELS)."""

    def __init__(self, levels: dict[str, int] | None = None, default: int = DEFAULT_CONSOLE_LEVEL) -> None:
        super().__init__()
        # longest prefix first so the most specific rule is found first
        self._rules = sorted((levels or CONSOLE_LEVELS).items(), key=lambda kv: len(kv[0]), reverse=True)
        self._default = default

    def threshold(self, name: str) -> int:
        for prefix, level in self._rules:
            if _matches(name, prefix):
                return level
        return self._default

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= self.threshold(record.name)


def setup_logging(
    *,
    log_dir: str | Path = ".local/taskdesk",
    log_name: str = "taskdesk",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> Path:
    """
    Console gets the filtered view (connection lifecycle, warnings, errors);
    `<log_dir>/<log_name>.log` gets everything at `file_level`.

    Call once at startup. Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{log_name}.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

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

    # Frame-level chatter from the transport libraries is useless even in the file log.
    logging.getLogger("websockets").setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return log_file
