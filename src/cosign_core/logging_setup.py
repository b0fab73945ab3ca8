# src/cosign_core/logging_setup.py

from __future__ import annotations

import logging
import sys
from pathlib import Path

# Per-call SQLite and per-push fan-out logs; useful in the file, noise on the console.
_CHATTY = ("cosign_core.notify.", "cosign_core.tasks.task_store", "uvicorn")


class _ConsoleNoiseFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith(_CHATTY):
            return record.levelno >= logging.WARNING
        if record.name.startswith("cosign_core."):
            return True
        # third-party loggers and py.warnings
        return record.levelno >= logging.ERROR


def setup_logging(*, log_dir: str | Path = ".local/cosign", console_level: int = logging.INFO) -> Path:
    """Filtered console on stderr plus everything in <log_dir>/cosign.log. Returns the log path."""
    log_file = Path(log_dir) / "cosign.log"
    log_file.parent.mkdir(parents=True, exist_ok=True)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.addFilter(_ConsoleNoiseFilter())

    full = logging.FileHandler(log_file, encoding="utf-8")
    full.setLevel(logging.DEBUG)

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s")
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG)
    for handler in (console, full):
        handler.setFormatter(fmt)
        root.addHandler(handler)

    logging.captureWarnings(True)
    return log_file
