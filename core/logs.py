from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from core.paths import LOG_DIR

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

_configured = False


def setup_logging(level: str = "INFO", log_dir: Path | None = None) -> Path:
    """Attach the process log file and stderr handlers to the root logger once."""
    global _configured
    log_dir = log_dir or LOG_DIR
    log_path = log_dir / "foundry_desk.log"
    if _configured:
        return log_path

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=3, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError as exc:
        print(f"log file unavailable: {exc}", file=sys.stderr)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    # a failing handler must never fail the caller
    logging.raiseExceptions = False
    _configured = True
    return log_path
