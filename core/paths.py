"""Per-user directories for settings, chat history and logs."""

import os
from pathlib import Path
from typing import Mapping

APP_DIR_NAME = "FoundryDesk"


def desk_root(environ: Mapping[str, str] | None = None, os_name: str | None = None) -> Path:
    """
    FOUNDRY_DESK_ROOT wins; otherwise %APPDATA%/FoundryDesk on Windows and
    ~/FoundryDesk elsewhere.
    """
    environ = os.environ if environ is None else environ
    os_name = os.name if os_name is None else os_name
    override = environ.get("FOUNDRY_DESK_ROOT")
    if override:
        return Path(override).expanduser()
    if os_name == "nt":
        appdata = environ.get("APPDATA")
        base = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
        return base / APP_DIR_NAME
    return Path.home() / APP_DIR_NAME


def ensure_dirs(*dirs: Path) -> None:
    for directory in dirs:
        directory.mkdir(parents=True, exist_ok=True)


DESK_ROOT = desk_root()

CONFIG_DIR = DESK_ROOT / "config"
CONFIG_PATH = CONFIG_DIR / "appsettings.json"

DATA_DIR = DESK_ROOT / "data"
THREADS_DB_PATH = DATA_DIR / "threads.sqlite3"

LOG_DIR = DESK_ROOT / "logs"

ensure_dirs(CONFIG_DIR, DATA_DIR, LOG_DIR)
