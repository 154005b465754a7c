"""Platform-aware path resolution for Cursor's data directories."""

import os
import sys
from pathlib import Path

WORKSPACE_STORAGE_DIR = "workspaceStorage"
GLOBAL_STORAGE_DIR = "globalStorage"
STORE_FILENAME = "state.vscdb"
WORKSPACE_JSON = "workspace.json"

ITEM_TABLE = "ItemTable"
KV_TABLE = "cursorDiskKV"

COMPOSER_DATA_KEY = "composer.composerData"
COMPOSER_PREFIX = "composerData:"
BUBBLE_PREFIX = "bubbleId:"
APP_VERSION_KEY = "releaseNotes/lastVersion"

BACKUP_DIR_NAME = "cursor-history-backups"


def get_cursor_data_path() -> Path:
    """Return Cursor's ``User`` directory, the root of all chat data."""
    env = os.environ.get("CURSOR_HISTORY_DATA_PATH")
    if env:
        return Path(env).expanduser()

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Cursor" / "User"
    elif sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "Cursor" / "User"
    else:  # Linux
        return Path.home() / ".config" / "Cursor" / "User"


def get_workspace_storage_path(data_path: Path | None = None) -> Path:
    """Return the directory holding one sub-directory per workspace store."""
    return (data_path or get_cursor_data_path()) / WORKSPACE_STORAGE_DIR


def get_global_db_path(data_path: Path | None = None) -> Path:
    """Return the path to the global ``state.vscdb``."""
    return (data_path or get_cursor_data_path()) / GLOBAL_STORAGE_DIR / STORE_FILENAME


def get_default_backup_dir() -> Path:
    """Return the directory backups are written to and listed from by default."""
    env = os.environ.get("CURSOR_HISTORY_BACKUP_DIR")
    if env:
        return Path(env).expanduser()
    return Path.home() / BACKUP_DIR_NAME
