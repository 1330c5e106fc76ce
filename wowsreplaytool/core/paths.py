from __future__ import annotations

import os
import sys
from pathlib import Path


APP_DIR_NAME = "WowsReplayTool"
DATA_DIR_ENV = "WOWSREPLAYTOOL_DATA_DIR"


def get_base_dir() -> Path:
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path.cwd()


def get_data_dir() -> Path:
    override = os.getenv(DATA_DIR_ENV)
    if override:
        data_dir = Path(override)
    elif os.name == "nt":
        data_dir = Path(os.getenv("APPDATA", get_base_dir())) / APP_DIR_NAME / "data"
    else:
        data_dir = Path(os.getenv("XDG_DATA_HOME", Path.home() / ".local" / "share")) / APP_DIR_NAME.lower()
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def looks_like_game_dir(path: Path) -> bool:
    # Every client install carries its build folders under bin/.
    return path.is_dir() and (path / "bin").is_dir()


def default_replays_dir(game_dir: Path) -> Path:
    return Path(game_dir) / "replays"
