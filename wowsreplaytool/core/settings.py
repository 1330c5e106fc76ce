from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

from .paths import get_data_dir
from .storage import load_json, save_json
from .tracker import PlayerTracker, SharedTracker


SETTINGS_FILENAME = "settings.json"

DEFAULTS: Dict[str, Any] = {
    "game_dir": "",
    "replays_dir": "",
    "auto_load_latest_replay": True,
    "check_for_updates": True,
    "tick_ms": 100,
    "retry_attempts": 3,
    "retry_delay_seconds": 1.0,
    "player_tracker": {},
}


def settings_path() -> Path:
    return get_data_dir() / SETTINGS_FILENAME


def load_settings(path: Path | None = None) -> Dict[str, Any]:
    raw = load_json(path or settings_path(), {})
    if not isinstance(raw, dict):
        raw = {}
    # Older files lack newer keys.
    settings = dict(DEFAULTS)
    settings.update(raw)
    return settings


def save_settings(settings: Dict[str, Any], path: Path | None = None) -> None:
    save_json(path or settings_path(), settings)


def load_tracker(settings: Dict[str, Any]) -> SharedTracker:
    return SharedTracker(PlayerTracker.from_dict(settings.get("player_tracker")))


def store_tracker(settings: Dict[str, Any], tracker: SharedTracker) -> None:
    settings["player_tracker"] = tracker.to_dict()
