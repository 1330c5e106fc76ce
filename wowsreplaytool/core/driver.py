from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from watchdog.observers import Observer

from . import tasks
from .background import BackgroundParser
from .ingest import IngestionLoop, OpenReplays, RetryPolicy
from .replays import Replay, WowsMetadataDecoder
from .settings import load_tracker, store_tracker
from .tasks import (
    CancellationToken,
    DataLoaded,
    ReplayLoaded,
    TaskResult,
    TaskSlot,
    TrackerPopulated,
    UpdateDownloaded,
)
from .tracker import SharedTracker
from .watcher import ReplayDirWatcher


logger = logging.getLogger(__name__)

NOTIFICATION_SECONDS = 10.0


@dataclass
class Notification:
    message: str
    is_error: bool = False
    expires_at: float = field(default_factory=lambda: time.monotonic() + NOTIFICATION_SECONDS)

    @property
    def expired(self) -> bool:
        # Errors stay until dismissed.
        return not self.is_error and time.monotonic() > self.expires_at


class Driver:
    """One tick of this object is one frame of the application.

    It owns the task slot, the watcher and the ingestion loop, and applies
    task completions on the calling thread. Nothing in ``tick`` blocks.
    """

    def __init__(
        self,
        settings: Dict[str, Any],
        decoder: Any = None,
        tracker: Optional[SharedTracker] = None,
        observer_factory: Optional[Callable[[], Any]] = None,
        background: bool = True,
    ) -> None:
        self.settings = settings
        self.decoder = decoder or WowsMetadataDecoder()
        self.tracker = tracker or load_tracker(settings)
        self.retry = RetryPolicy(
            attempts=int(settings.get("retry_attempts", 3)),
            delay=float(settings.get("retry_delay_seconds", 1.0)),
        )
        self.slot = TaskSlot()
        self.replays = OpenReplays()
        self.background = (
            BackgroundParser(self.decoder, self.tracker, retry=self.retry) if background else None
        )
        self.watcher = ReplayDirWatcher(self.background, observer_factory=observer_factory or Observer)
        self.ingest = IngestionLoop(
            self.watcher.events,
            self.decoder,
            self.decoder,
            self.tracker,
            self.replays,
            self.slot,
            retry=self.retry,
            auto_load_latest=bool(settings.get("auto_load_latest_replay", True)),
        )
        self.current_replay: Optional[Replay] = None
        self.notification: Optional[Notification] = None
        self.populate_token: Optional[CancellationToken] = None
        self.on_update_downloaded: Optional[Callable[[Path], None]] = None

    @property
    def auto_load_latest(self) -> bool:
        return self.ingest.auto_load_latest

    @auto_load_latest.setter
    def auto_load_latest(self, value: bool) -> None:
        self.ingest.auto_load_latest = value
        self.settings["auto_load_latest_replay"] = value

    def load_game_data(self, game_dir: Optional[Path] = None) -> None:
        game_dir = game_dir or self.settings.get("game_dir")
        if not game_dir:
            raise ValueError("no game directory configured")
        replays_dir = self.settings.get("replays_dir") or None
        self.slot.start(tasks.load_game_data(Path(game_dir), self.decoder, replays_dir))

    def populate_tracker(self) -> CancellationToken:
        paths = self.replays.paths()
        if not paths:
            raise ValueError("no replays loaded")
        self.populate_token = CancellationToken()
        self.slot.start(tasks.populate_tracker(paths, self.decoder, self.tracker, self.populate_token))
        return self.populate_token

    def cancel_populate(self) -> None:
        if self.populate_token is not None:
            self.populate_token.cancel()

    def download_update(self, url: str, dest_dir: Path, session: Any = None) -> None:
        self.slot.start(tasks.download_update(url, dest_dir, session=session))

    def notify(self, message: str, is_error: bool = False) -> None:
        self.notification = Notification(message, is_error)

    def dismiss_notification(self) -> None:
        self.notification = None

    def tick(self) -> Optional[TaskResult]:
        result = self.slot.tick()
        if result is not None:
            self.slot.take()
            self._apply(result)
        self.ingest.tick()
        if self.notification is not None and self.notification.expired:
            self.notification = None
        return result

    def _apply(self, result: TaskResult) -> None:
        status, payload = result
        if status == "error":
            logger.error("%s", payload)
            self.notify(str(payload), is_error=True)
            return
        if isinstance(payload, DataLoaded):
            self.replays.replace_all(payload.replays)
            self.settings["game_dir"] = str(payload.game_dir)
            self.settings["replays_dir"] = str(payload.replays_dir)
            self.watcher.watch(payload.replays_dir)
            self.notify(f"Successfully loaded game data ({len(payload.replays)} replays)")
        elif isinstance(payload, ReplayLoaded):
            self.current_replay = payload.replay
            self.notify(f"Successfully loaded replay {payload.replay.path.name}")
        elif isinstance(payload, TrackerPopulated):
            self.populate_token = None
            suffix = " (cancelled)" if payload.cancelled else ""
            self.notify(f"Tracker updated from replays: {payload.merged} encounters{suffix}")
        elif isinstance(payload, UpdateDownloaded):
            self.notify(f"Update downloaded to {payload.path}")
            if self.on_update_downloaded is not None:
                self.on_update_downloaded(payload.path)

    def save(self) -> None:
        store_tracker(self.settings, self.tracker)

    def shutdown(self) -> None:
        self.cancel_populate()
        self.watcher.stop()
        self.save()


def run_headless(driver: Driver, tick_ms: int, should_stop: Callable[[], bool]) -> None:
    interval = max(tick_ms, 10) / 1000.0
    while not should_stop():
        driver.tick()
        time.sleep(interval)
