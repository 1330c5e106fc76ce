from __future__ import annotations

import logging
import os
import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .replays import ARENA_INFO_NAME, PREFERENCES_NAME, is_replay_file


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Added:
    path: Path


@dataclass(frozen=True)
class Removed:
    path: Path


@dataclass(frozen=True)
class PreferencesChanged:
    pass


@dataclass(frozen=True)
class ArenaInfoCreated:
    path: Path


FileEvent = Union[Added, Removed, PreferencesChanged, ArenaInfoCreated]


def _as_path(raw: Any) -> Path:
    return Path(os.fsdecode(raw))


def classify(event: FileSystemEvent) -> List[FileEvent]:
    """Translate one watchdog notification into replay-directory events."""
    kind = event.event_type
    if kind == EVENT_TYPE_DELETED:
        return [Removed(_as_path(event.src_path))]
    if event.is_directory:
        return []

    if kind in (EVENT_TYPE_CREATED, EVENT_TYPE_MOVED):
        # For moves only the destination half matters.
        raw = event.dest_path if kind == EVENT_TYPE_MOVED else event.src_path
        if not raw:
            return []
        path = _as_path(raw)
        if is_replay_file(path):
            return [Added(path)]
        if path.name == ARENA_INFO_NAME:
            return [ArenaInfoCreated(path)]
        return []

    if kind == EVENT_TYPE_MODIFIED:
        path = _as_path(event.src_path)
        if path.name == ARENA_INFO_NAME:
            return [ArenaInfoCreated(path)]
        if path.name == PREFERENCES_NAME:
            return [PreferencesChanged()]
    return []


class ReplayEventHandler(FileSystemEventHandler):
    def __init__(self, events: "queue.Queue[FileEvent]", background: Optional["queue.Queue[Any]"] = None) -> None:
        super().__init__()
        self.events = events
        self.background = background

    def on_any_event(self, event: FileSystemEvent) -> None:
        for file_event in classify(event):
            logger.debug("Filesystem event: %s", file_event)
            self.events.put(file_event)
            if self.background is not None and isinstance(file_event, Added):
                self.background.put(file_event.path)


class ReplayDirWatcher:
    """Watches one replay directory at a time and queues classified events.

    The observer and the event queue live for the whole session, so pointing
    the watch at another directory keeps whatever is already queued.
    """

    def __init__(
        self,
        background: Optional[Any] = None,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.events: "queue.Queue[FileEvent]" = queue.Queue()
        self.background = background
        self._observer_factory = observer_factory
        self._observer: Optional[Any] = None
        self._watch: Optional[Any] = None
        self._lock = threading.Lock()
        self.root: Optional[Path] = None
        self.handler = ReplayEventHandler(
            self.events, background.queue if background is not None else None
        )

    def watch(self, root: Optional[Path]) -> None:
        if root is None:
            raise ValueError("no replay directory configured")
        root = Path(root)
        if not root.is_dir():
            raise ValueError(f"replay directory does not exist: {root}")

        with self._lock:
            if self.root is not None and self.root == root and self._watch is not None:
                return
            if self._observer is None:
                logger.debug("Creating filesystem observer")
                self._observer = self._observer_factory()
                self._observer.start()
                if self.background is not None:
                    self.background.start()
            if self._watch is not None:
                try:
                    self._observer.unschedule(self._watch)
                except KeyError:
                    logger.debug("Watch for %s already gone", self.root)
            self._watch = self._observer.schedule(self.handler, str(root), recursive=False)
            self.root = root
        logger.info("Watching %s", root)

    def stop(self) -> None:
        with self._lock:
            if self._observer is not None:
                self._observer.stop()
                self._observer.join(timeout=5.0)
                self._observer = None
                self._watch = None
            if self.background is not None:
                self.background.stop()
