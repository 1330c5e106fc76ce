from __future__ import annotations

import logging
import queue
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, TypeVar

from .replays import ArenaInfoDecoder, DecodeError, Replay, ReplayDecoder
from .sync import ReadWriteLock
from .tasks import (
    BackgroundTask,
    ReplayParsed,
    SlotPolicy,
    TaskKind,
    TaskSlot,
    dispatch,
    load_replay,
)
from .tracker import SharedTracker
from .watcher import Added, ArenaInfoCreated, FileEvent, PreferencesChanged, Removed


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Fixed-count retry with a pause between failed attempts."""

    attempts: int = 3
    delay: float = 1.0
    sleep: Callable[[float], None] = time.sleep

    def run(self, fn: Callable[[], T], retry_on: tuple = (DecodeError, OSError)) -> T:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        for attempt in range(1, self.attempts + 1):
            try:
                return fn()
            except retry_on as exc:
                if attempt == self.attempts:
                    raise
                logger.debug("Attempt %d/%d failed: %s", attempt, self.attempts, exc)
                self.sleep(self.delay)
        raise AssertionError("unreachable")


class OpenReplays:
    """Replays currently present in the watched directory, keyed by path."""

    def __init__(self, replays: Optional[Dict[Path, Replay]] = None) -> None:
        self._replays: Dict[Path, Replay] = dict(replays or {})
        self._lock = ReadWriteLock()

    def put(self, path: Path, replay: Replay) -> None:
        with self._lock.write():
            self._replays[Path(path)] = replay

    def remove(self, path: Path) -> Optional[Replay]:
        with self._lock.write():
            return self._replays.pop(Path(path), None)

    def replace_all(self, replays: Dict[Path, Replay]) -> None:
        with self._lock.write():
            self._replays = dict(replays)

    def get(self, path: Path) -> Optional[Replay]:
        with self._lock.read():
            return self._replays.get(Path(path))

    def paths(self) -> List[Path]:
        with self._lock.read():
            return sorted(self._replays)

    def snapshot(self) -> Dict[Path, Replay]:
        with self._lock.read():
            return dict(self._replays)

    def __contains__(self, path: object) -> bool:
        with self._lock.read():
            return path in self._replays

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._replays)

    def __iter__(self) -> Iterator[Path]:
        return iter(self.paths())


class IngestionLoop:
    """Consumes watcher events once per driver tick without blocking.

    New replays are parsed on worker threads under the retry policy because
    the game may still be flushing them; the parsed replay is picked up on a
    later tick.
    """

    def __init__(
        self,
        events: "queue.Queue[FileEvent]",
        decoder: ReplayDecoder,
        arena_decoder: ArenaInfoDecoder,
        tracker: SharedTracker,
        replays: OpenReplays,
        slot: TaskSlot,
        retry: Optional[RetryPolicy] = None,
        auto_load_latest: bool = True,
    ) -> None:
        self.events = events
        self.decoder = decoder
        self.arena_decoder = arena_decoder
        self.tracker = tracker
        self.replays = replays
        self.slot = slot
        self.retry = retry or RetryPolicy()
        self.auto_load_latest = auto_load_latest
        self.pending: List[BackgroundTask] = []
        self._last_arena_info: Optional[bytes] = None

    def tick(self) -> List[Replay]:
        """Handle queued events and finished parse jobs; returns newly opened replays."""
        for _ in range(self.events.qsize()):
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                break
            self.handle(event)
        return self._collect_parsed()

    def handle(self, event: FileEvent) -> None:
        if isinstance(event, Added):
            self.pending.append(self._start_parse(event.path))
        elif isinstance(event, Removed):
            if self.replays.remove(event.path) is not None:
                logger.debug("Replay removed: %s", event.path)
        elif isinstance(event, PreferencesChanged):
            # Reloading game data on preference changes is not supported.
            logger.debug("Preferences changed; ignoring")
        elif isinstance(event, ArenaInfoCreated):
            self._merge_arena_info(event.path)

    def _start_parse(self, path: Path) -> BackgroundTask:
        def _parse() -> ReplayParsed:
            report = self.retry.run(lambda: self.decoder.parse_replay(path))
            return ReplayParsed(path, Replay(path, report))

        return dispatch(TaskKind.PARSING_REPLAY, _parse)

    def _collect_parsed(self) -> List[Replay]:
        opened: List[Replay] = []
        still_running: List[BackgroundTask] = []
        for task in self.pending:
            result = task.poll()
            if result is None:
                still_running.append(task)
                continue
            status, payload = result
            if status != "done":
                logger.debug("Giving up on new replay: %s", payload)
                continue
            self.replays.put(payload.path, payload.replay)
            opened.append(payload.replay)
            if self.auto_load_latest:
                self._auto_load(payload.replay)
        self.pending = still_running
        return opened

    def _auto_load(self, replay: Replay) -> None:
        # A newer replay supersedes an older replay load; anything else
        # (game data, downloads, bulk populate) finishes first.
        if self.slot.busy and self.slot.running_kind is not TaskKind.LOADING_REPLAY:
            policy = SlotPolicy.QUEUE
        else:
            policy = SlotPolicy.REPLACE
        self.slot.start(load_replay(replay, self.tracker), policy)

    def _merge_arena_info(self, path: Path) -> None:
        try:
            data = Path(path).read_bytes()
            written = datetime.fromtimestamp(Path(path).stat().st_mtime).replace(microsecond=0)
        except OSError as exc:
            logger.debug("Could not read arena info %s: %s", path, exc)
            return
        # The game creates then rewrites the file for one match.
        if data == self._last_arena_info:
            return
        try:
            roster = self.arena_decoder.parse_arena_info(data)
        except DecodeError as exc:
            logger.warning("Could not decode arena info %s: %s", path, exc)
            return
        self._last_arena_info = data
        merged = self.tracker.merge_live_arena_info(roster, now=written)
        logger.info("Tracking %d players from the current match", merged)
