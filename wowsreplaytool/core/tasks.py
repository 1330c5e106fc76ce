from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .paths import default_replays_dir
from .replays import DecodeError, Replay, ReplayDecoder, iter_replay_files
from .tracker import SharedTracker


logger = logging.getLogger(__name__)


class ToolkitError(Exception):
    """Base class for errors surfaced through a task handle."""


class TaskFailed(ToolkitError):
    def __init__(self, kind: "TaskKind", cause: BaseException) -> None:
        super().__init__(f"{kind.value} failed: {cause}")
        self.kind = kind
        self.cause = cause


class TaskVanished(ToolkitError):
    """The worker ended without delivering a result."""


class TaskRejected(ToolkitError):
    """A task was offered to a busy slot whose policy is to reject."""


class TaskKind(Enum):
    LOADING_GAME_DATA = "loading game data"
    LOADING_REPLAY = "loading replay"
    PARSING_REPLAY = "parsing replay"
    DOWNLOADING_UPDATE = "downloading update"
    POPULATING_TRACKER = "populating tracker"


@dataclass
class DataLoaded:
    game_dir: Path
    replays_dir: Path
    replays: Dict[Path, Replay]


@dataclass
class ReplayLoaded:
    replay: Replay


@dataclass
class ReplayParsed:
    path: Path
    replay: Replay


@dataclass
class UpdateDownloaded:
    path: Path


@dataclass
class TrackerPopulated:
    merged: int
    failed: List[Path] = field(default_factory=list)
    cancelled: bool = False


@dataclass(frozen=True)
class Progress:
    fraction: float
    label: str = ""


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


TaskResult = Tuple[str, Any]


class BackgroundTask:
    """Handle to one worker thread and the single result it will deliver."""

    def __init__(self, kind: TaskKind, with_progress: bool = False) -> None:
        self.kind = kind
        self.result_queue: "queue.Queue[TaskResult]" = queue.Queue(maxsize=1)
        self.progress_queue: Optional["queue.Queue[Progress]"] = queue.Queue() if with_progress else None
        self.last_progress: Optional[Progress] = None
        self.thread: Optional[threading.Thread] = None
        self._delivered = False

    def report(self, progress: Progress) -> None:
        if self.progress_queue is not None:
            self.progress_queue.put(progress)

    def drain_progress(self) -> Optional[Progress]:
        if self.progress_queue is None:
            return None
        while True:
            try:
                item = self.progress_queue.get_nowait()
            except queue.Empty:
                break
            previous = self.last_progress.fraction if self.last_progress else 0.0
            fraction = min(1.0, max(previous, item.fraction))
            self.last_progress = Progress(fraction, item.label)
        return self.last_progress

    def poll(self) -> Optional[TaskResult]:
        """Return ("done", completion) or ("error", exc) once, else None."""
        if self._delivered:
            return None
        try:
            item = self.result_queue.get_nowait()
        except queue.Empty:
            if self.thread is not None and not self.thread.is_alive():
                # The worker may have put its result between the two checks.
                try:
                    item = self.result_queue.get_nowait()
                except queue.Empty:
                    self._delivered = True
                    return ("error", TaskVanished(f"{self.kind.value} ended without a result"))
            else:
                return None
        self._delivered = True
        return item

    @property
    def finished(self) -> bool:
        return self._delivered

    def join(self, timeout: Optional[float] = None) -> None:
        if self.thread is not None:
            self.thread.join(timeout)


def dispatch(
    kind: TaskKind,
    work: Callable[..., Any],
    *args: Any,
    with_progress: bool = False,
) -> BackgroundTask:
    """Run ``work(*args)`` on a daemon thread; with_progress passes task.report last."""
    task = BackgroundTask(kind, with_progress=with_progress)

    def _worker() -> None:
        try:
            call_args = args + (task.report,) if with_progress else args
            result = work(*call_args)
            task.result_queue.put(("done", result))
        except Exception as exc:  # noqa: BLE001
            logger.debug("%s failed", kind.value, exc_info=True)
            task.result_queue.put(("error", TaskFailed(kind, exc)))

    task.thread = threading.Thread(target=_worker, name=f"task-{kind.name.lower()}", daemon=True)
    task.thread.start()
    return task


class SlotState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"


class SlotPolicy(Enum):
    REJECT = "reject"
    REPLACE = "replace"
    QUEUE = "queue"


class TaskSlot:
    """The one task the driver shows to the user.

    IDLE --start--> RUNNING --tick (result)--> COMPLETED --take--> IDLE.
    A vanished worker goes RUNNING -> IDLE without a result. Starting while
    busy follows the policy: REJECT raises TaskRejected, REPLACE detaches the
    running handle (its worker keeps running, its result is never read),
    QUEUE holds the new handle until the slot is free again. Only one handle
    is held in the queue; a newer one detaches it.
    """

    def __init__(self) -> None:
        self.state = SlotState.IDLE
        self.task: Optional[BackgroundTask] = None
        self.result: Optional[TaskResult] = None
        self.queued: Optional[BackgroundTask] = None
        self.detached: List[BackgroundTask] = []

    @property
    def busy(self) -> bool:
        return self.state is not SlotState.IDLE

    def start(self, task: BackgroundTask, policy: SlotPolicy = SlotPolicy.REJECT) -> BackgroundTask:
        self.detached = [t for t in self.detached if t.thread is not None and t.thread.is_alive()]
        if self.busy and self.task is not None:
            if policy is SlotPolicy.REJECT:
                raise TaskRejected(f"cannot start {task.kind.value}: {self.task.kind.value} is running")
            if policy is SlotPolicy.QUEUE:
                if self.queued is not None:
                    self.detached.append(self.queued)
                self.queued = task
                return task
            if self.state is SlotState.COMPLETED:
                logger.warning("Dropping untaken result of %s", self.task.kind.value)
            else:
                logger.info("Detaching %s in favour of %s", self.task.kind.value, task.kind.value)
                self.detached.append(self.task)
        self.task = task
        self.result = None
        self.state = SlotState.RUNNING
        return task

    def tick(self) -> Optional[TaskResult]:
        if self.state is not SlotState.RUNNING or self.task is None:
            return None
        self.task.drain_progress()
        result = self.task.poll()
        if result is None:
            return None
        status, payload = result
        if status == "error" and isinstance(payload, TaskVanished):
            logger.debug("%s", payload)
            self._reset()
            return None
        self.result = result
        self.state = SlotState.COMPLETED
        return result

    def take(self) -> Optional[TaskResult]:
        result = self.result
        if self.state is SlotState.COMPLETED:
            self._reset()
        return result

    @property
    def running_kind(self) -> Optional[TaskKind]:
        return self.task.kind if self.state is SlotState.RUNNING and self.task is not None else None

    @property
    def progress(self) -> Optional[Progress]:
        return self.task.last_progress if self.task is not None else None

    def _reset(self) -> None:
        self.state = SlotState.IDLE
        self.task = None
        self.result = None
        if self.queued is not None:
            queued, self.queued = self.queued, None
            self.start(queued)


def load_game_data(game_dir: Path, decoder: ReplayDecoder, replays_dir: Optional[Path] = None) -> BackgroundTask:
    def _load() -> DataLoaded:
        root = Path(game_dir)
        if not root.is_dir():
            raise FileNotFoundError(f"game directory not found: {root}")
        target = Path(replays_dir) if replays_dir else default_replays_dir(root)
        if not target.is_dir():
            raise FileNotFoundError(f"replays directory not found: {target}")
        replays: Dict[Path, Replay] = {}
        for path in iter_replay_files(target):
            try:
                replays[path] = Replay(path, decoder.parse_replay(path))
            except DecodeError as exc:
                logger.debug("Skipping %s: %s", path, exc)
        logger.info("Loaded %d replays from %s", len(replays), target)
        return DataLoaded(root, target, replays)

    return dispatch(TaskKind.LOADING_GAME_DATA, _load)


def load_replay(replay: Replay, tracker: SharedTracker) -> BackgroundTask:
    def _load() -> ReplayLoaded:
        merged = tracker.merge_match(replay.report)
        logger.info("Loaded replay %s (%d players merged)", replay.path.name, merged)
        return ReplayLoaded(replay)

    return dispatch(TaskKind.LOADING_REPLAY, _load)


def populate_tracker(
    paths: List[Path],
    decoder: ReplayDecoder,
    tracker: SharedTracker,
    token: Optional[CancellationToken] = None,
) -> BackgroundTask:
    token = token or CancellationToken()

    def _populate(report: Callable[[Progress], None]) -> TrackerPopulated:
        result = TrackerPopulated(merged=0)
        total = len(paths)
        for idx, path in enumerate(paths, start=1):
            if token.cancelled:
                result.cancelled = True
                break
            try:
                result.merged += tracker.merge_match(decoder.parse_replay(path))
            except DecodeError as exc:
                logger.debug("Could not parse %s: %s", path, exc)
                result.failed.append(path)
            report(Progress(idx / total, Path(path).name))
        return result

    return dispatch(TaskKind.POPULATING_TRACKER, _populate, with_progress=True)


def download_update(url: str, dest_dir: Path, session: Any = None) -> BackgroundTask:
    from .updater import download_file

    def _download(report: Callable[[Progress], None]) -> UpdateDownloaded:
        return UpdateDownloaded(download_file(url, dest_dir, report, session=session))

    return dispatch(TaskKind.DOWNLOADING_UPDATE, _download, with_progress=True)
