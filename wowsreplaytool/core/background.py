from __future__ import annotations

import logging
import queue
import threading
from pathlib import Path
from typing import Optional, Set

from .ingest import RetryPolicy
from .replays import DecodeError, ReplayDecoder
from .tasks import CancellationToken
from .tracker import SharedTracker


logger = logging.getLogger(__name__)


class BackgroundParser:
    """Batch side of ingestion: folds every new replay into the tracker.

    Fed by the watcher independently of the live loop, so replays are merged
    even when auto-load is off. A replay path is only merged once per session.
    Arena info is left to the live loop.
    """

    def __init__(
        self,
        decoder: ReplayDecoder,
        tracker: SharedTracker,
        retry: Optional[RetryPolicy] = None,
        token: Optional[CancellationToken] = None,
    ) -> None:
        self.queue: "queue.Queue[Optional[Path]]" = queue.Queue()
        self.decoder = decoder
        self.tracker = tracker
        self.retry = retry or RetryPolicy()
        self.token = token or CancellationToken()
        self.processed: Set[Path] = set()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="background-parser", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self.token.cancel()
        self.queue.put(None)
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self.token.cancelled:
            path = self.queue.get()
            if path is None or self.token.cancelled:
                break
            try:
                self.process(Path(path))
            except Exception:  # noqa: BLE001
                logger.exception("Background processing of %s failed", path)

    def process(self, path: Path) -> int:
        if path in self.processed:
            return 0
        try:
            report = self.retry.run(lambda: self.decoder.parse_replay(path))
        except (OSError, DecodeError) as exc:
            logger.debug("Skipping replay %s: %s", path, exc)
            return 0
        self.processed.add(path)
        merged = self.tracker.merge_match(report)
        logger.debug("Background merge of %s: %d players", path.name, merged)
        return merged
