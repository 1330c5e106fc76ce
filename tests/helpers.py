from __future__ import annotations

import time
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from wowsreplaytool.core.replays import (
    MATCH_TIME_FORMAT,
    BattleReport,
    DecodeError,
    PlayerInfo,
    Roster,
    build_container,
)


def match_time(value: datetime) -> str:
    return value.strftime(MATCH_TIME_FORMAT)


def player(player_id: int, name: str, clan: str = "", relation: int = 2, clan_id: int = 0) -> PlayerInfo:
    return PlayerInfo(id=player_id, name=name, relation=relation, clan_id=clan_id, clan_name=clan)


def report(match_id: str, when: datetime, players: Iterable[PlayerInfo]) -> BattleReport:
    return BattleReport(match_id=match_id, date_time=match_time(when), players=list(players))


def meta(
    when: datetime,
    vehicles: List[Dict],
    arena_id: Optional[int] = None,
    player_name: str = "me",
    map_id: int = 1,
) -> Dict:
    data = {
        "dateTime": match_time(when),
        "mapId": map_id,
        "mapDisplayName": "Ocean",
        "playerName": player_name,
        "vehicles": vehicles,
    }
    if arena_id is not None:
        data["arenaUniqueID"] = arena_id
    return data


def write_replay(folder: Path, name: str, data: Dict) -> Path:
    path = folder / name
    path.write_bytes(build_container(data, b"\x00" * 16))
    return path


class FakeDecoder:
    """Decoder serving canned reports by file name; unknown files fail."""

    def __init__(
        self,
        reports: Optional[Dict[str, BattleReport]] = None,
        rosters: Optional[Dict[bytes, Roster]] = None,
        failures: int = 0,
    ) -> None:
        self.reports = dict(reports or {})
        self.rosters = dict(rosters or {})
        self.failures = failures
        self.calls: List[Path] = []

    def parse_replay(self, path: Path) -> BattleReport:
        self.calls.append(Path(path))
        if self.failures:
            self.failures -= 1
            raise DecodeError("still being written")
        try:
            return self.reports[Path(path).name]
        except KeyError:
            raise DecodeError(f"unknown replay {path}") from None

    def parse_arena_info(self, data: bytes) -> Roster:
        try:
            return self.rosters[data]
        except KeyError:
            raise DecodeError("unknown arena info") from None


class FakeWatch:
    def __init__(self, path: str) -> None:
        self.path = path


class FakeObserver:
    """Stands in for watchdog's Observer without touching the filesystem."""

    def __init__(self) -> None:
        self.started = False
        self.stopped = False
        self.scheduled: List[FakeWatch] = []
        self.unscheduled: List[FakeWatch] = []
        self.handler = None

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def join(self, timeout: Optional[float] = None) -> None:
        pass

    def schedule(self, handler, path: str, recursive: bool = False) -> FakeWatch:
        assert recursive is False
        self.handler = handler
        watch = FakeWatch(path)
        self.scheduled.append(watch)
        return watch

    def unschedule(self, watch: FakeWatch) -> None:
        self.unscheduled.append(watch)


def wait_for(predicate, step=None, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if step is not None:
            step()
        if predicate():
            return True
        time.sleep(0.01)
    return False
