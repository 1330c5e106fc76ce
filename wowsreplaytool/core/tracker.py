from __future__ import annotations

import copy
import logging
from bisect import bisect_right, insort
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Set

from .replays import BattleReport, PlayerInfo, Roster
from .sync import ReadWriteLock


logger = logging.getLogger(__name__)


class TimePeriod(Enum):
    LAST_DAY = "last_day"
    LAST_WEEK = "last_week"
    LAST_MONTH = "last_month"
    ALL_TIME = "all_time"

    @property
    def description(self) -> str:
        return _PERIOD_DESCRIPTIONS[self]

    def start(self, now: Optional[datetime] = None) -> Optional[datetime]:
        delta = _PERIOD_DELTAS[self]
        if delta is None:
            return None
        return (now or datetime.now()) - delta


_PERIOD_DESCRIPTIONS = {
    TimePeriod.LAST_DAY: "Past 24 Hours",
    TimePeriod.LAST_WEEK: "Past Week",
    TimePeriod.LAST_MONTH: "Past Month",
    TimePeriod.ALL_TIME: "All Time",
}

_PERIOD_DELTAS = {
    TimePeriod.LAST_DAY: timedelta(hours=24),
    TimePeriod.LAST_WEEK: timedelta(days=7),
    TimePeriod.LAST_MONTH: timedelta(weeks=4),
    TimePeriod.ALL_TIME: None,
}


class SortKey(Enum):
    NAME = "name"
    CLAN = "clan"
    LAST_ENCOUNTERED = "last_encountered"
    TIMES_ENCOUNTERED = "times_encountered"
    TIMES_IN_RANGE = "times_in_range"


class SortOrder(Enum):
    ASC = "asc"
    DESC = "desc"

    def toggled(self) -> "SortOrder":
        return SortOrder.DESC if self is SortOrder.ASC else SortOrder.ASC


@dataclass
class SortedBy:
    key: SortKey = SortKey.TIMES_ENCOUNTERED
    order: SortOrder = SortOrder.DESC

    def transition_to(self, key: SortKey) -> None:
        """Same key flips the direction, a new key starts ascending."""
        if key is self.key:
            self.order = self.order.toggled()
        else:
            self.key = key
            self.order = SortOrder.ASC


class Severity(Enum):
    NEUTRAL = "neutral"
    CAUTION = "caution"
    ELEVATED = "elevated"
    SEVERE = "severe"


def severity(encounters: int) -> Severity:
    if encounters <= 1:
        return Severity.NEUTRAL
    if encounters <= 3:
        return Severity.CAUTION
    if encounters <= 5:
        return Severity.ELEVATED
    return Severity.SEVERE


@dataclass
class TrackedPlayer:
    id: int
    last_name: str = ""
    aliases: Set[str] = field(default_factory=set)
    clan_id: int = 0
    clan_name: str = ""
    encounter_timestamps: List[datetime] = field(default_factory=list)
    encountered_matches: Set[str] = field(default_factory=set)
    notes: str = ""

    @property
    def total_encounters(self) -> int:
        return len(self.encountered_matches)

    @property
    def first_encountered(self) -> Optional[datetime]:
        return self.encounter_timestamps[0] if self.encounter_timestamps else None

    @property
    def last_encountered(self) -> Optional[datetime]:
        return self.encounter_timestamps[-1] if self.encounter_timestamps else None

    def encounters_since(self, start: Optional[datetime]) -> int:
        if start is None:
            return self.total_encounters
        return len(self.encounter_timestamps) - bisect_right(self.encounter_timestamps, start)

    def record_timestamp(self, timestamp: datetime) -> None:
        idx = bisect_right(self.encounter_timestamps, timestamp)
        if idx and self.encounter_timestamps[idx - 1] == timestamp:
            return
        self.encounter_timestamps.insert(idx, timestamp)

    def refresh_identity(
        self, name: str, clan_id: int, clan_name: str, timestamp: datetime, keep_known_clan: bool = False
    ) -> None:
        newest = self.last_encountered
        if newest is not None and timestamp <= newest:
            return
        if self.last_name and self.last_name != name:
            self.aliases.add(self.last_name)
        self.aliases.discard(name)
        self.last_name = name
        if keep_known_clan and self.clan_name and not clan_name:
            return
        self.clan_id = clan_id
        self.clan_name = clan_name

    def matches_filter(self, needle: str) -> bool:
        if needle in self.clan_name.lower() or needle in self.last_name.lower():
            return True
        return any(needle in alias.lower() for alias in self.aliases)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "last_name": self.last_name,
            "aliases": sorted(self.aliases),
            "clan_id": self.clan_id,
            "clan_name": self.clan_name,
            "timestamps": [ts.isoformat() for ts in self.encounter_timestamps],
            "matches": sorted(self.encountered_matches),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackedPlayer":
        player = cls(
            id=int(data["id"]),
            last_name=str(data.get("last_name", "")),
            aliases=set(data.get("aliases", [])),
            clan_id=int(data.get("clan_id", 0) or 0),
            clan_name=str(data.get("clan_name", "")),
            encountered_matches={str(m) for m in data.get("matches", [])},
            notes=str(data.get("notes", "")),
        )
        for raw in data.get("timestamps", []):
            player.record_timestamp(datetime.fromisoformat(raw))
        return player


@dataclass(frozen=True)
class TrackerRow:
    player: TrackedPlayer
    total_encounters: int
    encounters_in_window: int

    @property
    def severity(self) -> Severity:
        return severity(self.encounters_in_window)


class PlayerTracker:
    """Cross-session index of every player met in a match.

    ``by_id`` holds one ``TrackedPlayer`` per account id and ``by_time`` maps
    each match timestamp to the ids seen in that match, so time windows are
    answered by scanning the sorted timestamp keys from the window start.
    """

    def __init__(self) -> None:
        self.by_id: Dict[int, TrackedPlayer] = {}
        self.by_time: Dict[datetime, List[int]] = {}
        self._times: List[datetime] = []
        self.filter_time_period = TimePeriod.LAST_DAY
        self.sorted_by = SortedBy()
        self.name_filter = ""

    def __len__(self) -> int:
        return len(self.by_id)

    def _bucket(self, timestamp: datetime) -> List[int]:
        bucket = self.by_time.get(timestamp)
        if bucket is None:
            bucket = self.by_time[timestamp] = []
            insort(self._times, timestamp)
        return bucket

    def _index(self, timestamp: datetime, player_id: int) -> None:
        bucket = self._bucket(timestamp)
        if player_id not in bucket:
            bucket.append(player_id)

    def _player(self, info: PlayerInfo) -> TrackedPlayer:
        player = self.by_id.get(info.id)
        if player is None:
            player = self.by_id[info.id] = TrackedPlayer(id=info.id)
        return player

    def merge_match(self, report: BattleReport, timestamp: Optional[datetime] = None) -> int:
        """Fold one finished match into the index; returns how many players changed."""
        if timestamp is None:
            timestamp = report.timestamp
        match_id = str(report.match_id)
        merged = 0
        for info in report.players:
            if info.is_self:
                continue
            existing = self.by_id.get(info.id)
            if existing is not None and match_id in existing.encountered_matches:
                # The live merge may have bucketed it under another time.
                self._index(timestamp, info.id)
                continue
            player = self._player(info)
            player.refresh_identity(info.name, info.clan_id, info.clan_name, timestamp)
            player.record_timestamp(timestamp)
            player.encountered_matches.add(match_id)
            self._index(timestamp, info.id)
            merged += 1
        return merged

    def merge_live_arena_info(self, roster: Roster, now: Optional[datetime] = None) -> int:
        """Track the participants of a match that has not finished yet.

        A known clan survives a roster that lists none. A roster without a
        match id is keyed by its timestamp instead.
        """
        timestamp = roster.timestamp or now or datetime.now()
        match_id = str(roster.match_id) if roster.match_id else f"live-{timestamp.isoformat()}"
        merged = 0
        for info in roster.players:
            if info.is_self:
                continue
            existing = self.by_id.get(info.id)
            if existing is not None and match_id in existing.encountered_matches:
                continue
            player = self._player(info)
            player.refresh_identity(info.name, info.clan_id, info.clan_name, timestamp, keep_known_clan=True)
            player.record_timestamp(timestamp)
            self._index(timestamp, info.id)
            player.encountered_matches.add(match_id)
            merged += 1
        return merged

    def _candidate_ids(self, start: Optional[datetime]) -> Set[int]:
        if start is None:
            return set(self.by_id)
        ids: Set[int] = set()
        for ts in self._times[bisect_right(self._times, start):]:
            ids.update(self.by_time[ts])
        return ids

    def query(
        self,
        period: Optional[TimePeriod] = None,
        name_filter: Optional[str] = None,
        sorted_by: Optional[SortedBy] = None,
        now: Optional[datetime] = None,
    ) -> Iterator[TrackerRow]:
        period = period or self.filter_time_period
        needle = (self.name_filter if name_filter is None else name_filter).lower()
        sorted_by = sorted_by or self.sorted_by
        start = period.start(now)

        rows = []
        for player_id in sorted(self._candidate_ids(start)):
            player = self.by_id.get(player_id)
            if player is None:
                continue
            if needle and not player.matches_filter(needle):
                continue
            rows.append(TrackerRow(player, player.total_encounters, player.encounters_since(start)))

        rows.sort(key=_ROW_KEYS[sorted_by.key], reverse=sorted_by.order is SortOrder.DESC)
        yield from rows

    def toggle_sort(self, key: SortKey) -> SortedBy:
        self.sorted_by.transition_to(key)
        return self.sorted_by

    def set_notes(self, player_id: int, notes: str) -> None:
        self.by_id[player_id].notes = notes

    def clear(self) -> None:
        self.by_id.clear()
        self.by_time.clear()
        self._times.clear()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tracked_players": [p.to_dict() for _id, p in sorted(self.by_id.items())],
            "tracked_players_by_time": [[ts.isoformat(), list(self.by_time[ts])] for ts in self._times],
            "filter_time_period": self.filter_time_period.value,
            "sort_order": {"key": self.sorted_by.key.value, "order": self.sorted_by.order.value},
            "player_filter": self.name_filter,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PlayerTracker":
        tracker = cls()
        if not data:
            return tracker
        for raw in data.get("tracked_players", []):
            try:
                player = TrackedPlayer.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable tracked player %r: %s", raw, exc)
                continue
            tracker.by_id[player.id] = player
        for raw in data.get("tracked_players_by_time", []):
            try:
                raw_ts, ids = raw
                timestamp = datetime.fromisoformat(raw_ts)
                ids = [int(i) for i in ids]
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable time bucket %r: %s", raw, exc)
                continue
            for player_id in ids:
                tracker._index(timestamp, player_id)
        tracker.filter_time_period = _enum_or_default(
            TimePeriod, data.get("filter_time_period"), TimePeriod.LAST_DAY
        )
        sort_data = data.get("sort_order") or {}
        tracker.sorted_by = SortedBy(
            key=_enum_or_default(SortKey, sort_data.get("key"), SortKey.TIMES_ENCOUNTERED),
            order=_enum_or_default(SortOrder, sort_data.get("order"), SortOrder.DESC),
        )
        tracker.name_filter = str(data.get("player_filter", ""))
        return tracker


def _enum_or_default(enum_cls, value, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


# Player id breaks ties so ASC and DESC are exact mirrors.
_ROW_KEYS = {
    SortKey.NAME: lambda row: (row.player.last_name.lower(), row.player.id),
    SortKey.CLAN: lambda row: (row.player.clan_name.lower(), row.player.id),
    SortKey.LAST_ENCOUNTERED: lambda row: (row.player.last_encountered or datetime.min, row.player.id),
    SortKey.TIMES_ENCOUNTERED: lambda row: (row.total_encounters, row.player.id),
    SortKey.TIMES_IN_RANGE: lambda row: (row.encounters_in_window, row.player.id),
}


class SharedTracker:
    """The single owner of a PlayerTracker.

    Other components never see the tracker itself: merges and query-state
    changes take the write lock, queries and snapshots take the read lock.
    """

    def __init__(self, tracker: Optional[PlayerTracker] = None) -> None:
        self._tracker = tracker or PlayerTracker()
        self._lock = ReadWriteLock()

    def merge_match(self, report: BattleReport, timestamp: Optional[datetime] = None) -> int:
        with self._lock.write():
            return self._tracker.merge_match(report, timestamp)

    def merge_live_arena_info(self, roster: Roster, now: Optional[datetime] = None) -> int:
        with self._lock.write():
            return self._tracker.merge_live_arena_info(roster, now)

    def clear(self) -> None:
        with self._lock.write():
            self._tracker.clear()
        logger.info("Tracker stats cleared")

    def toggle_sort(self, key: SortKey) -> SortedBy:
        with self._lock.write():
            return copy.copy(self._tracker.toggle_sort(key))

    def set_query(self, period: Optional[TimePeriod] = None, name_filter: Optional[str] = None) -> None:
        with self._lock.write():
            if period is not None:
                self._tracker.filter_time_period = period
            if name_filter is not None:
                self._tracker.name_filter = name_filter

    def set_notes(self, player_id: int, notes: str) -> None:
        with self._lock.write():
            self._tracker.set_notes(player_id, notes)

    def query(self, **kwargs: Any) -> List[TrackerRow]:
        # Rows hold copies so callers can read them after the lock is gone.
        with self._lock.read():
            return [
                TrackerRow(copy.deepcopy(row.player), row.total_encounters, row.encounters_in_window)
                for row in self._tracker.query(**kwargs)
            ]

    def query_state(self) -> tuple[TimePeriod, str, SortedBy]:
        with self._lock.read():
            t = self._tracker
            return t.filter_time_period, t.name_filter, copy.copy(t.sorted_by)

    def snapshot(self) -> PlayerTracker:
        with self._lock.read():
            return copy.deepcopy(self._tracker)

    def to_dict(self) -> Dict[str, Any]:
        with self._lock.read():
            return self._tracker.to_dict()

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._tracker)
