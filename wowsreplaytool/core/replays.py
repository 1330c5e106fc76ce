from __future__ import annotations

import hashlib
import json
import os
import struct
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol


REPLAY_EXTENSION = ".wowsreplay"
TEMP_REPLAY_NAME = "temp.wowsreplay"
ARENA_INFO_NAME = "tempArenaInfo.json"
PREFERENCES_NAME = "preferences.xml"

REPLAY_MAGIC = 0x11343212
MATCH_TIME_FORMAT = "%d.%m.%Y %H:%M:%S"

SELF_RELATION = 0


class DecodeError(Exception):
    """Raised when a replay container or arena info file cannot be decoded."""


@dataclass(frozen=True)
class PlayerInfo:
    id: int
    name: str
    relation: int
    clan_id: int = 0
    clan_name: str = ""

    @property
    def is_self(self) -> bool:
        return self.relation == SELF_RELATION


@dataclass(frozen=True)
class ChatMessage:
    sender: str
    channel: str
    text: str


@dataclass
class BattleReport:
    match_id: str
    date_time: str
    players: List[PlayerInfo]
    arena_id: Optional[int] = None
    player_name: str = ""
    map_name: str = ""
    chat: List[ChatMessage] = field(default_factory=list)

    @property
    def timestamp(self) -> datetime:
        return parse_match_time(self.date_time)


@dataclass
class Roster:
    """Participants of a match that is still in progress."""

    date_time: str
    players: List[PlayerInfo]
    match_id: Optional[str] = None

    @property
    def timestamp(self) -> Optional[datetime]:
        if not self.date_time:
            return None
        return parse_match_time(self.date_time)


@dataclass
class Replay:
    path: Path
    report: BattleReport


class ReplayDecoder(Protocol):
    def parse_replay(self, path: Path) -> BattleReport:
        ...


class ArenaInfoDecoder(Protocol):
    def parse_arena_info(self, data: bytes) -> Roster:
        ...


def parse_match_time(value: str) -> datetime:
    try:
        return datetime.strptime(value, MATCH_TIME_FORMAT)
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"bad match time {value!r}") from exc


def is_replay_file(path: Path) -> bool:
    return path.suffix.lower() == REPLAY_EXTENSION and path.name != TEMP_REPLAY_NAME


def iter_replay_files(folder: Path) -> Iterable[Path]:
    for entry in sorted(os.scandir(folder), key=lambda e: e.name):
        if entry.is_file() and is_replay_file(Path(entry.path)):
            yield Path(entry.path)


def _derive_match_id(meta: Dict[str, Any]) -> str:
    unique_id = meta.get("arenaUniqueID")
    if unique_id not in (None, ""):
        return str(unique_id)
    key = "|".join(str(meta.get(k, "")) for k in ("dateTime", "mapId", "playerName"))
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]


def _players_from_meta(meta: Dict[str, Any]) -> List[PlayerInfo]:
    vehicles = meta.get("vehicles")
    if not isinstance(vehicles, list):
        raise DecodeError("metadata has no vehicle list")
    players = []
    for vehicle in vehicles:
        if not isinstance(vehicle, dict):
            continue
        try:
            player_id = int(vehicle["id"])
            relation = int(vehicle.get("relation", 2))
            clan_id = int(vehicle.get("clanID") or 0)
        except (KeyError, TypeError, ValueError):
            continue
        players.append(
            PlayerInfo(
                id=player_id,
                name=str(vehicle.get("name", "")),
                relation=relation,
                clan_id=clan_id,
                clan_name=str(vehicle.get("clanTag") or ""),
            )
        )
    return players


def _load_meta(raw: bytes) -> Dict[str, Any]:
    try:
        meta = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"metadata is not valid JSON: {exc}") from exc
    if not isinstance(meta, dict):
        raise DecodeError("metadata is not a JSON object")
    return meta


def read_container_meta(data: bytes) -> Dict[str, Any]:
    """Return the JSON metadata block at the start of a replay container."""
    if len(data) < 12:
        raise DecodeError("container too short")
    magic, block_count, meta_len = struct.unpack_from("<III", data, 0)
    if magic != REPLAY_MAGIC:
        raise DecodeError(f"bad container magic {magic:#x}")
    if block_count < 1:
        raise DecodeError("container has no blocks")
    end = 12 + meta_len
    if len(data) < end:
        # Usually the game is still writing the file.
        raise DecodeError("metadata block truncated")
    return _load_meta(data[12:end])


class WowsMetadataDecoder:
    """Decodes the JSON metadata carried by replay containers and arena info files.

    Packet data after the metadata block is not decoded, so chat stays empty
    and clan fields are only filled when the metadata carries them.
    """

    def parse_replay(self, path: Path) -> BattleReport:
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            raise DecodeError(f"cannot read {path}: {exc}") from exc
        return self.report_from_meta(read_container_meta(data))

    def parse_arena_info(self, data: bytes) -> Roster:
        meta = _load_meta(data)
        date_time = str(meta.get("dateTime", ""))
        if date_time:
            parse_match_time(date_time)
        return Roster(
            date_time=date_time,
            players=_players_from_meta(meta),
            # Same derivation as the replay, so both merges name one match.
            match_id=_derive_match_id(meta) if date_time or meta.get("arenaUniqueID") else None,
        )

    def report_from_meta(self, meta: Dict[str, Any]) -> BattleReport:
        date_time = str(meta.get("dateTime", ""))
        parse_match_time(date_time)
        arena_id = meta.get("arenaUniqueID")
        if arena_id not in (None, ""):
            try:
                arena_id = int(arena_id)
            except (TypeError, ValueError) as exc:
                raise DecodeError(f"bad arena id {arena_id!r}") from exc
        else:
            arena_id = None
        return BattleReport(
            match_id=_derive_match_id(meta),
            date_time=date_time,
            players=_players_from_meta(meta),
            arena_id=arena_id,
            player_name=str(meta.get("playerName", "")),
            map_name=str(meta.get("mapDisplayName", "")),
        )


def build_container(meta: Dict[str, Any], packet_data: bytes = b"") -> bytes:
    """Inverse of read_container_meta; used for fixtures and exports."""
    raw = json.dumps(meta).encode("utf-8")
    return struct.pack("<III", REPLAY_MAGIC, 1, len(raw)) + raw + packet_data
