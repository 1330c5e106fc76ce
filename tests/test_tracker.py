from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

import pytest

from tests.helpers import match_time, player, report
from wowsreplaytool.core.replays import Roster
from wowsreplaytool.core.tracker import (
    PlayerTracker,
    Severity,
    SharedTracker,
    SortedBy,
    SortKey,
    SortOrder,
    TimePeriod,
    severity,
)


T1 = datetime(2024, 1, 1, 10, 0)
T2 = datetime(2024, 1, 2, 10, 0)


@pytest.fixture
def tracker():
    return PlayerTracker()


def _ids(rows):
    return [row.player.id for row in rows]


def test_merge_scenario_duplicate_then_rename(tracker):
    m1 = report("M1", T1, [player(7, "Foo", clan="ABC", relation=1)])
    m2 = report("M2", T2, [player(7, "Bar", clan="ABC", relation=1)])

    assert tracker.merge_match(m1) == 1
    assert tracker.merge_match(m1) == 0
    assert tracker.merge_match(m2) == 1

    tracked = tracker.by_id[7]
    assert tracked.last_name == "Bar"
    assert tracked.aliases == {"Foo"}
    assert tracked.total_encounters == 2
    assert tracked.encounter_timestamps == [T1, T2]
    assert tracked.clan_name == "ABC"


def test_merge_is_idempotent(tracker):
    match = report("M1", T1, [player(1, "a"), player(2, "b")])
    tracker.merge_match(match)
    before = tracker.to_dict()

    tracker.merge_match(match)

    assert tracker.to_dict() == before
    assert tracker.by_time[T1] == [1, 2]


def test_self_is_never_tracked(tracker):
    match = report("M1", T1, [player(1, "me", relation=0), player(2, "enemy")])

    assert tracker.merge_match(match) == 1
    assert 1 not in tracker.by_id
    assert all(1 not in ids for ids in tracker.by_time.values())


def test_alias_recorded_once_and_current_name_not_an_alias(tracker):
    tracker.merge_match(report("M1", T1, [player(3, "A")]))
    tracker.merge_match(report("M2", T1 + timedelta(hours=1), [player(3, "B")]))
    tracker.merge_match(report("M3", T1 + timedelta(hours=2), [player(3, "A")]))
    tracker.merge_match(report("M4", T1 + timedelta(hours=3), [player(3, "B")]))

    tracked = tracker.by_id[3]
    assert tracked.last_name == "B"
    assert tracked.aliases == {"A"}
    assert tracked.last_name not in tracked.aliases


def test_older_match_does_not_refresh_identity(tracker):
    tracker.merge_match(report("M2", T2, [player(7, "Bar", clan="NEW")]))
    tracker.merge_match(report("M1", T1, [player(7, "Foo", clan="OLD")]))

    tracked = tracker.by_id[7]
    assert tracked.last_name == "Bar"
    assert tracked.clan_name == "NEW"
    assert tracked.aliases == set()
    assert tracked.encounter_timestamps == [T1, T2]
    assert tracked.total_encounters == 2


def test_explicit_timestamp_overrides_report_time(tracker):
    when = datetime(2023, 6, 1, 12, 0)
    tracker.merge_match(report("M1", T1, [player(1, "a")]), timestamp=when)

    assert tracker.by_id[1].encounter_timestamps == [when]
    assert list(tracker.by_time) == [when]


def test_window_is_strictly_after_start(tracker):
    now = datetime(2024, 1, 3, 10, 0)
    tracker.merge_match(report("M1", now - timedelta(hours=24), [player(1, "edge")]))
    tracker.merge_match(report("M2", now - timedelta(hours=23), [player(2, "inside")]))

    rows = list(tracker.query(period=TimePeriod.LAST_DAY, now=now))

    assert _ids(rows) == [2]


def test_window_counts_grow_with_window(tracker):
    now = datetime(2024, 2, 1, 12, 0)
    for days, match in ((0.5, "M1"), (3, "M2"), (20, "M3"), (90, "M4")):
        tracker.merge_match(report(match, now - timedelta(days=days), [player(5, "p")]))

    counts = []
    for period in (TimePeriod.LAST_DAY, TimePeriod.LAST_WEEK, TimePeriod.LAST_MONTH, TimePeriod.ALL_TIME):
        rows = list(tracker.query(period=period, now=now))
        counts.append(rows[0].encounters_in_window)
        assert rows[0].total_encounters == 4

    assert counts == [1, 2, 3, 4]


def test_empty_window_yields_nothing(tracker):
    tracker.merge_match(report("M1", T1, [player(1, "a")]))

    assert list(tracker.query(period=TimePeriod.LAST_DAY, now=T2 + timedelta(days=5))) == []


def test_name_filter_matches_clan_name_and_aliases(tracker):
    tracker.merge_match(report("M1", T1, [player(1, "OldName"), player(2, "Other", clan="XYZ")]))
    tracker.merge_match(report("M2", T2, [player(1, "NewName")]))

    def names(needle):
        return _ids(tracker.query(period=TimePeriod.ALL_TIME, name_filter=needle, sorted_by=SortedBy(SortKey.NAME)))

    assert names("oldname") == [1]
    assert names("NEW") == [1]
    assert names("xy") == [2]
    assert names("") == [1, 2]
    assert names("nobody") == []


def test_sort_transitions():
    sorted_by = SortedBy()
    assert (sorted_by.key, sorted_by.order) == (SortKey.TIMES_ENCOUNTERED, SortOrder.DESC)

    sorted_by.transition_to(SortKey.TIMES_ENCOUNTERED)
    assert sorted_by.order is SortOrder.ASC

    sorted_by.transition_to(SortKey.NAME)
    assert (sorted_by.key, sorted_by.order) == (SortKey.NAME, SortOrder.ASC)

    sorted_by.transition_to(SortKey.NAME)
    assert sorted_by.order is SortOrder.DESC


def test_sort_orders_are_mirrors(tracker):
    tracker.merge_match(report("M1", T1, [player(1, "b"), player(2, "a"), player(3, "c")]))
    tracker.merge_match(report("M2", T2, [player(1, "b"), player(3, "c")]))

    for key in SortKey:
        asc = _ids(tracker.query(period=TimePeriod.ALL_TIME, sorted_by=SortedBy(key, SortOrder.ASC)))
        desc = _ids(tracker.query(period=TimePeriod.ALL_TIME, sorted_by=SortedBy(key, SortOrder.DESC)))
        assert asc == list(reversed(desc))

    by_count = _ids(tracker.query(period=TimePeriod.ALL_TIME))
    assert by_count == [3, 1, 2]
    by_name = _ids(tracker.query(period=TimePeriod.ALL_TIME, sorted_by=SortedBy(SortKey.NAME)))
    assert by_name == [2, 1, 3]


def test_query_uses_stored_state(tracker):
    now = datetime.now()
    tracker.merge_match(report("M1", now - timedelta(days=3), [player(1, "week")]))
    tracker.merge_match(report("M2", now - timedelta(hours=1), [player(2, "day")]))

    assert _ids(tracker.query()) == [2]

    tracker.filter_time_period = TimePeriod.LAST_WEEK
    tracker.toggle_sort(SortKey.NAME)
    assert _ids(tracker.query()) == [2, 1]

    tracker.name_filter = "WEE"
    assert _ids(tracker.query()) == [1]


@pytest.mark.parametrize(
    "encounters, expected",
    [
        (-1, Severity.NEUTRAL),
        (0, Severity.NEUTRAL),
        (1, Severity.NEUTRAL),
        (2, Severity.CAUTION),
        (3, Severity.CAUTION),
        (4, Severity.ELEVATED),
        (5, Severity.ELEVATED),
        (6, Severity.SEVERE),
        (40, Severity.SEVERE),
    ],
)
def test_severity_bands(encounters, expected):
    assert severity(encounters) is expected


def test_row_severity_uses_window_count(tracker):
    for idx in range(4):
        tracker.merge_match(report(f"M{idx}", T1 + timedelta(hours=idx), [player(9, "p")]))

    row = next(tracker.query(period=TimePeriod.ALL_TIME))
    assert row.severity is Severity.ELEVATED


def test_clear_keeps_query_state(tracker):
    tracker.merge_match(report("M1", T1, [player(1, "a")]))
    tracker.filter_time_period = TimePeriod.LAST_MONTH
    tracker.name_filter = "a"
    tracker.toggle_sort(SortKey.CLAN)

    tracker.clear()

    assert len(tracker) == 0
    assert tracker.by_time == {}
    assert tracker.filter_time_period is TimePeriod.LAST_MONTH
    assert tracker.name_filter == "a"
    assert tracker.sorted_by == SortedBy(SortKey.CLAN, SortOrder.ASC)
    assert list(tracker.query(period=TimePeriod.ALL_TIME)) == []


def test_dict_roundtrip_preserves_state(tracker):
    tracker.merge_match(report("M1", T1, [player(1, "Foo", clan="ABC", clan_id=11)]))
    tracker.merge_match(report("M2", T2, [player(1, "Bar", clan="ABC", clan_id=11), player(2, "x")]))
    tracker.set_notes(1, "torpedo spam")
    tracker.filter_time_period = TimePeriod.ALL_TIME
    tracker.toggle_sort(SortKey.NAME)

    restored = PlayerTracker.from_dict(tracker.to_dict())

    assert restored.to_dict() == tracker.to_dict()
    assert restored.by_id[1].aliases == {"Foo"}
    assert restored.by_id[1].notes == "torpedo spam"
    assert _ids(restored.query()) == _ids(tracker.query())


def test_from_dict_defaults_missing_fields():
    restored = PlayerTracker.from_dict(
        {
            "tracked_players": [{"id": 5}, {"name": "no id"}],
            "filter_time_period": "fortnight",
        }
    )

    assert list(restored.by_id) == [5]
    assert restored.by_id[5].last_name == ""
    assert restored.by_id[5].total_encounters == 0
    assert restored.filter_time_period is TimePeriod.LAST_DAY
    assert restored.sorted_by == SortedBy()
    assert restored.name_filter == ""


def test_from_dict_of_nothing():
    assert len(PlayerTracker.from_dict(None)) == 0
    assert len(PlayerTracker.from_dict({})) == 0


def test_live_arena_info_then_replay(tracker):
    roster = Roster(
        date_time=match_time(T1),
        players=[player(1, "me", relation=0), player(4, "Ally", clan="CLN", relation=1)],
        match_id="555",
    )

    assert tracker.merge_live_arena_info(roster) == 1
    tracked = tracker.by_id[4]
    assert tracked.encounter_timestamps == [T1]
    assert tracked.encountered_matches == {"555"}
    assert tracker.by_time == {T1: [4]}

    # The finished replay of the same match is a duplicate.
    assert tracker.merge_match(report("555", T1, [player(4, "Ally", clan="CLN", relation=1)])) == 0
    assert tracker.by_time == {T1: [4]}
    assert tracker.by_id[4].total_encounters == 1


def test_live_arena_info_keeps_known_clan(tracker):
    tracker.merge_match(report("M1", T1, [player(4, "Ally", clan="CLN")]))
    roster = Roster(date_time=match_time(T2), players=[player(4, "Ally2")])

    tracker.merge_live_arena_info(roster)

    tracked = tracker.by_id[4]
    assert tracked.last_name == "Ally2"
    assert tracked.aliases == {"Ally"}
    assert tracked.clan_name == "CLN"
    assert tracked.encounter_timestamps == [T1, T2]
    assert tracked.total_encounters == 2


def test_live_arena_info_without_time_uses_now(tracker):
    now = datetime(2024, 5, 5, 5, 5)
    tracker.merge_live_arena_info(Roster(date_time="", players=[player(8, "p")]), now=now)

    assert tracker.by_id[8].encounter_timestamps == [now]


def test_live_player_without_match_id_is_counted_and_windowed(tracker):
    now = datetime(2024, 5, 5, 5, 5)
    roster = Roster(date_time="", players=[player(9, "early")])

    assert tracker.merge_live_arena_info(roster, now=now) == 1
    assert tracker.merge_live_arena_info(roster, now=now) == 0

    rows = tracker.query(period=TimePeriod.LAST_DAY, now=now + timedelta(hours=1))
    assert [(r.player.id, r.total_encounters, r.encounters_in_window) for r in rows] == [(9, 1, 1)]
    assert tracker.by_time == {now: [9]}


def test_newer_match_without_clan_clears_it(tracker):
    tracker.merge_match(report("M1", T1, [player(7, "Foo", clan="ABC", clan_id=11)]))
    tracker.merge_match(report("M2", T2, [player(7, "Foo")]))

    tracked = tracker.by_id[7]
    assert (tracked.clan_name, tracked.clan_id) == ("", 0)
    assert _ids(tracker.query(period=TimePeriod.ALL_TIME, name_filter="abc")) == []


def test_from_dict_skips_unreadable_time_buckets(tracker, caplog):
    tracker.merge_match(report("M1", T1, [player(1, "a")]))
    data = tracker.to_dict()
    data["tracked_players_by_time"] += [["yesterday", [1]], [T2.isoformat(), ["x"]], 5]

    with caplog.at_level(logging.WARNING):
        restored = PlayerTracker.from_dict(data)

    assert restored.by_time == {T1: [1]}
    assert len(restored) == 1
    assert caplog.text.count("unreadable time bucket") == 3


def test_concurrent_merges_agree_with_a_serial_merge():
    def players_of(i):
        return [player(i % 7, f"p{i % 7}", clan=f"C{i % 3}"), player(50 + i % 4, f"q{i % 4}")]

    times = [T1 + timedelta(minutes=i) for i in range(60)]
    reports = [report(f"M{i}", when, players_of(i)) for i, when in enumerate(times)]
    rosters = [Roster(match_time(times[i]), players_of(i), match_id=f"M{i}") for i in range(0, 60, 3)]

    serial = PlayerTracker()
    for match in reports:
        serial.merge_match(match)

    shared = SharedTracker()
    consistent = []

    def merge(batch):
        for match in batch:
            shared.merge_match(match)

    def merge_live():
        for roster in rosters:
            shared.merge_live_arena_info(roster)

    def read():
        for _ in range(50):
            for row in shared.query(period=TimePeriod.ALL_TIME):
                consistent.append(
                    row.total_encounters == row.encounters_in_window == len(row.player.encounter_timestamps)
                )

    workers = [
        threading.Thread(target=merge, args=(reports[0::3],)),
        threading.Thread(target=merge, args=(reports[1::3],)),
        threading.Thread(target=merge, args=(reports[2::3],)),
        threading.Thread(target=merge, args=(list(reversed(reports)),)),
        threading.Thread(target=merge_live),
        threading.Thread(target=read),
    ]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=10)

    assert not any(worker.is_alive() for worker in workers)
    assert shared.to_dict() == serial.to_dict()
    assert all(consistent)


def test_shared_tracker_returns_copies():
    shared = SharedTracker()
    shared.merge_match(report("M1", T1, [player(1, "a")]))

    rows = shared.query(period=TimePeriod.ALL_TIME)
    rows[0].player.last_name = "changed"

    assert shared.snapshot().by_id[1].last_name == "a"
    assert len(shared) == 1


def test_shared_tracker_query_state():
    shared = SharedTracker()
    shared.set_query(period=TimePeriod.LAST_WEEK, name_filter="abc")
    returned = shared.toggle_sort(SortKey.CLAN)
    returned.order = SortOrder.DESC

    period, name_filter, sorted_by = shared.query_state()
    assert period is TimePeriod.LAST_WEEK
    assert name_filter == "abc"
    assert sorted_by == SortedBy(SortKey.CLAN, SortOrder.ASC)

    shared.set_query(name_filter="")
    assert shared.query_state()[0] is TimePeriod.LAST_WEEK
    assert shared.query_state()[1] == ""


def test_shared_tracker_set_notes_unknown_player():
    with pytest.raises(KeyError):
        SharedTracker().set_notes(99, "x")
