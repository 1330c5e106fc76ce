from __future__ import annotations

import argparse
import csv
import logging
import sys
import time
from pathlib import Path

import requests

from .core.driver import Driver, run_headless
from .core.log import setup_logging
from .core.paths import get_data_dir, looks_like_game_dir
from .core.settings import load_settings, load_tracker, save_settings, store_tracker
from .core.tracker import SortedBy, SortKey, SortOrder, TimePeriod
from .core.updater import APP_VERSION, fetch_latest_release, is_newer


logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="WoWs Replay Tool (CLI)")
    parser.add_argument("--game-dir", type=Path, help="World of Warships install directory")
    parser.add_argument("--replays-dir", type=Path, help="Replay folder (default: <game-dir>/replays)")
    parser.add_argument("--watch", action="store_true", help="Watch the replay folder and track players until Ctrl+C")
    parser.add_argument("--no-auto-load", action="store_true", help="Do not load each new replay as it appears")
    parser.add_argument("--populate", action="store_true", help="Merge every replay in the folder into the tracker")
    parser.add_argument("--list", action="store_true", help="List tracked players")
    parser.add_argument(
        "--period",
        choices=[p.value for p in TimePeriod],
        default="",
        help="Time window for --list (default: saved setting)",
    )
    parser.add_argument("--filter", type=str, default=None, help="Filter by name, alias or clan (substring)")
    parser.add_argument("--sort", choices=[k.value for k in SortKey], default="", help="Sort column for --list")
    parser.add_argument("--desc", action="store_true", help="Sort descending")
    parser.add_argument("--export-csv", type=Path, help="Export the listed players to CSV")
    parser.add_argument("--clear-stats", action="store_true", help="Forget every tracked player")
    parser.add_argument("--set-notes", type=int, help="Player id whose notes to set")
    parser.add_argument("--notes-value", type=str, default="", help="Notes value")
    parser.add_argument("--check-update", action="store_true", help="Check GitHub for a newer release")
    parser.add_argument("--download-update", action="store_true", help="Download the newer release if there is one")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def _wait_for_slot(driver: Driver, tick_s: float = 0.1) -> None:
    while driver.slot.busy:
        driver.tick()
        progress = driver.slot.progress
        if progress is not None:
            print(f"\r{progress.fraction * 100:5.1f}% {progress.label[:60]:<60}", end="", flush=True)
        time.sleep(tick_s)
    if driver.notification is not None:
        print()
        stream = sys.stderr if driver.notification.is_error else sys.stdout
        print(driver.notification.message, file=stream)


def _print_players(rows, export_csv: Path | None) -> None:
    records = []
    for row in rows:
        player = row.player
        last = player.last_encountered.strftime("%Y-%m-%d %H:%M:%S") if player.last_encountered else ""
        aliases = ", ".join(sorted(player.aliases))
        print(
            f"{player.clan_name:<6} | {player.last_name:<24} | {player.id:>10} | "
            f"{row.total_encounters:>4} | {row.encounters_in_window:>4} | {last} | {aliases} | {row.severity.value}"
        )
        records.append(
            {
                "clan": player.clan_name,
                "name": player.last_name,
                "id": player.id,
                "total_encounters": row.total_encounters,
                "encounters_in_range": row.encounters_in_window,
                "last_encountered": last,
                "aliases": aliases,
                "notes": player.notes,
            }
        )

    if export_csv:
        with export_csv.open("w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(
                f,
                fieldnames=[
                    "clan",
                    "name",
                    "id",
                    "total_encounters",
                    "encounters_in_range",
                    "last_encountered",
                    "aliases",
                    "notes",
                ],
            )
            writer.writeheader()
            writer.writerows(records)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)
    settings = load_settings()

    if args.game_dir:
        settings["game_dir"] = str(args.game_dir.resolve())
    if args.replays_dir:
        settings["replays_dir"] = str(args.replays_dir.resolve())
    if args.no_auto_load:
        settings["auto_load_latest_replay"] = False

    tracker = load_tracker(settings)

    if args.clear_stats:
        tracker.clear()

    if args.set_notes is not None:
        try:
            tracker.set_notes(args.set_notes, args.notes_value)
        except KeyError:
            print(f"Player {args.set_notes} is not tracked", file=sys.stderr)
            return 2

    if args.check_update or args.download_update:
        try:
            release = fetch_latest_release()
        except requests.RequestException as exc:
            logger.error("Update check failed: %s", exc)
            return 1
        if release is None or not is_newer(release.tag, APP_VERSION):
            print(f"Up to date ({APP_VERSION})")
        else:
            print(f"Update available: {release.tag}")
            if args.download_update:
                driver = Driver(settings, tracker=tracker, background=False)
                driver.download_update(release.asset_url, get_data_dir() / "updates")
                _wait_for_slot(driver)

    if args.populate or args.watch:
        if not settings.get("game_dir"):
            raise SystemExit("--game-dir is required for --populate and --watch")
        if not looks_like_game_dir(Path(settings["game_dir"])):
            logger.warning("%s has no bin/ directory; is it a game install?", settings["game_dir"])
        driver = Driver(settings, tracker=tracker, background=args.watch)
        try:
            driver.load_game_data()
            _wait_for_slot(driver)
            if args.populate and len(driver.replays):
                driver.populate_tracker()
                _wait_for_slot(driver)
            if args.watch:
                print("Watching for new replays. Press Ctrl+C to stop")
                run_headless(driver, int(settings.get("tick_ms", 100)), lambda: False)
        except KeyboardInterrupt:
            print("\nStopping...")
        finally:
            driver.shutdown()

    if args.list:
        period = TimePeriod(args.period) if args.period else None
        sorted_by = None
        if args.sort:
            sorted_by = SortedBy(SortKey(args.sort), SortOrder.DESC if args.desc else SortOrder.ASC)
        _print_players(tracker.query(period=period, name_filter=args.filter, sorted_by=sorted_by), args.export_csv)

    store_tracker(settings, tracker)
    save_settings(settings)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
