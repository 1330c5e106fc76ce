from __future__ import annotations

if __package__ is None or __package__ == "":
    import sys
    from pathlib import Path

    sys.path.append(str(Path(__file__).resolve().parents[1]))

import logging
import threading
from pathlib import Path
from queue import Queue
from typing import Any, Dict, List

import tkinter as tk
from tkinter import ttk, filedialog, messagebox

from wowsreplaytool.core.driver import Driver
from wowsreplaytool.core.log import setup_logging
from wowsreplaytool.core.paths import get_data_dir, looks_like_game_dir
from wowsreplaytool.core.settings import load_settings, save_settings
from wowsreplaytool.core.tasks import TaskRejected
from wowsreplaytool.core.tracker import Severity, SortKey, SortOrder, TimePeriod, TrackerRow
from wowsreplaytool.core.updater import APP_VERSION, fetch_latest_release, is_newer


logger = logging.getLogger(__name__)

SEVERITY_COLORS = {
    Severity.NEUTRAL: "#ffffff",
    Severity.CAUTION: "#fff4c2",
    Severity.ELEVATED: "#ffd8a8",
    Severity.SEVERE: "#ffb3b3",
}

COLUMNS = ("clan", "name", "times_encountered", "times_in_range", "last_encountered", "aliases", "notes")

COLUMN_SORT_KEYS = {
    "clan": SortKey.CLAN,
    "name": SortKey.NAME,
    "times_encountered": SortKey.TIMES_ENCOUNTERED,
    "times_in_range": SortKey.TIMES_IN_RANGE,
    "last_encountered": SortKey.LAST_ENCOUNTERED,
}

HEADINGS = {
    "clan": "Clan",
    "name": "Player Name",
    "times_encountered": "Times Encountered",
    "times_in_range": "Times Encountered (Range)",
    "last_encountered": "Last Encountered",
    "aliases": "Aliases",
    "notes": "Notes",
}


def format_row(row: TrackerRow) -> tuple:
    player = row.player
    last = player.last_encountered.strftime("%Y-%m-%d %H:%M") if player.last_encountered else ""
    return (
        player.clan_name,
        player.last_name,
        row.total_encounters,
        row.encounters_in_window,
        last,
        ", ".join(sorted(player.aliases)),
        player.notes,
    )


class App:
    def __init__(self, root: tk.Tk) -> None:
        self.root = root
        self.root.title(f"WoWs Replay Tool {APP_VERSION}")
        self.root.geometry("1100x720")
        self.root.minsize(900, 560)

        self.settings: Dict[str, Any] = load_settings()
        self.driver = Driver(self.settings)
        self.driver.on_update_downloaded = self._on_update_downloaded
        self.tick_ms = max(int(self.settings.get("tick_ms", 100)), 10)

        period, name_filter, _sorted_by = self.driver.tracker.query_state()
        self.game_dir = tk.StringVar(value=self.settings.get("game_dir", ""))
        self.period_var = tk.StringVar(value=period.description)
        self.filter_var = tk.StringVar(value=name_filter)
        self.auto_load = tk.BooleanVar(value=self.driver.auto_load_latest)
        self.status = tk.StringVar(value="Ready")
        self.progress_var = tk.DoubleVar(value=0.0)
        self._last_rows: List[tuple] = []
        self.update_queue: Queue[Any] = Queue()

        self._setup_styles()
        self._build_ui()
        self._refresh_list()
        self.root.protocol("WM_DELETE_WINDOW", self._on_close)
        if self.settings.get("game_dir"):
            self.root.after(300, self._load_game_data)
        if self.settings.get("check_for_updates", True):
            self.root.after(1000, self._check_for_update)
        self.root.after(self.tick_ms, self._tick)

    def _build_ui(self) -> None:
        frame = ttk.Frame(self.root, padding=12)
        frame.pack(fill=tk.BOTH, expand=True)

        folder_row = ttk.Frame(frame)
        folder_row.pack(fill=tk.X, pady=4)
        ttk.Label(folder_row, text="Game Folder:").pack(side=tk.LEFT)
        ttk.Entry(folder_row, textvariable=self.game_dir, width=70).pack(side=tk.LEFT, padx=6)
        ttk.Button(folder_row, text="Browse", command=self._browse_folder).pack(side=tk.LEFT)
        ttk.Button(folder_row, text="Load Game Data", command=self._load_game_data).pack(side=tk.LEFT, padx=6)
        ttk.Checkbutton(
            folder_row, text="Auto-load latest replay", variable=self.auto_load, command=self._toggle_auto_load
        ).pack(side=tk.LEFT, padx=6)

        filter_row = ttk.Frame(frame)
        filter_row.pack(fill=tk.X, pady=4)
        ttk.Label(filter_row, text="Time Range:").pack(side=tk.LEFT)
        period_combo = ttk.Combobox(
            filter_row,
            textvariable=self.period_var,
            values=[p.description for p in TimePeriod],
            state="readonly",
            width=16,
        )
        period_combo.pack(side=tk.LEFT, padx=6)
        period_combo.bind("<<ComboboxSelected>>", lambda _e: self._on_query_change())
        ttk.Label(filter_row, text="Filter:").pack(side=tk.LEFT, padx=(12, 0))
        filter_entry = ttk.Entry(filter_row, textvariable=self.filter_var, width=30)
        filter_entry.pack(side=tk.LEFT, padx=6)
        filter_entry.bind("<KeyRelease>", lambda _e: self._on_query_change())
        ttk.Button(filter_row, text="Populate From Replays", command=self._populate).pack(side=tk.LEFT, padx=6)
        ttk.Button(filter_row, text="Cancel", command=self.driver.cancel_populate).pack(side=tk.LEFT)
        ttk.Button(filter_row, text="Clear Stats", style="Danger.TButton", command=self._clear_stats).pack(
            side=tk.RIGHT
        )

        tree_frame = ttk.Frame(frame)
        tree_frame.pack(fill=tk.BOTH, expand=True, pady=6)
        self.tree = ttk.Treeview(tree_frame, columns=COLUMNS, show="headings", height=18, selectmode="browse")
        for column in COLUMNS:
            if column in COLUMN_SORT_KEYS:
                self.tree.heading(column, text=HEADINGS[column], command=lambda c=column: self._sort_by(c))
            else:
                self.tree.heading(column, text=HEADINGS[column])
        self.tree.column("clan", width=70, anchor=tk.CENTER, stretch=False)
        self.tree.column("name", width=200, stretch=False)
        self.tree.column("times_encountered", width=130, anchor=tk.CENTER, stretch=False)
        self.tree.column("times_in_range", width=170, anchor=tk.CENTER, stretch=False)
        self.tree.column("last_encountered", width=140, stretch=False)
        self.tree.column("aliases", width=200)
        self.tree.column("notes", width=200)
        for level, color in SEVERITY_COLORS.items():
            self.tree.tag_configure(level.value, background=color)

        y_scroll = ttk.Scrollbar(tree_frame, orient=tk.VERTICAL, command=self.tree.yview)
        self.tree.configure(yscrollcommand=y_scroll.set)
        self.tree.grid(row=0, column=0, sticky="nsew")
        y_scroll.grid(row=0, column=1, sticky="ns")
        tree_frame.rowconfigure(0, weight=1)
        tree_frame.columnconfigure(0, weight=1)
        self.tree.bind("<Double-1>", self._edit_notes)

        status_row = ttk.Frame(frame)
        status_row.pack(fill=tk.X)
        ttk.Label(status_row, textvariable=self.status).pack(side=tk.LEFT)
        self.progress = ttk.Progressbar(
            status_row, orient=tk.HORIZONTAL, length=260, mode="determinate", variable=self.progress_var
        )
        self.progress.pack(side=tk.RIGHT)
        self._update_headings()

    def _setup_styles(self) -> None:
        style = ttk.Style(self.root)
        if "clam" in style.theme_names():
            style.theme_use("clam")
        style.configure("Treeview", rowheight=24)
        style.configure("Treeview.Heading", font=("Segoe UI", 10, "bold"))
        style.configure("Danger.TButton", background="#b42318", foreground="white", borderwidth=0)
        style.map("Danger.TButton", background=[("active", "#912018")], foreground=[("active", "white")])

    def _browse_folder(self) -> None:
        folder = filedialog.askdirectory(title="Select World of Warships Folder")
        if folder:
            self.game_dir.set(folder)

    def _start(self, action) -> None:
        try:
            action()
        except TaskRejected as exc:
            messagebox.showinfo("Busy", str(exc))
        except ValueError as exc:
            messagebox.showwarning("Missing Data", str(exc))

    def _load_game_data(self) -> None:
        folder = self.game_dir.get().strip()
        if not folder:
            messagebox.showwarning("Missing Folder", "Please select the game folder first.")
            return
        if not looks_like_game_dir(Path(folder)) and not messagebox.askyesno(
            "Game Folder", "This folder has no bin/ directory. Load it anyway?"
        ):
            return
        if folder != self.settings.get("game_dir"):
            self.settings["replays_dir"] = ""
        self._start(lambda: self.driver.load_game_data(Path(folder)))

    def _populate(self) -> None:
        self._start(self.driver.populate_tracker)

    def _clear_stats(self) -> None:
        if not messagebox.askyesno("Clear Stats", "Forget every tracked player?"):
            return
        self.driver.tracker.clear()
        self.driver.save()
        self._refresh_list()

    def _toggle_auto_load(self) -> None:
        self.driver.auto_load_latest = bool(self.auto_load.get())

    def _on_query_change(self) -> None:
        period = next((p for p in TimePeriod if p.description == self.period_var.get()), None)
        self.driver.tracker.set_query(period=period, name_filter=self.filter_var.get())
        self._refresh_list()

    def _sort_by(self, column: str) -> None:
        self.driver.tracker.toggle_sort(COLUMN_SORT_KEYS[column])
        self._update_headings()
        self._refresh_list()

    def _update_headings(self) -> None:
        _period, _name_filter, sorted_by = self.driver.tracker.query_state()
        arrow = " ▲" if sorted_by.order is SortOrder.ASC else " ▼"
        for column, key in COLUMN_SORT_KEYS.items():
            text = HEADINGS[column] + (arrow if key is sorted_by.key else "")
            self.tree.heading(column, text=text)

    def _edit_notes(self, _event: Any) -> None:
        selection = self.tree.selection()
        if not selection:
            return
        player_id = int(selection[0])
        current = self.tree.item(selection[0], "values")[6]
        popup = tk.Toplevel(self.root)
        popup.title("Notes")
        value = tk.StringVar(value=current)
        ttk.Entry(popup, textvariable=value, width=50).pack(padx=10, pady=10)

        def save() -> None:
            try:
                self.driver.tracker.set_notes(player_id, value.get())
            except KeyError:
                logger.warning("Player %d disappeared before notes were saved", player_id)
            popup.destroy()
            self._refresh_list()

        ttk.Button(popup, text="Save", command=save).pack(pady=(0, 10))

    def _refresh_list(self) -> None:
        rows = self.driver.tracker.query()
        values = [(row.player.id, format_row(row), row.severity.value) for row in rows]
        if values == self._last_rows:
            return
        self._last_rows = values
        self.tree.delete(*self.tree.get_children(""))
        for player_id, row_values, tag in values:
            self.tree.insert("", tk.END, iid=str(player_id), values=row_values, tags=(tag,))

    def _tick(self) -> None:
        try:
            self.driver.tick()
        except Exception:  # noqa: BLE001
            logger.exception("Driver tick failed")
        self._update_status()
        self._refresh_list()
        self.root.after(self.tick_ms, self._tick)

    def _update_status(self) -> None:
        kind = self.driver.slot.running_kind
        progress = self.driver.slot.progress
        if kind is not None:
            label = f" {progress.label}" if progress is not None and progress.label else ""
            self.status.set(f"{kind.value.capitalize()}...{label}")
            self.progress_var.set((progress.fraction if progress is not None else 0.0) * 100.0)
            return
        notification = self.driver.notification
        if notification is None:
            self.status.set(f"Tracking {len(self.driver.tracker)} players")
            self.progress_var.set(0.0)
            return
        self.status.set(notification.message)
        if notification.is_error:
            self.driver.dismiss_notification()
            messagebox.showerror("Error", notification.message)

    def _check_for_update(self) -> None:
        thread = threading.Thread(target=self._update_worker, daemon=True)
        thread.start()
        self.root.after(200, self._poll_update)

    def _update_worker(self) -> None:
        try:
            self.update_queue.put(("done", fetch_latest_release()))
        except Exception as exc:  # noqa: BLE001
            self.update_queue.put(("error", str(exc)))

    def _poll_update(self) -> None:
        if self.update_queue.empty():
            self.root.after(200, self._poll_update)
            return
        status, release = self.update_queue.get()
        if status == "error":
            logger.info("Update check failed: %s", release)
            return
        if release is None or not is_newer(release.tag, APP_VERSION):
            return
        if messagebox.askyesno("Update Available", f"Version {release.tag} is available. Download it now?"):
            self._start(lambda: self.driver.download_update(release.asset_url, get_data_dir() / "updates"))

    def _on_update_downloaded(self, path: Path) -> None:
        messagebox.showinfo("Update Downloaded", f"The new version was saved to:\n{path}")

    def _on_close(self) -> None:
        try:
            self.driver.shutdown()
            save_settings(self.settings)
        finally:
            self.root.destroy()


def main() -> None:
    setup_logging()
    root = tk.Tk()
    App(root)
    root.mainloop()


if __name__ == "__main__":
    main()
