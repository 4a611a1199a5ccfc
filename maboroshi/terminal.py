"""
Terminal front end: cbreak key input and a full-screen ANSI view.

The UI never touches playback state directly. Keys become intents submitted
to the orchestrator, and every snapshot the orchestrator publishes is drawn.
"""
import asyncio
import codecs
import os
import re
import shutil
import signal
import sys
import termios
import tty
import unicodedata
from functools import lru_cache
from typing import Dict, List, Optional, TextIO, Tuple

from maboroshi.logging_config import get_logger
from maboroshi.models import PlaybackMode, PlayerStatus, Track
from maboroshi.orchestrator import (
    ChangeVolume,
    ClearSearch,
    Orchestrator,
    PlayFavorite,
    Quit,
    RemoveFavorite,
    Search,
    SearchPage,
    Seek,
    SelectTrack,
    StartQueue,
    Stop,
    ToggleFavorite,
    ToggleMode,
    TogglePause,
    UiSnapshot,
)

logger = get_logger('terminal')

C_HEADER = "\033[1m"
C_SECONDARY = "\033[90m"
C_SELECTION = "\033[7m"
C_ERROR = "\033[31m"
C_ACCENT = "\033[36m"
C_RESET = "\033[0m"

LOG_LINES = 4
HISTORY_SIZE = 50
PROGRESS_WIDTH = 30

FAVORITES = "favorites"
RESULTS = "results"


class Icons:
    """Collection of Unicode icons used in the UI."""

    PLAY: str = "\uf04b"
    PAUSE: str = "\uf04c"
    STOP: str = "\uf04d"
    LOADING: str = "\uf110"
    HEART: str = "\uf004"
    MUSIC_NOTE: str = "\uf001"
    SEARCH: str = "\uf002"
    REPEAT: str = "\uf079"
    REPEAT_ONE: str = "\uf01d"
    SEQUENTIAL: str = "\uf0cb"


MODE_ICONS = {
    PlaybackMode.SINGLE_LOOP: Icons.REPEAT_ONE,
    PlaybackMode.LIST_LOOP: Icons.REPEAT,
    PlaybackMode.SEQUENTIAL: Icons.SEQUENTIAL,
}

STATUS_ICONS = {
    PlayerStatus.IDLE: Icons.STOP,
    PlayerStatus.LOADING: Icons.LOADING,
    PlayerStatus.PLAYING: Icons.PLAY,
    PlayerStatus.PAUSED: Icons.PAUSE,
}

ESCAPE_SEQUENCES = {
    "\033[A": "up",
    "\033[B": "down",
    "\033[C": "right",
    "\033[D": "left",
    "\033OA": "up",
    "\033OB": "down",
    "\033OC": "right",
    "\033OD": "left",
}

HELP_LINE = (
    "s search  enter play  space pause  m mode  f fav  x remove  "
    "p queue  S stop  ←/→ seek  +/- vol  [/] page  tab panel  q quit"
)


def parse_keys(data: str) -> List[str]:
    """Split raw terminal input into key names.

    Arrow keys become ``up``/``down``/``left``/``right``; Enter, Backspace,
    Tab and a lone Escape get names too. Anything else is the character itself.
    """
    keys = []
    i = 0
    while i < len(data):
        ch = data[i]
        if ch == "\033":
            seq = data[i:i + 3]
            if seq in ESCAPE_SEQUENCES:
                keys.append(ESCAPE_SEQUENCES[seq])
                i += 3
                continue
            if data.startswith("\033[", i):
                # Unknown CSI sequence: skip through its final byte.
                j = i + 2
                while j < len(data) and not "@" <= data[j] <= "~":
                    j += 1
                i = j + 1
                continue
            keys.append("escape")
        elif ch in ("\r", "\n"):
            keys.append("enter")
        elif ch in ("\x7f", "\b"):
            keys.append("backspace")
        elif ch == "\t":
            keys.append("tab")
        else:
            keys.append(ch)
        i += 1
    return keys


def _strip_ansi(text: str) -> str:
    """Remove ANSI escape codes from text for accurate length calculation."""
    return re.sub(r"\x1b\[[0-?]*[ -/]*[@-~]", "", text)


@lru_cache(maxsize=4096)
def _char_display_width(ch: str) -> int:
    """Return display width of a single Unicode character (0, 1 or 2)."""
    if not ch:
        return 0
    cat = unicodedata.category(ch)
    if cat in ("Mn", "Me", "Cf"):
        return 0
    ea = unicodedata.east_asian_width(ch)
    if ea in ("F", "W"):
        return 2
    return 1


def _display_width(text: str) -> int:
    """Return the visible terminal width of `text`, ignoring ANSI escapes."""
    return sum(_char_display_width(ch) for ch in _strip_ansi(text))


def _truncate_to_width(text: str, max_width: int, ellipsis: str = "...") -> str:
    """Truncate plain `text` to fit in `max_width` display columns."""
    if max_width <= 0:
        return ""
    if _display_width(text) <= max_width:
        return text

    e_width = _display_width(ellipsis)
    target = max_width if e_width >= max_width else max_width - e_width

    out = []
    cur = 0
    for ch in text:
        w = _char_display_width(ch)
        if cur + w > target:
            break
        out.append(ch)
        cur += w

    if e_width >= max_width:
        return "".join(out)
    return "".join(out) + ellipsis


def _format_duration(seconds: Optional[float]) -> str:
    """Format duration in MM:SS format, or --:-- when unknown."""
    if seconds is None:
        return "--:--"
    mins = int(seconds) // 60
    secs = int(seconds) % 60
    return f"{mins:02d}:{secs:02d}"


def _progress_bar(fraction: float, width: int) -> str:
    filled = int(round(fraction * width))
    return "━" * filled + "─" * (width - filled)


class TerminalUI:
    """Key handling and drawing for one terminal."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        source_label: str = "yt",
        stdin: Optional[TextIO] = None,
        stdout: Optional[TextIO] = None,
    ):
        self.orchestrator = orchestrator
        self.source_label = source_label
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout

        self.focus = FAVORITES
        self.cursors: Dict[str, int] = {FAVORITES: 0, RESULTS: 0}
        self.scroll: Dict[str, int] = {FAVORITES: 0, RESULTS: 0}
        self.input_mode = False
        self.input_buffer = ""
        self.history: List[str] = []
        self._history_index: Optional[int] = None

        self._snapshot: Optional[UiSnapshot] = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._fd: Optional[int] = None
        self._saved_attrs = None

    # ---- terminal setup ----

    def attach(self) -> None:
        """Enter cbreak mode and start reacting to keys and snapshots."""
        loop = asyncio.get_running_loop()
        self._fd = self.stdin.fileno()
        self._saved_attrs = termios.tcgetattr(self._fd)
        tty.setcbreak(self._fd)
        # Hide cursor for clean UI display
        self.stdout.write("\033[?25l")
        loop.add_reader(self._fd, self._on_readable)
        loop.add_signal_handler(signal.SIGWINCH, self.redraw)
        self.orchestrator.listeners.append(self.on_snapshot)

    def detach(self) -> None:
        """Restore the terminal. Safe to call more than once."""
        if self._fd is None:
            return
        loop = asyncio.get_running_loop()
        loop.remove_reader(self._fd)
        loop.remove_signal_handler(signal.SIGWINCH)
        if self.on_snapshot in self.orchestrator.listeners:
            self.orchestrator.listeners.remove(self.on_snapshot)
        termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_attrs)
        self._fd = None
        self.stdout.write("\033[?25h\033[2J\033[H")
        self.stdout.flush()

    def _on_readable(self) -> None:
        try:
            data = os.read(self._fd, 1024)
        except OSError as e:
            logger.error(f"Failed to read from terminal: {e}")
            self.orchestrator.submit(Quit())
            return
        if not data:
            self.orchestrator.submit(Quit())
            return
        for key in parse_keys(self._decoder.decode(data)):
            for intent in self.handle_key(key):
                self.orchestrator.submit(intent)
        self.redraw()

    # ---- snapshots ----

    def on_snapshot(self, snapshot: UiSnapshot) -> None:
        self._snapshot = snapshot
        if self.focus == RESULTS and not snapshot.search.active:
            self.focus = FAVORITES
        for panel in (FAVORITES, RESULTS):
            size = len(self._items(snapshot, panel))
            self.cursors[panel] = max(0, min(self.cursors[panel], size - 1))
        self.redraw()

    def _current(self) -> UiSnapshot:
        if self._snapshot is None:
            self._snapshot = self.orchestrator.snapshot()
        return self._snapshot

    @staticmethod
    def _items(snapshot: UiSnapshot, panel: str) -> Tuple[Track, ...]:
        return snapshot.queue if panel == FAVORITES else snapshot.search.results

    def selected_track(self) -> Optional[Track]:
        items = self._items(self._current(), self.focus)
        cursor = self.cursors[self.focus]
        if 0 <= cursor < len(items):
            return items[cursor]
        return None

    # ---- keys ----

    def handle_key(self, key: str) -> List[object]:
        """Update view state for ``key`` and return the intents it produces."""
        if self.input_mode:
            return self._handle_input_key(key)

        track = self.selected_track()
        if key == "q":
            return [Quit()]
        elif key == "s":
            self.input_mode = True
            self.input_buffer = ""
            self._history_index = None
        elif key == "tab":
            if self.focus == FAVORITES and self._current().search.active:
                self.focus = RESULTS
            else:
                self.focus = FAVORITES
        elif key == "escape":
            if self.focus == RESULTS:
                self.focus = FAVORITES
                return [ClearSearch()]
        elif key in ("up", "k"):
            self._move(-1)
        elif key in ("down", "j"):
            self._move(1)
        elif key == "enter":
            if track is None:
                return []
            if self.focus == FAVORITES:
                return [PlayFavorite(self.cursors[FAVORITES])]
            return [SelectTrack(track)]
        elif key == " ":
            return [TogglePause()]
        elif key == "m":
            return [ToggleMode()]
        elif key == "f":
            if track is not None:
                return [ToggleFavorite(track)]
        elif key == "x":
            if self.focus == FAVORITES and track is not None:
                return [RemoveFavorite(self.cursors[FAVORITES])]
        elif key == "p":
            return [StartQueue()]
        elif key == "S":
            return [Stop()]
        elif key == "right":
            return [Seek(1)]
        elif key == "left":
            return [Seek(-1)]
        elif key in ("+", "="):
            return [ChangeVolume(1)]
        elif key == "-":
            return [ChangeVolume(-1)]
        elif key == "]":
            return [SearchPage(1)]
        elif key == "[":
            return [SearchPage(-1)]
        return []

    def _handle_input_key(self, key: str) -> List[object]:
        if key == "enter":
            keyword = self.input_buffer.strip()
            self.input_mode = False
            self.input_buffer = ""
            if not keyword:
                return []
            self._remember(keyword)
            self.focus = RESULTS
            self.cursors[RESULTS] = 0
            self.scroll[RESULTS] = 0
            return [Search(keyword)]
        elif key == "escape":
            self.input_mode = False
            self.input_buffer = ""
        elif key == "backspace":
            self.input_buffer = self.input_buffer[:-1]
        elif key == "up":
            self._recall(-1)
        elif key == "down":
            self._recall(1)
        elif len(key) == 1 and key.isprintable():
            self.input_buffer += key
        return []

    def _move(self, direction: int) -> None:
        size = len(self._items(self._current(), self.focus))
        if size:
            self.cursors[self.focus] = max(0, min(size - 1, self.cursors[self.focus] + direction))

    def _remember(self, keyword: str) -> None:
        if keyword in self.history:
            self.history.remove(keyword)
        self.history.append(keyword)
        del self.history[:-HISTORY_SIZE]

    def _recall(self, direction: int) -> None:
        """Step through search history; newest is at the end."""
        if not self.history:
            return
        if self._history_index is None:
            if direction > 0:
                return
            index = len(self.history) - 1
        else:
            index = self._history_index + direction
        if index >= len(self.history):
            self._history_index = None
            self.input_buffer = ""
            return
        self._history_index = max(0, index)
        self.input_buffer = self.history[self._history_index]

    # ---- drawing ----

    def redraw(self) -> None:
        cols, rows = shutil.get_terminal_size()
        lines = self.render(self._current(), rows, cols)
        self.stdout.write("\033[2J\033[H" + "\n".join(lines))
        self.stdout.flush()

    def render(self, snapshot: UiSnapshot, rows: int, cols: int) -> List[str]:
        """Build the screen as a list of lines."""
        width = max(20, cols - 2)
        session = snapshot.session
        lines = []

        mode = f"{MODE_ICONS[session.mode]} {session.mode.label}"
        lines.append(
            f" {Icons.MUSIC_NOTE}  {C_HEADER}maboroshi{C_RESET}"
            f"{C_SECONDARY}  {mode}  vol {session.volume}%  [{self.source_label}]{C_RESET}"
        )

        if session.track is not None:
            title = _truncate_to_width(session.track.display_name, width - 4)
            lines.append(f" {STATUS_ICONS[session.status]}  {C_ACCENT}{title}{C_RESET}")
        else:
            lines.append(f" {Icons.STOP}  {C_SECONDARY}Nothing playing{C_RESET}")

        if session.status is PlayerStatus.LOADING:
            lines.append(f"    {C_SECONDARY}Loading...{C_RESET}")
        else:
            bar = _progress_bar(session.progress, PROGRESS_WIDTH)
            lines.append(
                f"    {_format_duration(session.elapsed)} {bar} {_format_duration(session.total)}"
            )

        if self.input_mode:
            lines.append(f" {Icons.SEARCH}  Search: {self.input_buffer}_")
        else:
            lines.append(self._panel_title(snapshot))

        if snapshot.fatal_error:
            lines.append(f" {C_ERROR}{_truncate_to_width(snapshot.fatal_error, width)}{C_RESET}")

        log = list(snapshot.log[-LOG_LINES:])
        # header area, log area and help line
        visible = max(1, rows - len(lines) - len(log) - 2)
        lines.extend(self._panel_lines(snapshot, visible, width))

        lines.append(f"{C_SECONDARY}{'─' * width}{C_RESET}")
        for entry in log:
            lines.append(f" {C_SECONDARY}{_truncate_to_width(entry, width - 1)}{C_RESET}")
        lines.append(f" {C_SECONDARY}{_truncate_to_width(HELP_LINE, width - 1)}{C_RESET}")
        return lines

    def _panel_title(self, snapshot: UiSnapshot) -> str:
        favorites = f"Favorites ({len(snapshot.queue)})"
        search = snapshot.search
        if not search.active:
            return f" {C_HEADER}{favorites}{C_RESET}"
        results = f"Results: {search.keyword} (page {search.page})"
        if search.loading:
            results += " ..."
        if self.focus == FAVORITES:
            return f" {C_HEADER}{favorites}{C_RESET}  {C_SECONDARY}{results}{C_RESET}"
        return f" {C_SECONDARY}{favorites}{C_RESET}  {C_HEADER}{results}{C_RESET}"

    def _panel_lines(self, snapshot: UiSnapshot, visible: int, width: int) -> List[str]:
        items = self._items(snapshot, self.focus)
        if not items:
            if self.focus == FAVORITES:
                empty = "No favorites yet. Press s to search, f to add."
            else:
                empty = "Searching..." if snapshot.search.loading else "No results"
            return [f"   {C_SECONDARY}{empty}{C_RESET}"]

        cursor = self.cursors[self.focus]
        offset = self.scroll[self.focus]
        if cursor < offset:
            offset = cursor
        elif cursor >= offset + visible:
            offset = cursor - visible + 1
        self.scroll[self.focus] = offset

        playing = snapshot.session.track
        favorite_ids = {track.identifier for track in snapshot.queue}
        lines = []
        for index in range(offset, min(len(items), offset + visible)):
            track = items[index]
            marker = Icons.PLAY if playing is not None and track == playing else " "
            heart = Icons.HEART if self.focus == RESULTS and track.identifier in favorite_ids else " "
            duration = _format_duration(track.duration) if track.duration else ""
            name = _truncate_to_width(track.display_name, width - 12 - len(duration))
            name += " " * max(0, width - 12 - len(duration) - _display_width(name))
            text = f"{name} {duration}"
            if index == cursor:
                text = f"{C_SELECTION}{text}{C_RESET}"
            lines.append(f" {marker} {heart} {index + 1:>3} {text}")
        return lines
