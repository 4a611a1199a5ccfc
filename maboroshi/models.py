"""
Core data types shared by the playback components.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Source(Enum):
    """Sites the extractor can search and resolve."""

    YOUTUBE = "yt"
    BILIBILI = "bili"
    SOUNDCLOUD = "sc"

    @property
    def search_prefix(self) -> str:
        return f"{self.value}search"

    @classmethod
    def parse(cls, value: str) -> "Source":
        """Parse a config/favorites string such as ``yt`` or ``ytsearch``."""
        normalized = value.strip().lower()
        if normalized.endswith("search"):
            normalized = normalized[: -len("search")]
        aliases = {
            "youtube": cls.YOUTUBE,
            "bilibili": cls.BILIBILI,
            "soundcloud": cls.SOUNDCLOUD,
        }
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


class PlaybackMode(Enum):
    SINGLE_LOOP = "single_loop"
    LIST_LOOP = "list_loop"
    SEQUENTIAL = "sequential"

    @property
    def label(self) -> str:
        return _MODE_LABELS[self]

    def next(self) -> "PlaybackMode":
        """Return the mode after this one in the toggle cycle."""
        order = list(PlaybackMode)
        return order[(order.index(self) + 1) % len(order)]

    @classmethod
    def parse(cls, value: str) -> "PlaybackMode":
        normalized = value.strip().lower()
        try:
            return _MODE_ALIASES[normalized]
        except KeyError:
            raise ValueError(f"Unknown playback mode: {value!r}") from None


_MODE_LABELS = {
    PlaybackMode.SINGLE_LOOP: "single loop",
    PlaybackMode.LIST_LOOP: "list loop",
    PlaybackMode.SEQUENTIAL: "sequential",
}

_MODE_ALIASES = {
    "single": PlaybackMode.SINGLE_LOOP,
    "single_loop": PlaybackMode.SINGLE_LOOP,
    "single-loop": PlaybackMode.SINGLE_LOOP,
    "list_loop": PlaybackMode.LIST_LOOP,
    "list-loop": PlaybackMode.LIST_LOOP,
    "loop": PlaybackMode.LIST_LOOP,
    "list": PlaybackMode.LIST_LOOP,
    "sequential": PlaybackMode.SEQUENTIAL,
    "sequence": PlaybackMode.SEQUENTIAL,
    "seq": PlaybackMode.SEQUENTIAL,
}


class PlayerStatus(Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    PAUSED = "paused"


@dataclass(frozen=True)
class Track:
    """A playable item. Two tracks are the same track when their identifiers match."""

    identifier: str
    title: str = field(compare=False)
    artist: Optional[str] = field(default=None, compare=False)
    duration: Optional[float] = field(default=None, compare=False)
    source: Source = field(default=Source.YOUTUBE, compare=False)
    url: Optional[str] = field(default=None, compare=False)

    @property
    def display_name(self) -> str:
        if self.artist:
            return f"{self.artist} - {self.title}"
        return self.title

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.identifier,
            "title": self.title,
            "artist": self.artist,
            "duration": self.duration,
            "source": self.source.value,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Track":
        """Build a track from a favorites entry.

        Older entries only carry ``title`` and ``source``; they are keyed by
        title so that resolution falls back to a search.

        Raises:
            ValueError: if the entry is not an object or its fields have the
                wrong types
            KeyError: if the entry has no title
        """
        if not isinstance(data, dict):
            raise ValueError(f"Favorite entry is not an object: {data!r}")
        raw_source = data.get("source") or Source.YOUTUBE.value
        title = data["title"]
        raw_id = data.get("id")
        if not isinstance(raw_source, str) or not isinstance(title, str):
            raise ValueError(f"Favorite entry has a malformed title or source: {data!r}")
        if raw_id is not None and not isinstance(raw_id, str):
            raise ValueError(f"Favorite entry has a malformed id: {data!r}")
        source = Source.parse(raw_source)
        identifier = raw_id or f"{source.value}:title:{title}"
        duration = data.get("duration")
        return cls(
            identifier=identifier,
            title=title,
            artist=data.get("artist"),
            duration=float(duration) if duration is not None else None,
            source=source,
            url=data.get("url"),
        )


@dataclass(frozen=True)
class ResolvedStream:
    track_id: str
    url: str
    resolved_at: float


@dataclass
class PlaybackSession:
    """Mutable playback state. Only the state machine writes to it."""

    mode: PlaybackMode = PlaybackMode.LIST_LOOP
    status: PlayerStatus = PlayerStatus.IDLE
    track: Optional[Track] = None
    queue_index: Optional[int] = None
    elapsed: float = 0.0
    total: Optional[float] = None
    volume: int = 100
    token: int = 0
    load_issued: bool = False

    @property
    def paused(self) -> bool:
        return self.status is PlayerStatus.PAUSED


@dataclass(frozen=True)
class SessionSnapshot:
    status: PlayerStatus
    mode: PlaybackMode
    track: Optional[Track]
    queue_index: Optional[int]
    elapsed: float
    total: Optional[float]
    volume: int

    @property
    def progress(self) -> float:
        """Fraction of the track played, 0.0 when the length is unknown."""
        if not self.total:
            return 0.0
        return max(0.0, min(1.0, self.elapsed / self.total))
