"""
Favorites queue and its JSON file store.
"""
import json
import time
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Union

from maboroshi.logging_config import PersistenceError, get_logger
from maboroshi.models import Track

logger = get_logger('favorites')


class FavoritesQueue:
    """Ordered favorites, unique by track identifier.

    Insertion order is the traversal order for list loop and sequential
    playback. ``on_change`` is called with the full list after every mutation.
    """

    def __init__(
        self,
        tracks: Iterable[Track] = (),
        on_change: Optional[Callable[[List[Track]], None]] = None,
    ):
        self._tracks: List[Track] = []
        for track in tracks:
            if track not in self._tracks:
                self._tracks.append(track)
        self.on_change = on_change

    def add(self, track: Track) -> bool:
        """Append a track. Adding a track that is already present does nothing."""
        if track in self._tracks:
            return False
        self._tracks.append(track)
        self._changed()
        return True

    def remove(self, identifier: str) -> bool:
        index = self.index_of(identifier)
        if index is None:
            return False
        self.remove_at(index)
        return True

    def remove_at(self, index: int) -> Optional[Track]:
        if not 0 <= index < len(self._tracks):
            return None
        track = self._tracks.pop(index)
        self._changed()
        return track

    def toggle(self, track: Track) -> bool:
        """Add or remove ``track``. Returns True if it is a favorite afterwards."""
        if self.remove(track.identifier):
            return False
        self.add(track)
        return True

    def index_of(self, identifier: str) -> Optional[int]:
        for index, track in enumerate(self._tracks):
            if track.identifier == identifier:
                return index
        return None

    def tracks(self) -> List[Track]:
        return list(self._tracks)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self.tracks())

    def __contains__(self, item: object) -> bool:
        if isinstance(item, Track):
            item = item.identifier
        return isinstance(item, str) and self.index_of(item) is not None

    def __len__(self) -> int:
        return len(self._tracks)

    def __getitem__(self, index: int) -> Track:
        return self._tracks[index]

    def __iter__(self) -> Iterator[Track]:
        return iter(list(self._tracks))


class FavoritesStore:
    """Reads and writes the favorites file as ``{"items": [...]}``."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    def load(self) -> List[Track]:
        """Load saved favorites.

        A missing file is an empty list. A file that cannot be parsed is moved
        aside to ``<name>.corrupt.<timestamp>`` and an empty list is returned.

        Raises:
            PersistenceError: if the file exists but cannot be read, or a
                corrupt file cannot be moved aside
        """
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug(f"No favorites file at {self.path}")
            return []
        except OSError as e:
            raise PersistenceError(f"Failed to read favorites ({self.path}): {e}") from e

        try:
            data = json.loads(content)
            tracks = [Track.from_dict(item) for item in data["items"]]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            backup = self._backup_corrupted()
            logger.warning(f"Favorites file is corrupt, moved to {backup} ({e})")
            return []

        logger.info(f"Loaded {len(tracks)} favorites")
        return tracks

    def save(self, tracks: Sequence[Track]) -> None:
        data = {"items": [track.to_dict() for track in tracks]}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except OSError as e:
            raise PersistenceError(f"Failed to save favorites ({self.path}): {e}") from e
        logger.debug(f"Saved {len(tracks)} favorites to {self.path}")

    def autosave(self, tracks: Sequence[Track]) -> None:
        """``on_change`` hook: save, logging failures instead of raising."""
        try:
            self.save(tracks)
        except PersistenceError as e:
            logger.error(str(e))

    def _backup_corrupted(self) -> Path:
        backup = self.path.with_name(f"{self.path.name}.corrupt.{int(time.time())}")
        try:
            self.path.rename(backup)
        except OSError as e:
            raise PersistenceError(
                f"Favorites file is corrupt and could not be backed up "
                f"({self.path} -> {backup}): {e}"
            ) from e
        return backup
