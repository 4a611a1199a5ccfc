"""
Playback state machine.

The machine does no I/O. Every stimulus (a user command, a resolution result
or a player event) updates the session and returns the effects the
orchestrator must carry out, in order.
"""
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from maboroshi.favorites import FavoritesQueue
from maboroshi.logging_config import get_logger
from maboroshi.models import PlaybackMode, PlaybackSession, PlayerStatus, SessionSnapshot, Track

logger = get_logger('playback')


@dataclass(frozen=True)
class Resolve:
    track: Track
    token: int


@dataclass(frozen=True)
class Load:
    url: str
    token: int


@dataclass(frozen=True)
class PausePlayer:
    pass


@dataclass(frozen=True)
class ResumePlayer:
    pass


@dataclass(frozen=True)
class HaltPlayback:
    """Stop the current track but keep the player process."""


@dataclass(frozen=True)
class StopPlayer:
    """Shut the player process down."""


@dataclass(frozen=True)
class ReportFailure:
    message: str
    track_ids: Tuple[str, ...]


Effect = Union[Resolve, Load, PausePlayer, ResumePlayer, HaltPlayback, StopPlayer, ReportFailure]


class PlaybackStateMachine:
    """Decides what plays, and what plays next.

    ``session.token`` increases with every new load target, so results that
    arrive for an older target can be recognised and dropped.
    """

    def __init__(
        self,
        queue: FavoritesQueue,
        mode: PlaybackMode = PlaybackMode.LIST_LOOP,
        volume: int = 100,
    ):
        self.queue = queue
        self.session = PlaybackSession(mode=mode, volume=volume)
        # identifiers that failed since the last successful start
        self._failures: List[str] = []

    @property
    def status(self) -> PlayerStatus:
        return self.session.status

    @property
    def mode(self) -> PlaybackMode:
        return self.session.mode

    def snapshot(self) -> SessionSnapshot:
        s = self.session
        return SessionSnapshot(
            status=s.status,
            mode=s.mode,
            track=s.track,
            queue_index=s.queue_index,
            elapsed=s.elapsed,
            total=s.total,
            volume=s.volume,
        )

    # ---- user commands ----

    def select(self, track: Track, queue_index: Optional[int] = None) -> List[Effect]:
        """Start loading ``track``, superseding whatever was loading."""
        self._failures = []
        return self._begin_loading(track, queue_index)

    def play_index(self, index: int) -> List[Effect]:
        if not 0 <= index < len(self.queue):
            logger.warning(f"No favorite at position {index}")
            return []
        return self.select(self.queue[index], index)

    def start_queue(self) -> List[Effect]:
        """Play the favorites from the top."""
        self._failures = []
        index = self._next_index(-1)
        if index is None:
            logger.info("Favorites list is empty")
            return []
        return self._begin_loading(self.queue[index], index)

    def toggle_pause(self) -> List[Effect]:
        if self.session.status is PlayerStatus.PLAYING:
            self.session.status = PlayerStatus.PAUSED
            return [PausePlayer()]
        if self.session.status is PlayerStatus.PAUSED:
            self.session.status = PlayerStatus.PLAYING
            return [ResumePlayer()]
        return []

    def toggle_mode(self) -> PlaybackMode:
        return self.set_mode(self.session.mode.next())

    def set_mode(self, mode: PlaybackMode) -> PlaybackMode:
        # Takes effect at the next advancement; the current track keeps playing.
        self.session.mode = mode
        logger.info(f"Playback mode: {mode.label}")
        return mode

    def set_volume(self, volume: int) -> int:
        self.session.volume = max(0, min(100, volume))
        return self.session.volume

    def stop(self) -> List[Effect]:
        self._failures = []
        self._go_idle()
        return [StopPlayer()]

    # ---- resolution results ----

    def is_current(self, token: int, track_id: str) -> bool:
        s = self.session
        return (
            s.status is PlayerStatus.LOADING
            and s.token == token
            and s.track is not None
            and s.track.identifier == track_id
        )

    def on_resolved(self, token: int, track_id: str, url: str) -> List[Effect]:
        if not self.is_current(token, track_id):
            logger.debug(f"Discarding stale resolution for {track_id}")
            return []
        self.session.load_issued = True
        return [Load(url, token)]

    def on_resolution_failed(self, token: int, track_id: str, reason: str) -> List[Effect]:
        if not self.is_current(token, track_id):
            logger.debug(f"Discarding stale resolution failure for {track_id}")
            return []
        return self._fail_current("resolve", reason)

    # ---- player events ----

    def on_track_started(self) -> List[Effect]:
        s = self.session
        if s.status is PlayerStatus.LOADING and s.load_issued:
            s.status = PlayerStatus.PLAYING
            s.elapsed = 0.0
            self._failures = []
            logger.info(f"Playing: {s.track.display_name}")
        return []

    def on_load_failed(self, reason: str) -> List[Effect]:
        s = self.session
        if s.status is PlayerStatus.LOADING and not s.load_issued:
            # Belongs to a load that has since been superseded.
            return []
        if s.status is PlayerStatus.IDLE:
            return []
        return self._fail_current("load" if s.status is PlayerStatus.LOADING else "play", reason)

    def on_position(self, elapsed: float, total: Optional[float] = None) -> None:
        s = self.session
        if s.status in (PlayerStatus.PLAYING, PlayerStatus.PAUSED):
            s.elapsed = elapsed
            if total is not None:
                s.total = total

    def on_end_of_track(self) -> List[Effect]:
        if self.session.status not in (PlayerStatus.PLAYING, PlayerStatus.PAUSED):
            return []
        return self._advance()

    def on_player_lost(self, reason: str) -> List[Effect]:
        if self.session.status is PlayerStatus.IDLE:
            return []
        logger.error(f"Player stopped unexpectedly: {reason}")
        self._failures = []
        self._go_idle()
        return []

    # ---- advancement ----

    def _advance(self) -> List[Effect]:
        s = self.session
        if s.mode is PlaybackMode.SINGLE_LOOP:
            logger.debug(f"Repeating {s.track.display_name}")
            return self._begin_loading(s.track, s.queue_index)

        position = self._queue_position()
        if position is None:
            logger.info("Playback finished")
            self._go_idle()
            return []

        index = self._next_index(position)
        if index is None:
            logger.info("Reached the end of the favorites")
            self._go_idle()
            return []
        if index <= position:
            logger.info("List loop: back to the first favorite")
        return self._begin_loading(self.queue[index], index)

    def _queue_position(self) -> Optional[int]:
        """Where the current track sits in the favorites, if anywhere."""
        s = self.session
        if s.track is not None:
            index = self.queue.index_of(s.track.identifier)
            if index is not None:
                return index
        if s.queue_index is not None:
            # The current entry was removed; the next one slid into its slot.
            return s.queue_index - 1
        return None

    def _next_index(self, position: int) -> Optional[int]:
        size = len(self.queue)
        if position + 1 < size:
            return position + 1
        if self.session.mode is PlaybackMode.LIST_LOOP and size > 0:
            return 0
        return None

    def _fail_current(self, stage: str, reason: str) -> List[Effect]:
        s = self.session
        track = s.track
        logger.warning(f"Failed to {stage} {track.identifier} ({track.title}): {reason}")
        self._failures.append(track.identifier)

        if s.queue_index is None or s.mode is PlaybackMode.SINGLE_LOOP:
            return self._give_up(f"Could not play {track.title}: {reason}")

        if len(self._failures) >= len(self.queue):
            return self._give_up(f"All {len(self._failures)} favorites failed to play")

        position = self._queue_position()
        index = self._next_index(position) if position is not None else None
        if index is None:
            return self._give_up(
                f"Reached the end of the favorites after {len(self._failures)} failed track(s)"
            )

        logger.info(f"Skipping to {self.queue[index].title}")
        return self._begin_loading(self.queue[index], index)

    def _give_up(self, message: str) -> List[Effect]:
        failed = tuple(self._failures)
        self._failures = []
        self._go_idle()
        return [HaltPlayback(), ReportFailure(message, failed)]

    def _begin_loading(self, track: Track, queue_index: Optional[int]) -> List[Effect]:
        s = self.session
        s.token += 1
        s.status = PlayerStatus.LOADING
        s.track = track
        s.queue_index = queue_index
        s.elapsed = 0.0
        s.total = track.duration
        s.load_issued = False
        logger.info(f"Loading: {track.display_name}")
        return [Resolve(track, s.token)]

    def _go_idle(self) -> None:
        s = self.session
        s.token += 1
        s.status = PlayerStatus.IDLE
        s.track = None
        s.queue_index = None
        s.elapsed = 0.0
        s.total = None
        s.load_issued = False
