"""
The event loop that ties player, resolver, cache, favorites and the playback
state machine together.

Everything that can change the session arrives as a message in one inbox:
user intents, player events, resolution and search completions, and timer
ticks. Messages are handled one at a time, so the session has a single owner.
"""
import asyncio
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Set, Tuple

from maboroshi.cache import StreamCache
from maboroshi.favorites import FavoritesQueue
from maboroshi.logging_config import (
    PlayerError,
    RecentLogHandler,
    ResolutionError,
    ResolutionTimeout,
    SearchError,
    StartupFailure,
    get_logger,
)
from maboroshi.models import PlayerStatus, SessionSnapshot, Source, Track
from maboroshi.mpv import (
    EndOfTrack,
    LoadFailed,
    PlayerProcessManager,
    PositionUpdate,
    ProcessExited,
    TrackStarted,
    TransportLost,
)
from maboroshi.playback import (
    Effect,
    HaltPlayback,
    Load,
    PausePlayer,
    PlaybackStateMachine,
    ReportFailure,
    Resolve,
    ResumePlayer,
    StopPlayer,
)
from maboroshi.resolver import TrackResolver

logger = get_logger('orchestrator')

SEARCH_PAGE_CACHE_SIZE = 10


# ---- intents accepted from the UI ----

@dataclass(frozen=True)
class SelectTrack:
    track: Track


@dataclass(frozen=True)
class PlayFavorite:
    index: int


@dataclass(frozen=True)
class StartQueue:
    pass


@dataclass(frozen=True)
class TogglePause:
    pass


@dataclass(frozen=True)
class ToggleMode:
    pass


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class Quit:
    pass


@dataclass(frozen=True)
class ToggleFavorite:
    track: Track


@dataclass(frozen=True)
class RemoveFavorite:
    index: int


@dataclass(frozen=True)
class Seek:
    direction: int


@dataclass(frozen=True)
class ChangeVolume:
    direction: int


@dataclass(frozen=True)
class Search:
    keyword: str
    page: int = 1


@dataclass(frozen=True)
class SearchPage:
    delta: int


@dataclass(frozen=True)
class ClearSearch:
    pass


# ---- internal messages ----

@dataclass(frozen=True)
class Resolved:
    token: int
    track_id: str
    url: str


@dataclass(frozen=True)
class ResolutionFailed:
    token: int
    track_id: str
    reason: str


@dataclass(frozen=True)
class SearchDone:
    request_id: int
    keyword: str
    page: int
    tracks: Tuple[Track, ...]
    error: Optional[str] = None


@dataclass(frozen=True)
class Tick:
    pass


# ---- snapshots for the UI ----

@dataclass(frozen=True)
class SearchState:
    keyword: str = ""
    page: int = 1
    results: Tuple[Track, ...] = ()
    loading: bool = False

    @property
    def active(self) -> bool:
        return bool(self.keyword)


@dataclass(frozen=True)
class UiSnapshot:
    session: SessionSnapshot
    queue: Tuple[Track, ...]
    search: SearchState
    log: Tuple[str, ...]
    fatal_error: Optional[str] = None


class Orchestrator:
    """Routes stimuli into the state machine and carries out its effects."""

    def __init__(
        self,
        player: PlayerProcessManager,
        resolver: TrackResolver,
        cache: StreamCache,
        favorites: FavoritesQueue,
        machine: Optional[PlaybackStateMachine] = None,
        source: Source = Source.YOUTUBE,
        resolve_timeout: float = 10.0,
        tick_interval: float = 0.2,
        volume_step: int = 5,
        seek_seconds: int = 10,
        log_handler: Optional[RecentLogHandler] = None,
    ):
        self.player = player
        self.resolver = resolver
        self.cache = cache
        self.favorites = favorites
        self.machine = machine or PlaybackStateMachine(favorites)
        self.source = source
        self.resolve_timeout = resolve_timeout
        self.tick_interval = tick_interval
        self.volume_step = volume_step
        self.seek_seconds = seek_seconds
        self.log_handler = log_handler or RecentLogHandler()

        self.inbox: "asyncio.Queue[object]" = asyncio.Queue()
        self.listeners: List[Callable[[UiSnapshot], None]] = []
        self.fatal_error: Optional[StartupFailure] = None

        self._running = False
        self._background: Set[asyncio.Task] = set()
        # load id of the file the player was last told to play
        self._load_id: Optional[int] = None
        self._search = SearchState()
        self._search_request = 0
        self._search_pages: "OrderedDict[Tuple[str, int], Tuple[Track, ...]]" = OrderedDict()

    # ---- public surface ----

    def submit(self, intent: object) -> None:
        """Queue a UI intent. Safe to call from input callbacks."""
        self.inbox.put_nowait(intent)

    def snapshot(self) -> UiSnapshot:
        return UiSnapshot(
            session=self.machine.snapshot(),
            queue=tuple(self.favorites),
            search=self._search,
            log=tuple(self.log_handler.entries()),
            fatal_error=str(self.fatal_error) if self.fatal_error else None,
        )

    async def run(self) -> None:
        """Start the player and process messages until a Quit intent.

        Raises:
            StartupFailure: if the player cannot be started, now or on a
                later restart
        """
        await self._start_player()
        self._running = True
        pump = asyncio.create_task(self._pump_player_events())
        ticker = asyncio.create_task(self._tick_loop())
        self._publish()
        try:
            while self._running:
                message = await self.inbox.get()
                await self.dispatch(message)
                self._publish()
        finally:
            for task in (pump, ticker, *self._background):
                task.cancel()
            await asyncio.gather(pump, ticker, *self._background, return_exceptions=True)
            await self.player.stop()
        if self.fatal_error is not None:
            raise self.fatal_error

    async def dispatch(self, message: object) -> None:
        """Handle one message and carry out the resulting effects."""
        machine = self.machine
        effects: List[Effect] = []

        if isinstance(message, PositionUpdate):
            machine.on_position(message.elapsed, message.total)
        elif isinstance(message, Tick):
            self._on_tick()
        elif isinstance(message, Resolved):
            effects = machine.on_resolved(message.token, message.track_id, message.url)
        elif isinstance(message, ResolutionFailed):
            effects = machine.on_resolution_failed(message.token, message.track_id, message.reason)
        elif isinstance(message, (TrackStarted, EndOfTrack, LoadFailed)) and self._is_replaced(message):
            logger.debug(f"Ignoring {type(message).__name__} for a replaced file")
        elif isinstance(message, TrackStarted):
            effects = machine.on_track_started()
        elif isinstance(message, EndOfTrack):
            effects = machine.on_end_of_track()
        elif isinstance(message, LoadFailed):
            track = machine.session.track
            if track is not None and self.cache.invalidate(track.identifier):
                logger.debug(f"Dropped cached URL for {track.identifier}")
            effects = machine.on_load_failed(message.reason)
        elif isinstance(message, ProcessExited):
            effects = machine.on_player_lost(f"exit code {message.code}")
        elif isinstance(message, TransportLost):
            effects = machine.on_player_lost(message.reason)
        elif isinstance(message, SelectTrack):
            effects = machine.select(message.track)
        elif isinstance(message, PlayFavorite):
            effects = machine.play_index(message.index)
        elif isinstance(message, StartQueue):
            effects = machine.start_queue()
        elif isinstance(message, TogglePause):
            effects = machine.toggle_pause()
        elif isinstance(message, ToggleMode):
            machine.toggle_mode()
        elif isinstance(message, Stop):
            effects = machine.stop()
        elif isinstance(message, Quit):
            effects = machine.stop()
            self._running = False
        elif isinstance(message, ToggleFavorite):
            self._toggle_favorite(message.track)
        elif isinstance(message, RemoveFavorite):
            self._remove_favorite(message.index)
        elif isinstance(message, Seek):
            await self._seek(message.direction)
        elif isinstance(message, ChangeVolume):
            await self._change_volume(message.direction)
        elif isinstance(message, Search):
            self._start_search(message.keyword, message.page)
        elif isinstance(message, SearchPage):
            if self._search.active:
                self._start_search(self._search.keyword, max(1, self._search.page + message.delta))
        elif isinstance(message, ClearSearch):
            self._search_request += 1
            self._search = SearchState()
        elif isinstance(message, SearchDone):
            self._finish_search(message)
        else:
            logger.warning(f"Ignoring unknown message: {message!r}")

        await self._execute(effects)

    # ---- effects ----

    async def _execute(self, effects: List[Effect]) -> None:
        pending = list(effects)
        while pending:
            effect = pending.pop(0)
            if isinstance(effect, Resolve):
                self._resolve(effect)
            elif isinstance(effect, Load):
                pending.extend(await self._load(effect))
            elif isinstance(effect, PausePlayer):
                await self._player_call("pause", self.player.pause)
            elif isinstance(effect, ResumePlayer):
                await self._player_call("resume", self.player.resume)
            elif isinstance(effect, HaltPlayback):
                await self._player_call("stop playback", self.player.stop_playback)
            elif isinstance(effect, StopPlayer):
                await self.player.stop()
            elif isinstance(effect, ReportFailure):
                logger.error(effect.message)

    def _resolve(self, effect: Resolve) -> None:
        """Serve from the cache, or resolve in the background on a miss."""
        track = effect.track
        cached = self.cache.get(track.identifier)
        if cached is not None:
            logger.debug(f"Using cached URL for {track.identifier}")
            self.inbox.put_nowait(Resolved(effect.token, track.identifier, cached.url))
            return
        self._spawn(self._resolve_in_background(track, effect.token))

    async def _resolve_in_background(self, track: Track, token: int) -> None:
        try:
            stream = await asyncio.wait_for(self.resolver.resolve(track), self.resolve_timeout)
        except asyncio.TimeoutError:
            error: ResolutionError = ResolutionTimeout(
                f"resolution timed out after {self.resolve_timeout:g}s"
            )
        except ResolutionError as e:
            error = e
        except Exception as e:
            logger.warning(f"Resolver error on {track.identifier}: {e}")
            error = ResolutionError(f"resolver error: {e}")
        else:
            # Cache even if the session has moved on; it will likely be wanted again.
            self.cache.put(track.identifier, stream)
            self.inbox.put_nowait(Resolved(token, track.identifier, stream.url))
            return
        self.inbox.put_nowait(ResolutionFailed(token, track.identifier, str(error)))

    async def _load(self, effect: Load) -> List[Effect]:
        if not self.player.is_running:
            logger.info("Player is not running, restarting it")
            try:
                await self._start_player()
            except StartupFailure as e:
                self._fail_fatally(e)
                return []
        try:
            self._load_id = await self.player.load(effect.url)
        except PlayerError as e:
            return self.machine.on_load_failed(str(e))
        return []

    def _is_replaced(self, event) -> bool:
        return (
            event.load_id is not None
            and self._load_id is not None
            and event.load_id != self._load_id
        )

    async def _player_call(self, action: str, call: Callable) -> None:
        try:
            await call()
        except PlayerError as e:
            logger.warning(f"Could not {action}: {e}")

    async def _start_player(self) -> None:
        try:
            await self.player.start()
        except StartupFailure as e:
            logger.critical(f"Player unavailable: {e}")
            raise
        await self._player_call("set volume", lambda: self.player.set_volume(self.machine.session.volume))

    def _fail_fatally(self, error: StartupFailure) -> None:
        self.fatal_error = error
        self.machine.on_player_lost(str(error))
        self._running = False

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ---- background feeds ----

    async def _pump_player_events(self) -> None:
        async for event in self.player.events():
            self.inbox.put_nowait(event)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            self.inbox.put_nowait(Tick())

    def _on_tick(self) -> None:
        self.cache.purge_expired()
        status = self.machine.status
        if status in (PlayerStatus.PLAYING, PlayerStatus.PAUSED) and not self.player.poll():
            self.machine.on_player_lost("player is not responding")

    def _publish(self) -> None:
        if not self.listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self.listeners):
            listener(snapshot)

    # ---- user actions without playback effects ----

    def _toggle_favorite(self, track: Track) -> None:
        if self.favorites.toggle(track):
            logger.info(f"Added to favorites: {track.title}")
        else:
            logger.info(f"Removed from favorites: {track.title}")

    def _remove_favorite(self, index: int) -> None:
        track = self.favorites.remove_at(index)
        if track is not None:
            logger.info(f"Removed from favorites: {track.title}")

    async def _seek(self, direction: int) -> None:
        if self.machine.status not in (PlayerStatus.PLAYING, PlayerStatus.PAUSED):
            return
        offset = self.seek_seconds if direction > 0 else -self.seek_seconds
        try:
            await self.player.seek(offset)
        except PlayerError as e:
            logger.warning(f"Seek failed: {e}")
            return
        logger.info(f"Seek {'forward' if offset > 0 else 'back'} {abs(offset)}s")

    async def _change_volume(self, direction: int) -> None:
        session = self.machine.session
        step = self.volume_step if direction > 0 else -self.volume_step
        volume = self.machine.set_volume(session.volume + step)
        await self._player_call("set volume", lambda: self.player.set_volume(volume))
        logger.info(f"Volume: {volume}%")

    # ---- search ----

    def _start_search(self, keyword: str, page: int = 1) -> None:
        keyword = keyword.strip()
        if not keyword:
            return
        self._search_request += 1
        key = (keyword, page)
        cached = self._search_pages.get(key)
        if cached is not None:
            self._search_pages.move_to_end(key)
            self._search = SearchState(keyword, page, cached)
            return

        if keyword == self._search.keyword:
            self._search = replace(self._search, loading=True)
        else:
            self._search = SearchState(keyword, 1, (), loading=True)
        self._spawn(self._search_in_background(self._search_request, keyword, page))

    async def _search_in_background(self, request_id: int, keyword: str, page: int) -> None:
        try:
            tracks = await self.resolver.search(keyword, self.source, page)
        except SearchError as e:
            self.inbox.put_nowait(SearchDone(request_id, keyword, page, (), str(e)))
            return
        self.inbox.put_nowait(SearchDone(request_id, keyword, page, tuple(tracks)))

    def _finish_search(self, done: SearchDone) -> None:
        if done.request_id != self._search_request:
            logger.debug(f"Discarding stale search results for '{done.keyword}'")
            return
        if done.error is not None:
            logger.error(f"Search failed: {done.error}")
            self._search = replace(self._search, loading=False)
            return
        if not done.tracks:
            logger.info("No more results" if done.page > 1 else "No results found")
            self._search = replace(self._search, loading=False)
            return

        self._search_pages[(done.keyword, done.page)] = done.tracks
        self._search_pages.move_to_end((done.keyword, done.page))
        while len(self._search_pages) > SEARCH_PAGE_CACHE_SIZE:
            self._search_pages.popitem(last=False)
        self._search = SearchState(done.keyword, done.page, done.tracks)
