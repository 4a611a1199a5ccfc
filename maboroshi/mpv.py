"""
mpv process manager and its JSON IPC control channel.

mpv is started with ``--input-ipc-server=<socket>`` and commanded with one
JSON object per line, e.g. ``{"command": ["loadfile", url, "replace"]}``.
It answers with replies and asynchronous events on the same socket; the
events we care about are turned into the typed events below.
"""
import asyncio
import json
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from maboroshi.logging_config import (
    PlayerError,
    PlayerNotRunning,
    StartupFailure,
    TransportError,
    get_logger,
)

logger = get_logger('mpv')

# observe_property ids -> property names
OBSERVED_PROPERTIES = {1: "time-pos", 2: "duration"}

STREAM_LIMIT = 1 << 20

# how long a closed socket may precede the process exit it belongs to
EXIT_SETTLE = 0.5


@dataclass(frozen=True)
class PositionUpdate:
    elapsed: float
    total: Optional[float] = None


@dataclass(frozen=True)
class TrackStarted:
    load_id: Optional[int] = None


@dataclass(frozen=True)
class EndOfTrack:
    load_id: Optional[int] = None


@dataclass(frozen=True)
class LoadFailed:
    reason: str
    load_id: Optional[int] = None


@dataclass(frozen=True)
class ProcessExited:
    code: Optional[int]


@dataclass(frozen=True)
class TransportLost:
    reason: str


PlayerEvent = Union[PositionUpdate, TrackStarted, EndOfTrack, LoadFailed, ProcessExited, TransportLost]


class PlayerProcessManager:
    """Owns the mpv process and the only connection to its control socket."""

    def __init__(
        self,
        socket_path: Union[str, Path],
        command: Sequence[str] = ("mpv",),
        connect_timeout: float = 3.0,
        connect_interval: float = 0.1,
        grace_period: float = 2.0,
        extra_args: Sequence[str] = (),
    ):
        self.socket_path = str(Path(socket_path).expanduser())
        self.player_command = list(command)
        self.connect_timeout = connect_timeout
        self.connect_interval = connect_interval
        self.grace_period = grace_period
        self.extra_args = list(extra_args)

        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._tasks: List[asyncio.Task] = []
        self._events: "asyncio.Queue[PlayerEvent]" = asyncio.Queue()
        self._subscribed = False
        self._ready = False
        self._stopping = False
        self._duration: Optional[float] = None
        # loadfile commands sent and start-file events seen on this process
        self._loads_sent = 0
        self._files_started = 0

    # ---- lifecycle ----

    @property
    def is_running(self) -> bool:
        return (
            self._ready
            and self._process is not None
            and self._process.returncode is None
        )

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    def poll(self) -> bool:
        """Liveness check for the periodic tick."""
        return self.is_running

    def build_args(self) -> List[str]:
        return [
            *self.player_command,
            "--idle=yes",
            "--no-video",
            "--no-terminal",
            "--cache=yes",
            f"--input-ipc-server={self.socket_path}",
            *self.extra_args,
        ]

    async def start(self) -> None:
        """Spawn mpv and connect to its control socket.

        Raises:
            StartupFailure: if mpv cannot be spawned, exits early, or its
                socket does not accept a connection within the retry budget
        """
        if self.is_running:
            return

        await self._discard_previous()
        self._stopping = False
        self._remove_socket()

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.build_args(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                preexec_fn=os.setsid,
            )
        except OSError as e:
            logger.error(f"Failed to start {self.player_command[0]}: {e}")
            raise StartupFailure(f"Failed to start player: {e}") from e

        logger.info(f"Started player process: {self._process.pid}")

        try:
            await self._connect()
        except StartupFailure:
            if self._process.returncode is None:
                await self._terminate(self._process)
            self._process = None
            self._remove_socket()
            raise

        self._ready = True
        self._duration = None
        self._loads_sent = 0
        self._files_started = 0
        self._tasks = [
            asyncio.create_task(self._read_loop(self._reader, self._process)),
            asyncio.create_task(self._watch_process(self._process)),
        ]
        try:
            for observe_id, name in OBSERVED_PROPERTIES.items():
                await self.command("observe_property", observe_id, name)
        except PlayerError as e:
            self._ready = False
            await self._discard_previous()
            self._remove_socket()
            logger.error(f"Player setup failed: {e}")
            raise StartupFailure(f"Player setup failed: {e}") from e

    async def _connect(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.connect_timeout
        attempts = 0
        last_error: Optional[Exception] = None

        while True:
            if self._process.returncode is not None:
                raise StartupFailure(
                    f"Player exited during startup with code {self._process.returncode}"
                )
            attempts += 1
            try:
                self._reader, self._writer = await asyncio.open_unix_connection(
                    self.socket_path, limit=STREAM_LIMIT
                )
                logger.debug(f"Control channel ready after {attempts} attempt(s)")
                return
            except OSError as e:
                last_error = e
            if loop.time() >= deadline:
                break
            await asyncio.sleep(self.connect_interval)

        logger.error(f"Control channel {self.socket_path} unreachable: {last_error}")
        raise StartupFailure(
            f"Player control channel not reachable after {self.connect_timeout:.1f}s: {last_error}"
        )

    async def stop(self) -> None:
        """Quit mpv, force-killing it if it outlives the grace period."""
        process = self._process
        self._stopping = True
        if self.is_running:
            try:
                await self.command("quit")
            except PlayerError as e:
                logger.debug(f"Quit command failed: {e}")

        self._ready = False
        await self._close_channel()

        if process is not None and process.returncode is None:
            try:
                await asyncio.wait_for(process.wait(), self.grace_period)
                logger.info(f"Player process exited: {process.pid}")
            except asyncio.TimeoutError:
                await self._terminate(process)

        self._process = None
        await self._cancel_tasks()
        self._remove_socket()
        logger.info("Player stopped")

    async def _discard_previous(self) -> None:
        """Clean up what a crashed session left behind before restarting."""
        await self._close_channel()
        await self._cancel_tasks()
        if self._process is not None and self._process.returncode is None:
            await self._terminate(self._process)
        self._process = None

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGTERM)
            logger.info(f"Stopping player process: {process.pid}")
            await asyncio.wait_for(process.wait(), 1.0)
        except (ProcessLookupError, PermissionError) as e:
            logger.warning(f"Process termination error: {e}")
        except asyncio.TimeoutError:
            try:
                os.killpg(os.getpgid(process.pid), signal.SIGKILL)
                logger.warning(f"Force killed player process: {process.pid}")
                await asyncio.wait_for(process.wait(), 0.5)
            except (ProcessLookupError, PermissionError, asyncio.TimeoutError) as e:
                logger.warning(f"Force kill failed: {e}")

    async def _close_channel(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Control channel close error: {e}")

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        self._tasks = []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _remove_socket(self) -> None:
        try:
            os.remove(self.socket_path)
            logger.debug(f"Removed control socket {self.socket_path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove control socket {self.socket_path}: {e}")

    # ---- events ----

    def events(self) -> AsyncIterator[PlayerEvent]:
        """Return the event stream. There is exactly one subscriber."""
        if self._subscribed:
            raise RuntimeError("Player events already have a subscriber")
        self._subscribed = True
        return self._iter_events()

    async def _iter_events(self) -> AsyncIterator[PlayerEvent]:
        while True:
            yield await self._events.get()

    def _emit(self, event: PlayerEvent) -> None:
        self._events.put_nowait(event)

    async def _read_loop(self, reader: asyncio.StreamReader, process: asyncio.subprocess.Process) -> None:
        reason = "control channel closed"
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                self._handle_message(line)
        except (ConnectionError, OSError, ValueError) as e:
            reason = str(e) or type(e).__name__
        if await self._exits_soon(process):
            # _watch_process reports it
            return
        self._channel_lost(reason)

    async def _exits_soon(self, process: asyncio.subprocess.Process) -> bool:
        try:
            await asyncio.wait_for(process.wait(), EXIT_SETTLE)
        except asyncio.TimeoutError:
            return False
        return True

    async def _watch_process(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        if self._stopping or process is not self._process:
            return
        if not self._ready:
            logger.debug(f"Player process {process.pid} exited after losing its channel: {code}")
            return
        self._ready = False
        logger.warning(f"Player process {process.pid} exited unexpectedly with code {code}")
        self._emit(ProcessExited(code))

    def _channel_lost(self, reason: str) -> None:
        if self._stopping or not self._ready:
            return
        self._ready = False
        logger.warning(f"Lost control channel: {reason}")
        self._emit(TransportLost(reason))

    def _handle_message(self, line: bytes) -> None:
        try:
            message = json.loads(line.decode("utf-8", errors="replace"))
        except ValueError:
            logger.debug(f"Ignoring malformed player message: {line[:80]!r}")
            return
        if not isinstance(message, dict):
            return

        event = message.get("event")
        if event == "property-change":
            self._handle_property(message.get("name"), message.get("data"))
        elif event == "start-file":
            self._duration = None
            self._files_started += 1
        elif event == "file-loaded":
            self._emit(TrackStarted(self._files_started))
        elif event == "end-file":
            reason = message.get("reason")
            if reason == "eof":
                self._emit(EndOfTrack(self._files_started))
            elif reason == "error":
                self._emit(LoadFailed(
                    str(message.get("file_error") or "playback error"), self._files_started
                ))
        elif event is None and message.get("error") not in (None, "success"):
            logger.debug(f"Player rejected a command: {message.get('error')}")

    def _handle_property(self, name: Any, data: Any) -> None:
        if name == "duration":
            self._duration = _as_float(data)
        elif name == "time-pos":
            elapsed = _as_float(data)
            if elapsed is not None:
                self._emit(PositionUpdate(elapsed, self._duration))

    # ---- commands ----

    async def command(self, *args: Any) -> None:
        """Send one command. Success only means the write went through."""
        await self._send({"command": list(args)})

    async def _send(self, payload: Dict[str, Any]) -> None:
        if not self.is_running or self._writer is None:
            raise PlayerNotRunning()
        line = (json.dumps(payload) + "\n").encode("utf-8")
        try:
            self._writer.write(line)
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            self._channel_lost(str(e))
            raise TransportError(f"Failed to write to player: {e}") from e

    async def load(self, url: str) -> int:
        """Replace the current file with ``url``.

        Returns the load id that TrackStarted, EndOfTrack and LoadFailed
        events for this file will carry. mpv starts files in the order they
        were requested, so the n-th start-file belongs to the n-th load.
        """
        await self.command("loadfile", url, "replace")
        self._loads_sent += 1
        load_id = self._loads_sent
        await self.command("set_property", "pause", False)
        return load_id

    async def pause(self) -> None:
        await self.command("set_property", "pause", True)

    async def resume(self) -> None:
        await self.command("set_property", "pause", False)

    async def stop_playback(self) -> None:
        """Stop the current file; mpv stays up and idle."""
        await self.command("stop")

    async def set_volume(self, volume: int) -> None:
        if not 0 <= volume <= 100:
            raise ValueError(f"Volume must be 0-100, got {volume}")
        await self.command("set_property", "volume", volume)

    async def seek(self, offset: float) -> None:
        """Seek relative to the current position, in seconds."""
        await self.command("seek", offset, "relative")


def _as_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
