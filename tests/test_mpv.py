import asyncio
import json
import os
import signal
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))
from maboroshi.logging_config import PlayerNotRunning, StartupFailure, TransportError
from maboroshi.mpv import (
    EndOfTrack,
    LoadFailed,
    PlayerProcessManager,
    PositionUpdate,
    ProcessExited,
    TrackStarted,
    TransportLost,
)


async def next_event(events, kind, timeout=5.0):
    """Return the next event of type ``kind``, skipping others."""
    async def wait():
        async for event in events:
            if isinstance(event, kind):
                return event
    return await asyncio.wait_for(wait(), timeout)


class TestPlayerArgs:
    """Tests that need no process."""

    def test_build_args(self):
        """Test the mpv command line."""
        player = PlayerProcessManager("/tmp/mb-test.sock", command=("mpv",), extra_args=["--ytdl=no"])
        args = player.build_args()

        assert args[0] == "mpv"
        assert "--idle=yes" in args
        assert "--no-video" in args
        assert "--input-ipc-server=/tmp/mb-test.sock" in args
        assert args[-1] == "--ytdl=no"

    @pytest.mark.asyncio
    async def test_single_subscriber(self):
        """Test that the event stream can only be taken once."""
        player = PlayerProcessManager("/tmp/mb-test.sock")
        player.events()

        with pytest.raises(RuntimeError):
            player.events()

    @pytest.mark.asyncio
    async def test_commands_fail_when_not_started(self):
        """Test fail-fast commands before startup."""
        player = PlayerProcessManager("/tmp/mb-test.sock")

        with pytest.raises(PlayerNotRunning):
            await player.load("https://cdn.example/a")
        with pytest.raises(PlayerNotRunning):
            await player.pause()
        with pytest.raises(PlayerNotRunning):
            await player.seek(5)
        assert player.poll() is False

    @pytest.mark.asyncio
    async def test_volume_range(self):
        """Test that volume is validated before sending."""
        player = PlayerProcessManager("/tmp/mb-test.sock")
        with pytest.raises(ValueError):
            await player.set_volume(101)


class TestMessageTranslation:
    """Tests for turning mpv messages into events."""

    def setup_method(self):
        """Create a manager without a process."""
        self.player = PlayerProcessManager("/tmp/mb-test.sock")
        self.emitted = []
        self.player._emit = self.emitted.append

    def feed(self, message):
        self.player._handle_message((json.dumps(message) + "\n").encode("utf-8"))

    def test_position_carries_duration(self):
        """Test that time-pos updates include the last known duration."""
        self.feed({"event": "property-change", "id": 2, "name": "duration", "data": 200.5})
        self.feed({"event": "property-change", "id": 1, "name": "time-pos", "data": 12.25})

        assert self.emitted == [PositionUpdate(12.25, 200.5)]

    def test_null_position_is_ignored(self):
        """Test the null values mpv sends while idle."""
        self.feed({"event": "property-change", "id": 1, "name": "time-pos", "data": None})
        assert self.emitted == []

    def test_start_file_resets_duration(self):
        """Test that a new file forgets the old duration."""
        self.feed({"event": "property-change", "id": 2, "name": "duration", "data": 200.0})
        self.feed({"event": "start-file"})
        self.feed({"event": "property-change", "id": 1, "name": "time-pos", "data": 0.5})

        assert self.emitted == [PositionUpdate(0.5, None)]

    def test_end_file_reasons(self):
        """Test end-file translation by reason."""
        self.feed({"event": "start-file", "playlist_entry_id": 1})
        self.feed({"event": "file-loaded"})
        self.feed({"event": "end-file", "reason": "eof"})
        self.feed({"event": "end-file", "reason": "error", "file_error": "unrecognized file format"})
        self.feed({"event": "end-file", "reason": "stop"})

        assert self.emitted == [TrackStarted(1), EndOfTrack(1), LoadFailed("unrecognized file format", 1)]

    def test_events_carry_the_file_they_belong_to(self):
        """Test that each started file gets the next load id."""
        self.feed({"event": "start-file", "playlist_entry_id": 4})
        self.feed({"event": "end-file", "reason": "error", "file_error": "loading failed"})
        self.feed({"event": "start-file", "playlist_entry_id": 5})
        self.feed({"event": "file-loaded"})

        assert self.emitted == [LoadFailed("loading failed", 1), TrackStarted(2)]

    def test_malformed_lines_are_ignored(self):
        """Test garbage on the socket."""
        self.player._handle_message(b"not json\n")
        self.player._handle_message(b"[1, 2]\n")
        self.feed({"error": "success", "data": None})

        assert self.emitted == []


class TestPlayerProcess:
    """Tests against the fake mpv IPC server."""

    def make_player(self, socket_dir, command, **kwargs):
        kwargs.setdefault("connect_timeout", 5.0)
        kwargs.setdefault("grace_period", 2.0)
        return PlayerProcessManager(socket_dir / "mpv.sock", command=command, **kwargs)

    @pytest.mark.asyncio
    async def test_start_load_and_stop(self, socket_dir, fake_mpv_command):
        """Test startup, typed events for a load, and clean shutdown."""
        player = self.make_player(socket_dir, fake_mpv_command)
        events = player.events()
        try:
            await player.start()
            assert player.is_running

            load_id = await player.load("https://cdn.example/song")
            started = await next_event(events, TrackStarted)
            assert started.load_id == load_id == 1
            position = await next_event(events, PositionUpdate)
            assert position == PositionUpdate(1.5, 180.0)
        finally:
            await player.stop()

        assert not player.is_running
        assert not (socket_dir / "mpv.sock").exists()

    @pytest.mark.asyncio
    async def test_end_of_track_and_load_failure(self, socket_dir, fake_mpv_command):
        """Test eof and error endings."""
        player = self.make_player(socket_dir, fake_mpv_command)
        events = player.events()
        try:
            await player.start()
            await player.load("https://cdn.example/short")
            await next_event(events, EndOfTrack)

            load_id = await player.load("https://cdn.example/broken")
            failed = await next_event(events, LoadFailed)
            assert failed.reason == "loading failed"
            assert failed.load_id == load_id == 2
        finally:
            await player.stop()

    @pytest.mark.asyncio
    async def test_other_commands_are_accepted(self, socket_dir, fake_mpv_command):
        """Test that every command goes through on a live player."""
        player = self.make_player(socket_dir, fake_mpv_command)
        try:
            await player.start()
            await player.pause()
            await player.resume()
            await player.set_volume(40)
            await player.seek(-10)
            await player.stop_playback()
            assert player.is_running
        finally:
            await player.stop()

    @pytest.mark.asyncio
    async def test_crash_is_reported_and_commands_fail(self, socket_dir, fake_mpv_command):
        """Test abrupt exit: ProcessExited, then 'not running' until restarted."""
        player = self.make_player(socket_dir, fake_mpv_command)
        events = player.events()
        try:
            await player.start()
            first_pid = player.pid
            os.kill(first_pid, signal.SIGKILL)

            exited = await next_event(events, ProcessExited)
            assert exited.code == -signal.SIGKILL
            with pytest.raises(asyncio.TimeoutError):
                await next_event(events, (ProcessExited, TransportLost), timeout=1.0)
            assert not player.is_running
            with pytest.raises(PlayerNotRunning, match="player not running"):
                await player.pause()

            await player.start()
            assert player.is_running
            assert player.pid != first_pid
            await player.pause()
        finally:
            await player.stop()

    @pytest.mark.asyncio
    async def test_stop_does_not_report_exit(self, socket_dir, fake_mpv_command):
        """Test that a requested shutdown is not mistaken for a crash."""
        player = self.make_player(socket_dir, fake_mpv_command)
        events = player.events()
        await player.start()
        await player.stop()

        with pytest.raises(asyncio.TimeoutError):
            await next_event(events, (ProcessExited, TransportLost), timeout=0.3)

    @pytest.mark.asyncio
    async def test_stale_socket_is_removed(self, socket_dir, fake_mpv_command):
        """Test startup over a leftover endpoint from a crashed session."""
        stale = socket_dir / "mpv.sock"
        stale.write_text("left over")
        player = self.make_player(socket_dir, fake_mpv_command)
        try:
            await player.start()
            assert player.is_running
        finally:
            await player.stop()

    @pytest.mark.asyncio
    async def test_unreachable_socket_is_startup_failure(self, socket_dir):
        """Test a process that never opens its control channel."""
        command = (sys.executable, "-c", "import time; time.sleep(30)")
        player = self.make_player(socket_dir, command, connect_timeout=0.3)

        with pytest.raises(StartupFailure, match="not reachable"):
            await player.start()
        assert not player.is_running
        assert player.pid is None

    @pytest.mark.asyncio
    async def test_early_exit_is_startup_failure(self, socket_dir):
        """Test a process that exits during startup."""
        command = (sys.executable, "-c", "import sys; sys.exit(3)")
        player = self.make_player(socket_dir, command)

        with pytest.raises(StartupFailure, match="exited during startup"):
            await player.start()

    @pytest.mark.asyncio
    async def test_missing_binary_is_startup_failure(self, socket_dir):
        """Test a player binary that does not exist."""
        player = self.make_player(socket_dir, ("/nonexistent/mpv",))

        with pytest.raises(StartupFailure, match="Failed to start player"):
            await player.start()

    @pytest.mark.asyncio
    async def test_stop_force_kills_stuck_process(self, socket_dir, fake_mpv_command):
        """Test the grace period on a process that ignores quit."""
        player = self.make_player(socket_dir, fake_mpv_command, grace_period=0.2)
        await player.start()
        process = player._process
        os.kill(process.pid, signal.SIGSTOP)
        try:
            await player.stop()
        finally:
            if process.returncode is None:
                os.kill(process.pid, signal.SIGKILL)

        assert process.returncode is not None
        assert not (socket_dir / "mpv.sock").exists()

    @pytest.mark.asyncio
    async def test_setup_failure_is_startup_failure(self, socket_dir, fake_mpv_command):
        """Test that a channel that breaks while configuring mpv fails startup."""
        player = self.make_player(socket_dir, fake_mpv_command)

        async def broken_command(*args):
            raise TransportError("Failed to write to player: broken pipe")

        player.command = broken_command

        with pytest.raises(StartupFailure, match="setup failed"):
            await player.start()
        assert not player.is_running
        assert player.pid is None
        assert not (socket_dir / "mpv.sock").exists()
