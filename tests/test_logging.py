import logging
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))
from maboroshi.logging_config import (
    ColoredFormatter,
    MaboroshiError,
    PlayerError,
    PlayerNotRunning,
    RecentLogHandler,
    ResolutionError,
    ResolutionTimeout,
    StartupFailure,
    TransportError,
    get_logger,
    setup_logging,
)


class TestRecentLogHandler:
    """Tests for the in-memory log used by the status area."""

    def setup_method(self):
        """Attach a fresh handler to a throwaway logger."""
        self.handler = RecentLogHandler(capacity=3)
        self.logger = logging.getLogger("maboroshi.tests.recent")
        self.logger.setLevel(logging.DEBUG)
        self.logger.addHandler(self.handler)

    def teardown_method(self):
        """Detach the handler."""
        self.logger.removeHandler(self.handler)

    def test_keeps_messages_in_order(self):
        """Test that messages are kept oldest first."""
        self.logger.info("one")
        self.logger.warning("two")

        assert self.handler.entries() == ["one", "two"]

    def test_capacity(self):
        """Test that only the newest messages are kept."""
        for i in range(5):
            self.logger.info(f"message {i}")

        assert self.handler.entries() == ["message 2", "message 3", "message 4"]

    def test_consecutive_duplicates_collapse(self):
        """Test that a repeated message is kept once."""
        self.logger.warning("Lost control channel")
        self.logger.warning("Lost control channel")
        self.logger.info("Playing")
        self.logger.warning("Lost control channel")

        assert self.handler.entries() == ["Lost control channel", "Playing", "Lost control channel"]

    def test_debug_is_filtered(self):
        """Test that the default level hides debug output."""
        self.logger.debug("noise")
        assert self.handler.entries() == []

    def test_clear(self):
        """Test clearing the log."""
        self.logger.info("one")
        self.handler.clear()
        assert self.handler.entries() == []


class TestSetupLogging:
    """Tests for logger setup."""

    def teardown_method(self):
        """Leave the package logger without handlers."""
        logger = logging.getLogger("maboroshi")
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()
        logger.setLevel(logging.NOTSET)

    def test_file_logging(self, temp_dir):
        """Test that a log file is written."""
        log_file = temp_dir / "logs" / "maboroshi.log"
        setup_logging("INFO", log_file, console=False)

        get_logger("tests").info("written to file")
        for handler in logging.getLogger("maboroshi").handlers:
            handler.flush()

        assert "written to file" in log_file.read_text()

    def test_without_outputs(self):
        """Test that a null handler is installed when nothing else is."""
        logger = setup_logging("WARNING", console=False)

        assert logger.level == logging.WARNING
        assert any(isinstance(h, logging.NullHandler) for h in logger.handlers)

    def test_colored_formatter_leaves_record_alone(self):
        """Test that coloring does not leak into other handlers."""
        record = logging.LogRecord("maboroshi", logging.ERROR, __file__, 1, "boom", None, None)
        output = ColoredFormatter("%(levelname)s %(message)s").format(record)

        assert "\033[31mERROR" in output
        assert record.levelname == "ERROR"

    def test_get_logger_namespace(self):
        """Test module logger names."""
        assert get_logger("mpv").name == "maboroshi.mpv"


class TestExceptions:
    """Tests for the exception hierarchy."""

    def test_hierarchy(self):
        """Test that errors can be caught by family."""
        assert issubclass(StartupFailure, PlayerError)
        assert issubclass(TransportError, PlayerError)
        assert issubclass(ResolutionTimeout, ResolutionError)
        assert issubclass(ResolutionError, MaboroshiError)

    def test_player_not_running_message(self):
        """Test the default message."""
        with pytest.raises(PlayerError, match="player not running"):
            raise PlayerNotRunning()
