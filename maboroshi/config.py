"""
Configuration management for maboroshi.
"""
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

try:
    import tomllib
except ImportError:
    import tomli as tomllib

from maboroshi.logging_config import ConfigurationError, get_logger
from maboroshi.models import PlaybackMode, Source

logger = get_logger('config')

DEFAULT_SOCKET_PATH = "/tmp/maboroshi.sock"

DEFAULT_CONFIG = """# maboroshi configuration

[search]
# Where to search: yt (YouTube), bili (Bilibili), sc (SoundCloud)
source = "yt"
max_results = 15
# Seconds before a search is abandoned
timeout = 30
# Browser to borrow cookies from (chrome, firefox, ...), empty to disable
cookies_browser = ""

[cache]
# Number of resolved stream URLs to keep
url_cache_size = 30
# Seconds a resolved URL stays valid
url_cache_ttl = 7200
# Restart the expiry clock whenever a cached URL is used
sliding_expiry = false

[network]
# Seconds allowed for resolving a track before it is skipped
play_timeout = 10

[playback]
# single_loop, list_loop or sequential
default_mode = "list_loop"
volume = 100
volume_step = 5
seek_seconds = 10

[player]
mpv_path = "mpv"
# Seconds to wait for mpv's control socket at startup
connect_timeout = 3.0
# Seconds mpv gets to quit before it is killed
stop_grace = 2.0

[paths]
socket_path = "/tmp/maboroshi.sock"
favorites_file = "~/.maboroshi_favorites.json"

[logging]
level = "INFO"
# Log file path, empty to disable
file = ""
"""

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class SearchConfig:
    source: Source = Source.YOUTUBE
    max_results: int = 15
    timeout: float = 30.0
    cookies_browser: str = ""


@dataclass
class CacheConfig:
    url_cache_size: int = 30
    url_cache_ttl: float = 7200.0
    sliding_expiry: bool = False


@dataclass
class NetworkConfig:
    play_timeout: float = 10.0


@dataclass
class PlaybackConfig:
    default_mode: PlaybackMode = PlaybackMode.LIST_LOOP
    volume: int = 100
    volume_step: int = 5
    seek_seconds: int = 10


@dataclass
class PlayerConfig:
    mpv_path: str = "mpv"
    connect_timeout: float = 3.0
    stop_grace: float = 2.0


@dataclass
class PathsConfig:
    socket_path: str = DEFAULT_SOCKET_PATH
    favorites_file: str = "~/.maboroshi_favorites.json"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = ""


@dataclass
class AppConfig:
    """Application configuration settings."""

    search: SearchConfig = field(default_factory=SearchConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)
    player: PlayerConfig = field(default_factory=PlayerConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Problems found while loading; the affected keys keep their defaults.
    issues: List[str] = field(default_factory=list)

    @property
    def favorites_path(self) -> Path:
        return Path(self.paths.favorites_file).expanduser()

    @property
    def socket_path(self) -> Path:
        return Path(self.paths.socket_path).expanduser()

    @property
    def log_file(self) -> Optional[Path]:
        if not self.logging.file:
            return None
        return Path(self.logging.file).expanduser()


SECTIONS = ("search", "cache", "network", "playback", "player", "paths", "logging")

# (section, key) -> inclusive numeric bounds
RANGES: Dict[Tuple[str, str], Tuple[float, float]] = {
    ("search", "max_results"): (1, 50),
    ("search", "timeout"): (1, 600),
    ("cache", "url_cache_size"): (1, 10000),
    ("cache", "url_cache_ttl"): (1, 7 * 24 * 3600),
    ("network", "play_timeout"): (1, 600),
    ("playback", "volume"): (0, 100),
    ("playback", "volume_step"): (1, 50),
    ("playback", "seek_seconds"): (1, 600),
    ("player", "connect_timeout"): (0.1, 60),
    ("player", "stop_grace"): (0, 60),
}


def get_config_dir() -> Path:
    """Get the configuration directory following XDG spec.

    Returns:
        Path to the config directory (~/.config/maboroshi by default)
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / "maboroshi"
    return Path.home() / ".config" / "maboroshi"


def get_config_path() -> Path:
    return get_config_dir() / "config.toml"


def init_config(config_file: Path) -> bool:
    """Write the default config file if there is none.

    Returns:
        True if the file was created, False if it already existed
    """
    if config_file.exists():
        return False
    try:
        config_file.parent.mkdir(parents=True, exist_ok=True)
        config_file.write_text(DEFAULT_CONFIG, encoding="utf-8")
    except OSError as e:
        logger.warning(f"Failed to create default config: {e}")
        return False
    logger.info(f"Created default config at {config_file}")
    return True


def _convert(section: str, key: str, value: Any, default: Any) -> Any:
    """Convert a raw TOML value to the type of ``default``.

    Raises:
        ConfigurationError: if the value has the wrong type or is out of range
    """
    name = f"{section}.{key}"
    if isinstance(default, Source):
        if not isinstance(value, str):
            raise ConfigurationError(f"{name} must be a string, got {value!r}")
        try:
            return Source.parse(value)
        except ValueError:
            choices = ", ".join(s.value for s in Source)
            raise ConfigurationError(f"{name} must be one of {choices}, got {value!r}") from None
    if isinstance(default, PlaybackMode):
        if not isinstance(value, str):
            raise ConfigurationError(f"{name} must be a string, got {value!r}")
        try:
            return PlaybackMode.parse(value)
        except ValueError as e:
            raise ConfigurationError(f"{name}: {e}") from None
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigurationError(f"{name} must be true or false, got {value!r}")
        return value
    if isinstance(default, (int, float)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"{name} must be a number, got {value!r}")
        if isinstance(default, int) and not isinstance(value, int):
            raise ConfigurationError(f"{name} must be a whole number, got {value!r}")
        low, high = RANGES.get((section, key), (float("-inf"), float("inf")))
        if not low <= value <= high:
            raise ConfigurationError(f"{name} must be between {low} and {high}, got {value}")
        return type(default)(value)
    if not isinstance(value, str):
        raise ConfigurationError(f"{name} must be a string, got {value!r}")
    if section == "logging" and key == "level":
        if value.upper() not in LOG_LEVELS:
            raise ConfigurationError(f"{name} must be one of {', '.join(LOG_LEVELS)}, got {value!r}")
        return value.upper()
    return value


def apply_config_data(config: AppConfig, data: Dict[str, Any]) -> AppConfig:
    """Merge parsed TOML data over ``config``, recording every rejected value."""
    for section in SECTIONS:
        user_section = data.get(section)
        if user_section is None:
            continue
        if not isinstance(user_section, dict):
            config.issues.append(f"[{section}] must be a table")
            continue
        target = getattr(config, section)
        known = {f.name for f in fields(target)}
        for key, value in user_section.items():
            if key not in known:
                config.issues.append(f"Unknown setting {section}.{key}")
                continue
            try:
                setattr(target, key, _convert(section, key, value, getattr(target, key)))
            except ConfigurationError as e:
                config.issues.append(str(e))
    return config


def load_config(config_path: Optional[Path] = None, create: bool = True) -> AppConfig:
    """Load configuration from TOML, falling back to defaults key by key.

    Args:
        config_path: Config file to read (default: XDG config dir)
        create: Write a default config file when none exists

    Returns:
        The loaded configuration; ``issues`` lists anything that was ignored
    """
    config_file = config_path or get_config_path()
    config = AppConfig()
    if create and config_path is None:
        init_config(config_file)

    if config_file.exists():
        try:
            with open(config_file, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            config.issues.append(f"Could not load config file {config_file}: {e}")
        else:
            apply_config_data(config, data)
            logger.info(f"Loaded configuration from {config_file}")
    else:
        logger.info(f"Config file not found at {config_file}, using defaults")

    if config.paths.socket_path == DEFAULT_SOCKET_PATH:
        # One socket per process so that two instances do not collide.
        config.paths.socket_path = f"/tmp/maboroshi-{os.getpid()}.sock"

    if config.issues:
        logger.warning(f"Configuration validation issues: {config.issues}")

    return config
