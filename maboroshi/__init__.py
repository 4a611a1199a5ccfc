"""
Maboroshi - Terminal music player that streams search results through mpv.
"""

__version__ = "0.4.0"
__author__ = "Maboroshi Team"
__description__ = "A terminal music player that streams YouTube, Bilibili and SoundCloud audio through mpv."

from .cache import StreamCache
from .config import AppConfig, load_config
from .favorites import FavoritesQueue, FavoritesStore
from .models import PlaybackMode, PlayerStatus, ResolvedStream, Source, Track
from .mpv import PlayerProcessManager
from .orchestrator import Orchestrator, UiSnapshot
from .playback import PlaybackStateMachine
from .resolver import TrackResolver, YtDlpResolver

__all__ = [
    # Models
    'Track',
    'ResolvedStream',
    'Source',
    'PlaybackMode',
    'PlayerStatus',

    # Components
    'StreamCache',
    'PlayerProcessManager',
    'PlaybackStateMachine',
    'FavoritesQueue',
    'FavoritesStore',
    'TrackResolver',
    'YtDlpResolver',
    'Orchestrator',
    'UiSnapshot',

    # Config
    'load_config',
    'AppConfig',
]
