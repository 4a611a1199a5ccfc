"""
Command line entry point: ``maboroshi`` or ``python -m maboroshi``.
"""
import asyncio
import shutil
import signal
import sys
from pathlib import Path
from typing import List, Optional

from maboroshi import __author__, __description__, __version__
from maboroshi.cache import StreamCache
from maboroshi.config import AppConfig, get_config_path, load_config
from maboroshi.favorites import FavoritesQueue, FavoritesStore
from maboroshi.logging_config import (
    PersistenceError,
    RecentLogHandler,
    StartupFailure,
    get_logger,
    setup_logging,
)
from maboroshi.mpv import PlayerProcessManager
from maboroshi.orchestrator import Orchestrator, Quit
from maboroshi.playback import PlaybackStateMachine
from maboroshi.resolver import YtDlpResolver, extended_path_env
from maboroshi.terminal import TerminalUI

logger = get_logger('main')


def _find_command(cmd: str) -> str:
    """Locate ``cmd`` on PATH, including the usual Homebrew directories."""
    return shutil.which(cmd, path=extended_path_env().get("PATH")) or cmd


def build_orchestrator(config: AppConfig, log_handler: RecentLogHandler) -> Orchestrator:
    """Wire up every component from the loaded configuration."""
    store = FavoritesStore(config.favorites_path)
    try:
        tracks = store.load()
        on_change = store.autosave
    except PersistenceError as e:
        # Do not overwrite a file we could not read.
        logger.error(f"{e}; favorites will not be saved this session")
        tracks = []
        on_change = None
    favorites = FavoritesQueue(tracks, on_change=on_change)

    cache = StreamCache(
        capacity=config.cache.url_cache_size,
        ttl=config.cache.url_cache_ttl,
        sliding=config.cache.sliding_expiry,
    )
    player = PlayerProcessManager(
        config.socket_path,
        command=(_find_command(config.player.mpv_path),),
        connect_timeout=config.player.connect_timeout,
        grace_period=config.player.stop_grace,
    )
    resolver = YtDlpResolver(
        page_size=config.search.max_results,
        cookies_browser=config.search.cookies_browser or None,
        executable=_find_command("yt-dlp"),
        search_timeout=config.search.timeout,
    )
    machine = PlaybackStateMachine(
        favorites,
        mode=config.playback.default_mode,
        volume=config.playback.volume,
    )
    return Orchestrator(
        player,
        resolver,
        cache,
        favorites,
        machine,
        source=config.search.source,
        resolve_timeout=config.network.play_timeout,
        volume_step=config.playback.volume_step,
        seek_seconds=config.playback.seek_seconds,
        log_handler=log_handler,
    )


async def run(config: AppConfig, log_handler: RecentLogHandler) -> None:
    orchestrator = build_orchestrator(config, log_handler)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGHUP):
        loop.add_signal_handler(sig, orchestrator.submit, Quit())

    ui = TerminalUI(orchestrator, source_label=config.search.source.value)
    ui.attach()
    try:
        await orchestrator.run()
    finally:
        ui.detach()


def _print_help() -> None:
    print(f"maboroshi {__version__}")
    print("")
    print("Usage:")
    print("  maboroshi                  # Run the player")
    print("  maboroshi --config PATH    # Use another config file")
    print("  maboroshi --debug          # Log at DEBUG level")
    print("  maboroshi --version        # Show version info")
    print("  maboroshi --help           # Show this help")
    print("")
    print(f"Config file: {get_config_path()}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the music player."""
    args = sys.argv[1:] if argv is None else list(argv)

    if "--version" in args or "-v" in args:
        print(f"maboroshi {__version__}")
        print(f"{__description__}")
        print(f"Author: {__author__}")
        return 0
    if "--help" in args or "-h" in args:
        _print_help()
        return 0

    config_path = None
    if "--config" in args:
        index = args.index("--config")
        if index + 1 >= len(args):
            print("Error: --config needs a file path")
            return 2
        config_path = Path(args[index + 1]).expanduser()

    if not sys.stdin.isatty() or not sys.stdout.isatty():
        print("Error: Must run in interactive terminal")
        print("Usage: maboroshi [--config PATH] [--debug]")
        return 1

    config = load_config(config_path)

    level = "DEBUG" if "--debug" in args else config.logging.level
    log_handler = RecentLogHandler()
    root = setup_logging(level, config.log_file, console=False)
    root.addHandler(log_handler)
    for issue in config.issues:
        logger.warning(f"Config: {issue}")

    try:
        asyncio.run(run(config, log_handler))
    except StartupFailure as e:
        print(f"Error: {e}")
        print("Is mpv installed and on your PATH?")
        return 1
    except KeyboardInterrupt:
        pass

    print("\n  Bye!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
