"""
Track resolution and search through yt-dlp.
"""
import asyncio
import json
import os
import time
from typing import Dict, List, Optional, Tuple

from maboroshi.logging_config import ExtractorFailure, SearchError, TrackNotFound, get_logger
from maboroshi.models import ResolvedStream, Source, Track

logger = get_logger('resolver')

EXTRA_PATH_DIRS = ("/opt/homebrew/bin", "/usr/local/bin")


def extended_path_env() -> Dict[str, str]:
    """Environment with common Homebrew locations on PATH.

    Apps started outside a login shell often miss them, which hides both
    yt-dlp and mpv.
    """
    env = dict(os.environ)
    current = env.get("PATH", "")
    parts = current.split(os.pathsep) if current else []
    missing = [d for d in EXTRA_PATH_DIRS if d not in parts]
    if missing:
        env["PATH"] = os.pathsep.join(missing + parts)
    return env


class TrackResolver:
    """Base class for resolvers."""

    async def resolve(self, track: Track) -> ResolvedStream:
        """Turn a track into a playable stream URL."""
        raise NotImplementedError("Subclasses must implement resolve()")

    async def search(self, keyword: str, source: Source, page: int = 1) -> List[Track]:
        """Search ``source`` and return one page of tracks."""
        raise NotImplementedError("Subclasses must implement search()")


class YtDlpResolver(TrackResolver):
    """Resolver backed by the yt-dlp command line tool."""

    def __init__(
        self,
        page_size: int = 15,
        cookies_browser: Optional[str] = None,
        executable: str = "yt-dlp",
        search_timeout: float = 30.0,
    ):
        self.page_size = page_size
        self.cookies_browser = cookies_browser
        self.executable = executable
        self.search_timeout = search_timeout

    def _base_args(self) -> List[str]:
        args = [self.executable]
        if self.cookies_browser:
            args.extend(["--cookies-from-browser", self.cookies_browser])
        return args

    async def _run(self, args: List[str]) -> Tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=extended_path_env(),
            )
        except OSError as e:
            raise ExtractorFailure(f"Failed to run {self.executable}: {e}") from e
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            # Timed out or superseded; do not leave yt-dlp running.
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        return (
            process.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    @staticmethod
    def target_for(track: Track) -> str:
        if track.url:
            return track.url
        return f"{track.source.search_prefix}1:{track.title}"

    async def resolve(self, track: Track) -> ResolvedStream:
        """Resolve ``track`` to its best audio stream.

        Raises:
            TrackNotFound: yt-dlp succeeded but printed no URL
            ExtractorFailure: yt-dlp could not be run or exited with an error
        """
        args = self._base_args() + ["--get-url", "-f", "bestaudio", self.target_for(track)]
        logger.debug(f"Resolving {track.identifier}")
        code, stdout, stderr = await self._run(args)

        if code != 0:
            detail = " | ".join(stderr.strip().splitlines()[-3:]) or f"exit code {code}"
            raise ExtractorFailure(f"yt-dlp failed for {track.identifier}: {detail}")

        urls = [line.strip() for line in stdout.splitlines() if line.strip()]
        if not urls:
            raise TrackNotFound(f"No audio stream found for {track.identifier}")

        logger.info(f"Resolved {track.title}")
        return ResolvedStream(track_id=track.identifier, url=urls[0], resolved_at=time.time())

    async def search(self, keyword: str, source: Source, page: int = 1) -> List[Track]:
        """Search for ``keyword``; pages are ``page_size`` results long.

        Raises:
            SearchError: yt-dlp could not be run, failed, or timed out
        """
        if page < 1:
            raise ValueError(f"Page numbers start at 1, got {page}")
        first = (page - 1) * self.page_size + 1
        last = page * self.page_size
        args = self._base_args() + [
            "--dump-json",
            "--flat-playlist",
            "--playlist-items", f"{first}:{last}",
            f"{source.search_prefix}{last}:{keyword}",
        ]
        logger.info(f"Searching {source.value} for '{keyword}' (page {page})")
        try:
            code, stdout, stderr = await asyncio.wait_for(self._run(args), self.search_timeout)
        except asyncio.TimeoutError:
            raise SearchError(f"Search timed out after {self.search_timeout:.0f}s") from None
        except ExtractorFailure as e:
            raise SearchError(str(e)) from e

        if code != 0:
            detail = " | ".join(stderr.strip().splitlines()[-3:]) or f"exit code {code}"
            raise SearchError(f"Search failed: {detail}")

        tracks = parse_search_output(stdout, source)
        logger.info(f"Found {len(tracks)} results")
        return tracks


def parse_search_output(output: str, source: Source) -> List[Track]:
    """Parse ``--dump-json`` output, one JSON object per line."""
    tracks = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except ValueError:
            continue
        if not isinstance(entry, dict) or not entry.get("title"):
            continue
        track = _track_from_entry(entry, source)
        if track is not None:
            tracks.append(track)
    return tracks


def _track_from_entry(entry: Dict, source: Source) -> Optional[Track]:
    external_id = entry.get("id")
    if not external_id:
        return None
    duration = entry.get("duration")
    try:
        duration = float(duration) if duration is not None else None
    except (TypeError, ValueError):
        duration = None
    return Track(
        identifier=f"{source.value}:{external_id}",
        title=entry["title"],
        artist=entry.get("uploader") or entry.get("channel"),
        duration=duration,
        source=source,
        url=entry.get("webpage_url") or entry.get("url"),
    )
