import json
import os
import stat
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))
from maboroshi.logging_config import ExtractorFailure, SearchError, TrackNotFound
from maboroshi.models import Source, Track
from maboroshi.resolver import YtDlpResolver, extended_path_env, parse_search_output

FAKE_YT_DLP = """#!/bin/sh
echo "$@" > "$(dirname "$0")/args.txt"
case "$*" in
  *--get-url*)
    case "$*" in
      *broken*) echo "WARNING: retrying" >&2; echo "ERROR: Video unavailable" >&2; exit 1 ;;
      *empty*) exit 0 ;;
      *) echo "https://cdn.example/audio.webm"; echo "https://cdn.example/second" ;;
    esac ;;
  *--dump-json*)
    case "$*" in
      *slow*) sleep 5 ;;
      *fail*) echo "ERROR: Unable to download" >&2; exit 1 ;;
    esac
    echo '{"id": "abc", "title": "Lofi Song", "uploader": "Chill", "duration": 120, "webpage_url": "https://www.youtube.com/watch?v=abc"}'
    echo 'not json'
    echo '{"id": "def", "title": "Another", "channel": "Chan"}' ;;
esac
"""


@pytest.fixture
def fake_yt_dlp(temp_dir):
    """Install a shell script that behaves like yt-dlp."""
    path = temp_dir / "yt-dlp"
    path.write_text(FAKE_YT_DLP)
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


def recorded_args(fake_yt_dlp):
    return (fake_yt_dlp.parent / "args.txt").read_text().split()


class TestParseSearchOutput:
    """Tests for parsing --dump-json output."""

    def test_parses_entries(self):
        """Test building tracks from yt-dlp JSON lines."""
        output = "\n".join([
            json.dumps({"id": "BV1xx", "title": "歌", "uploader": "UP", "duration": 95.5,
                        "url": "https://www.bilibili.com/video/BV1xx"}),
            "",
            json.dumps({"id": "2", "title": "No metadata"}),
        ])

        tracks = parse_search_output(output, Source.BILIBILI)

        assert tracks[0].identifier == "bili:BV1xx"
        assert tracks[0].artist == "UP"
        assert tracks[0].duration == 95.5
        assert tracks[0].url == "https://www.bilibili.com/video/BV1xx"
        assert tracks[0].source is Source.BILIBILI
        assert tracks[1].duration is None
        assert tracks[1].url is None

    def test_skips_bad_lines(self):
        """Test that broken or incomplete entries are dropped."""
        output = "\n".join([
            "garbage",
            json.dumps(["list"]),
            json.dumps({"id": "x"}),
            json.dumps({"title": "no id"}),
            json.dumps({"id": "y", "title": "ok", "duration": "n/a"}),
        ])

        tracks = parse_search_output(output, Source.YOUTUBE)

        assert [t.identifier for t in tracks] == ["yt:y"]
        assert tracks[0].duration is None


class TestTargets:
    """Tests for what yt-dlp is asked to resolve."""

    def test_url_is_preferred(self):
        """Test that a known page URL is used directly."""
        track = Track("yt:abc", "Song", url="https://www.youtube.com/watch?v=abc")
        assert YtDlpResolver.target_for(track) == "https://www.youtube.com/watch?v=abc"

    def test_title_search_fallback(self):
        """Test favorites without a URL are found by title."""
        track = Track("sc:title:Song", "Song", source=Source.SOUNDCLOUD)
        assert YtDlpResolver.target_for(track) == "scsearch1:Song"

    def test_extended_path(self, monkeypatch):
        """Test that Homebrew directories are added once."""
        monkeypatch.setenv("PATH", "/usr/local/bin:/usr/bin")
        parts = extended_path_env()["PATH"].split(os.pathsep)

        assert parts == ["/opt/homebrew/bin", "/usr/local/bin", "/usr/bin"]


class TestYtDlpResolver:
    """Tests against a fake yt-dlp."""

    @pytest.mark.asyncio
    async def test_resolve_returns_first_url(self, fake_yt_dlp):
        """Test successful resolution."""
        resolver = YtDlpResolver(executable=str(fake_yt_dlp), cookies_browser="firefox")
        track = Track("yt:abc", "Song", url="https://www.youtube.com/watch?v=abc")

        stream = await resolver.resolve(track)

        assert stream.track_id == "yt:abc"
        assert stream.url == "https://cdn.example/audio.webm"
        args = recorded_args(fake_yt_dlp)
        assert args[:2] == ["--cookies-from-browser", "firefox"]
        assert "bestaudio" in args

    @pytest.mark.asyncio
    async def test_extractor_failure(self, fake_yt_dlp):
        """Test that a failing yt-dlp reports its last error lines."""
        resolver = YtDlpResolver(executable=str(fake_yt_dlp))

        with pytest.raises(ExtractorFailure, match="Video unavailable"):
            await resolver.resolve(Track("yt:broken", "broken"))

    @pytest.mark.asyncio
    async def test_no_url_is_not_found(self, fake_yt_dlp):
        """Test empty output."""
        resolver = YtDlpResolver(executable=str(fake_yt_dlp))

        with pytest.raises(TrackNotFound):
            await resolver.resolve(Track("yt:empty", "empty"))

    @pytest.mark.asyncio
    async def test_missing_executable(self, temp_dir):
        """Test that a missing yt-dlp is an extractor failure."""
        resolver = YtDlpResolver(executable=str(temp_dir / "nope"))

        with pytest.raises(ExtractorFailure):
            await resolver.resolve(Track("yt:a", "a"))

    @pytest.mark.asyncio
    async def test_search_pages(self, fake_yt_dlp):
        """Test search arguments and parsing."""
        resolver = YtDlpResolver(page_size=10, executable=str(fake_yt_dlp))

        tracks = await resolver.search("lofi", Source.YOUTUBE, page=2)

        assert [t.identifier for t in tracks] == ["yt:abc", "yt:def"]
        assert tracks[1].artist == "Chan"
        args = recorded_args(fake_yt_dlp)
        assert "11:20" in args
        assert "ytsearch20:lofi" in args

    @pytest.mark.asyncio
    async def test_search_failure(self, fake_yt_dlp):
        """Test a failing search."""
        resolver = YtDlpResolver(executable=str(fake_yt_dlp))

        with pytest.raises(SearchError, match="Unable to download"):
            await resolver.search("fail", Source.YOUTUBE)

    @pytest.mark.asyncio
    async def test_search_timeout(self, fake_yt_dlp):
        """Test that a stuck search is abandoned."""
        resolver = YtDlpResolver(executable=str(fake_yt_dlp), search_timeout=0.3)

        with pytest.raises(SearchError, match="timed out"):
            await resolver.search("slow", Source.YOUTUBE)

    @pytest.mark.asyncio
    async def test_invalid_page(self, fake_yt_dlp):
        """Test page numbers start at one."""
        resolver = YtDlpResolver(executable=str(fake_yt_dlp))

        with pytest.raises(ValueError):
            await resolver.search("lofi", Source.YOUTUBE, page=0)
