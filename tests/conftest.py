import shutil
import sys
import tempfile
import pytest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from maboroshi.models import Source, Track

FAKE_MPV = Path(__file__).parent / "fake_mpv.py"


@pytest.fixture
def temp_dir():
    """Create a temporary directory that is removed afterwards."""
    path = tempfile.mkdtemp()
    yield Path(path)
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def socket_dir():
    """Temporary directory with a short path, unix socket paths are limited to ~100 bytes."""
    path = tempfile.mkdtemp(prefix="mb", dir="/tmp")
    yield Path(path)
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def fake_mpv_command():
    """Command that runs the fake mpv IPC server with this interpreter."""
    return (sys.executable, str(FAKE_MPV))


@pytest.fixture
def sample_tracks():
    """Three favorites as they come back from a search."""
    return [
        Track("yt:a1", "First Song", artist="Alpha", duration=181.0, source=Source.YOUTUBE,
              url="https://www.youtube.com/watch?v=a1"),
        Track("bili:BV2", "第二首", artist="Beta", duration=240.0, source=Source.BILIBILI,
              url="https://www.bilibili.com/video/BV2"),
        Track("sc:c3", "Third Song", source=Source.SOUNDCLOUD),
    ]
