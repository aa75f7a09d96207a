"""
Pytest fixtures for reelforge tests.

Most tests run against in-process fakes (``fakes.py``): a synthetic frame
source whose frame colors encode their source time, and a recording encoder.

CI/CD Note:
Tests that need a real ffmpeg binary are marked with @pytest.mark.requires_ffmpeg
and skipped when ffmpeg is not on PATH.
"""

import shutil
import subprocess
import tempfile
from pathlib import Path

import pytest

from reelforge.render.cache import RenderCache
from reelforge.render.pipeline import RenderConfig


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring ffmpeg/ffprobe binaries (skipped when absent)"
    )


def _ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


def pytest_collection_modifyitems(config, items):
    """Skip ffmpeg-backed tests when the binaries are missing."""
    if _ffmpeg_available():
        return
    skip = pytest.mark.skip(reason="ffmpeg/ffprobe not available on PATH")
    for item in items:
        if "requires_ffmpeg" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="reelforge_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def small_config() -> RenderConfig:
    """Small, low-rate output so scheduler tests stay fast."""
    return RenderConfig(
        width=108,
        height=192,
        fps=10,
        realtime=False,
        timeout_s=30.0,
        source_ready_timeout_s=2.0,
        default_source_duration_s=30.0,
        preview_scale=0.5,
    )


@pytest.fixture
def memory_cache() -> RenderCache:
    return RenderCache(max_entries=10, version="test")


@pytest.fixture
def hook_template() -> dict:
    """One 10s scene showing {{hook}} in the middle of the frame."""
    return {
        "name": "Hook only",
        "duration": 10,
        "scenes": [
            {
                "start": 0,
                "end": 10,
                "text": {
                    "content": "{{hook}}",
                    "position": {"x": 50, "y": 50},
                    "style": {"fontSize": 20, "color": "#ffffff"},
                },
            }
        ],
    }


@pytest.fixture
def two_scene_template() -> dict:
    """Two 5s scenes without explicit source mapping."""
    return {
        "duration": 10,
        "scenes": [
            {"start": 0, "end": 5, "text": {"content": "{{hook}}", "position": {"x": 50, "y": 20}}},
            {"start": 5, "end": 10, "text": {"content": "{{cta}}", "position": {"x": 50, "y": 80}}},
        ],
    }


@pytest.fixture
def sample_video(temp_output_dir) -> Path:
    """4s 320x240 test pattern at 10fps, generated with ffmpeg."""
    if not _ffmpeg_available():
        pytest.skip("ffmpeg/ffprobe not available on PATH")
    path = temp_output_dir / "testsrc.mp4"
    subprocess.run(
        [
            "ffmpeg", "-y", "-hide_banner", "-loglevel", "error",
            "-f", "lavfi", "-i", "testsrc2=size=320x240:rate=10:duration=4",
            "-c:v", "libx264", "-pix_fmt", "yuv420p",
            str(path),
        ],
        check=True,
        timeout=60,
    )
    return path
