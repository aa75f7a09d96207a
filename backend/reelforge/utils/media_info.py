"""Media file information utilities using FFprobe."""

import json
import subprocess
from dataclasses import dataclass

from reelforge.config import get_settings


@dataclass
class MediaInfo:
    """Media file information."""

    duration_s: float | None = None
    width: int | None = None
    height: int | None = None
    fps: float | None = None
    video_codec: str | None = None
    has_video: bool = False
    has_audio: bool = False


def _run_ffprobe(file_path: str, *args: str) -> dict:
    """Run ffprobe and return parsed JSON."""
    settings = get_settings()
    cmd = [
        settings.ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        *args,
        file_path,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=30)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise RuntimeError(f"ffprobe failed to run: {e}") from e
    if result.returncode != 0:
        raise RuntimeError(f"ffprobe failed: {result.stderr}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"Failed to parse ffprobe output: {e}") from e


def _parse_rate(rate: str | None) -> float | None:
    if not rate or rate == "0/0":
        return None
    num, _, den = rate.partition("/")
    try:
        value = float(num) / float(den or 1)
    except (ValueError, ZeroDivisionError):
        return None
    return value or None


def get_media_duration(file_path: str) -> float:
    """
    Get media file duration in seconds.

    Raises:
        RuntimeError: If ffprobe fails or duration not found
    """
    data = _run_ffprobe(file_path, "-show_format")
    format_info = data.get("format", {})

    if "duration" not in format_info:
        raise RuntimeError(f"Duration not found in: {file_path}")

    return float(format_info["duration"])


def get_video_dimensions(file_path: str) -> tuple[int, int]:
    """
    Get video width and height.

    Raises:
        RuntimeError: If ffprobe fails or video stream not found
    """
    data = _run_ffprobe(file_path, "-show_streams", "-select_streams", "v")

    streams = data.get("streams", [])
    if not streams:
        raise RuntimeError(f"No video stream found in: {file_path}")

    width = streams[0].get("width")
    height = streams[0].get("height")
    if width is None or height is None:
        raise RuntimeError(f"Video dimensions not found in: {file_path}")

    return width, height


def get_media_info(file_path: str) -> MediaInfo:
    """
    Get comprehensive media file information.

    Duration comes from the container and falls back to the video stream;
    it is None when neither reports one (e.g. some live-encoded webm files).
    """
    data = _run_ffprobe(file_path, "-show_format", "-show_streams")

    info = MediaInfo()
    duration = data.get("format", {}).get("duration")

    for stream in data.get("streams", []):
        codec_type = stream.get("codec_type")
        if codec_type == "video" and not info.has_video:
            info.has_video = True
            info.width = stream.get("width")
            info.height = stream.get("height")
            info.video_codec = stream.get("codec_name")
            info.fps = _parse_rate(stream.get("avg_frame_rate")) or _parse_rate(
                stream.get("r_frame_rate")
            )
            if duration is None:
                duration = stream.get("duration")
        elif codec_type == "audio":
            info.has_audio = True

    if duration not in (None, "N/A"):
        try:
            info.duration_s = float(duration)
        except (TypeError, ValueError):
            info.duration_s = None

    return info
