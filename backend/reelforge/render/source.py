"""Source video decoding.

``FrameSource`` is the decode position the scheduler drives: it can seek
(asynchronously, completing once the first frame at the target time is
decoded) or step forward one frame at a time. ``FFmpegFrameSource`` decodes
with an ffmpeg subprocess emitting raw RGB24 frames at the render rate.
"""

import asyncio
import logging
from abc import ABC, abstractmethod

import numpy as np
from PIL import Image

from reelforge.config import get_settings
from reelforge.exceptions import SourceUnavailableError
from reelforge.utils.media_info import get_media_info

logger = logging.getLogger(__name__)


class FrameSource(ABC):
    """A seekable stream of decoded source frames."""

    width: int = 0
    height: int = 0
    duration: float | None = None
    fps: float = 30.0

    def __init__(self) -> None:
        self.position: float = 0.0
        self.frame: Image.Image | None = None

    @property
    def frame_interval(self) -> float:
        return 1.0 / self.fps

    @property
    def is_ready(self) -> bool:
        return self.frame is not None

    @abstractmethod
    async def open(self) -> None:
        """Discover dimensions and duration, and decode the first frame."""

    @abstractmethod
    async def seek(self, t: float) -> None:
        """Reposition to ``t`` seconds; returns once that frame is decoded."""

    @abstractmethod
    async def read_frame(self) -> Image.Image | None:
        """Advance one frame. Returns None at end of stream."""

    @abstractmethod
    async def close(self) -> None:
        """Release the decoder."""

    def clamp(self, t: float) -> float:
        """Clamp a seek target into the decodable range."""
        t = max(0.0, t)
        if self.duration:
            t = min(t, max(0.0, self.duration - self.frame_interval))
        return t


class FFmpegFrameSource(FrameSource):
    """Decodes a local video file through an ffmpeg rawvideo pipe."""

    def __init__(self, path: str, fps: float | None = None):
        super().__init__()
        settings = get_settings()
        self.path = path
        self.fps = float(fps or settings.render_fps)
        self.ffmpeg_path = settings.ffmpeg_path
        self._process: asyncio.subprocess.Process | None = None
        self._decoder_start = 0.0
        self._frames_read = 0

    @property
    def _frame_bytes(self) -> int:
        return self.width * self.height * 3

    async def open(self) -> None:
        try:
            info = await asyncio.to_thread(get_media_info, self.path)
        except RuntimeError as e:
            raise SourceUnavailableError(f"Cannot probe source: {e}", stage="open") from e

        if not info.has_video or not info.width or not info.height:
            raise SourceUnavailableError(f"No video stream in source: {self.path}", stage="open")

        self.width = info.width
        self.height = info.height
        self.duration = info.duration_s
        logger.info(
            f"[SOURCE] Opened {self.path}: {self.width}x{self.height}, "
            f"duration={self.duration if self.duration is not None else 'unknown'}s"
        )

        await self._start_decoder(0.0)
        if await self.read_frame() is None:
            await self.close()
            raise SourceUnavailableError(f"Source produced no frames: {self.path}", stage="open")

    async def _start_decoder(self, t: float) -> None:
        await self._stop_decoder()
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-noautorotate",
            "-ss", f"{t:.3f}",
            "-i", self.path,
            "-an",
            "-vf", f"fps={self.fps:g}",
            "-f", "rawvideo",
            "-pix_fmt", "rgb24",
            "-",
        ]
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise SourceUnavailableError(f"Cannot start decoder: {e}", stage="open") from e
        self._decoder_start = t
        self._frames_read = 0

    async def _stop_decoder(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return
        process.kill()
        await process.wait()

    async def seek(self, t: float) -> None:
        target = self.clamp(t)
        await self._start_decoder(target)
        if await self.read_frame() is None:
            logger.warning(f"[SOURCE] Seek to {target:.3f}s produced no frame")

    async def read_frame(self) -> Image.Image | None:
        process = self._process
        if process is None or process.stdout is None:
            return None
        try:
            data = await process.stdout.readexactly(self._frame_bytes)
        except asyncio.IncompleteReadError:
            return None

        array = np.frombuffer(data, dtype=np.uint8).reshape(self.height, self.width, 3)
        self.frame = Image.fromarray(array)
        self.position = self._decoder_start + self._frames_read / self.fps
        self._frames_read += 1
        return self.frame

    async def close(self) -> None:
        await self._stop_decoder()
