"""Output encoding.

``Encoder`` is the capability interface the render loop writes into;
``FFmpegEncoder`` pipes raw RGB24 frames into ffmpeg and produces an H.264
MP4. ``EncoderSession`` sits between the scheduler and an encoder: it maps
timestamped frames onto fixed-rate output slots and guarantees that a finished
session returns either non-empty output or an error.
"""

import asyncio
import contextlib
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable

from PIL import Image

from reelforge.config import get_settings
from reelforge.exceptions import EmptyOutputError, EncoderBusyError, EncoderError
from reelforge.render.scheduler import CompositedFrame

logger = logging.getLogger(__name__)


class Encoder(ABC):
    """Consumes frames, produces one encoded blob."""

    @abstractmethod
    async def start(self, width: int, height: int, fps: float) -> None: ...

    @abstractmethod
    async def push_frame(self, image: Image.Image) -> None: ...

    @abstractmethod
    async def finish(self) -> bytes:
        """Flush and return the encoded output (may be empty on failure)."""

    @abstractmethod
    async def abort(self) -> None:
        """Discard everything; safe to call more than once."""


class FFmpegEncoder(Encoder):
    """H.264/MP4 via an ffmpeg subprocess reading rawvideo from stdin."""

    def __init__(self) -> None:
        settings = get_settings()
        self.ffmpeg_path = settings.ffmpeg_path
        self.codec = settings.render_video_codec
        self.crf = settings.render_crf
        self.preset = settings.render_preset
        self.pixel_format = settings.render_pixel_format
        self._process: asyncio.subprocess.Process | None = None
        self._work_dir: str | None = None
        self._output_path: str | None = None
        self._size: tuple[int, int] = (0, 0)

    def build_command(self, width: int, height: int, fps: float, output_path: str) -> list[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-loglevel", "error",
            "-f", "rawvideo",
            "-pix_fmt", "rgb24",
            "-s", f"{width}x{height}",
            "-r", f"{fps:g}",
            "-i", "-",
            "-an",
            # yuv420p needs even dimensions
            "-vf", "pad=ceil(iw/2)*2:ceil(ih/2)*2",
            "-c:v", self.codec,
            "-preset", self.preset,
            "-crf", str(self.crf),
            "-pix_fmt", self.pixel_format,
            "-movflags", "+faststart",
            output_path,
        ]

    async def start(self, width: int, height: int, fps: float) -> None:
        self._work_dir = tempfile.mkdtemp(prefix="reelforge_encode_")
        self._output_path = os.path.join(self._work_dir, "output.mp4")
        self._size = (width, height)
        cmd = self.build_command(width, height, fps, self._output_path)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._cleanup()
            raise EncoderError(f"Cannot start ffmpeg: {e}") from e
        logger.info(f"[ENCODER] Started {width}x{height}@{fps:g} -> {self._output_path}")

    async def push_frame(self, image: Image.Image) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise EncoderError("Encoder not started")
        if image.size != self._size:
            image = image.resize(self._size)
        try:
            process.stdin.write(image.convert("RGB").tobytes())
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            stderr = await self._read_stderr()
            raise EncoderError(f"ffmpeg closed its input: {stderr or e}") from e

    async def _read_stderr(self) -> str:
        process = self._process
        if process is None or process.stderr is None:
            return ""
        data = await process.stderr.read()
        return data.decode("utf-8", errors="replace").strip()

    async def finish(self) -> bytes:
        process = self._process
        if process is None or process.stdin is None:
            raise EncoderError("Encoder not started")
        try:
            process.stdin.close()
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                await process.stdin.wait_closed()
            stderr = await self._read_stderr()
            returncode = await process.wait()
            if returncode != 0:
                raise EncoderError(f"ffmpeg exited with {returncode}: {stderr[-500:]}")
            if not self._output_path or not os.path.exists(self._output_path):
                return b""
            with open(self._output_path, "rb") as f:
                data = f.read()
            logger.info(f"[ENCODER] Finished: {len(data)} bytes")
            return data
        finally:
            self._process = None
            self._cleanup()

    async def abort(self) -> None:
        process = self._process
        self._process = None
        if process is not None and process.returncode is None:
            process.kill()
            await process.wait()
        self._cleanup()

    def _cleanup(self) -> None:
        if self._work_dir:
            shutil.rmtree(self._work_dir, ignore_errors=True)
            self._work_dir = None


class EncoderSession:
    """One encoding run fed by a scheduler's frame stream.

    Frames land in slot ``round(timestamp * fps)``. A late frame repeats the
    previous image into skipped slots, an early or duplicate one is dropped,
    and ``stop()`` pads the tail so the output holds exactly
    ``round(duration * fps)`` frames.
    """

    def __init__(self, encoder: Encoder, width: int, height: int):
        self.encoder = encoder
        self.width = width
        self.height = height
        self.fps: float = 0.0
        self.duration: float | None = None
        self.frames_written = 0
        self.frames_dropped = 0
        self.frames_repeated = 0
        self._task: asyncio.Task | None = None
        self._last_image: Image.Image | None = None
        self._next_slot = 0
        self._on_frame: Callable[[int, int | None], None] | None = None

    @property
    def active(self) -> bool:
        return self._task is not None

    @property
    def target_frames(self) -> int | None:
        if self.duration is None:
            return None
        return round(self.duration * self.fps)

    async def start(
        self,
        frames: AsyncIterator[CompositedFrame],
        fps: float,
        duration: float | None = None,
        on_frame: Callable[[int, int | None], None] | None = None,
    ) -> "EncoderSession":
        """Begin consuming ``frames``.

        Raises:
            EncoderBusyError: If this session is already running
        """
        if self._task is not None:
            raise EncoderBusyError()
        self.fps = float(fps)
        self.duration = duration
        self._on_frame = on_frame
        await self.encoder.start(self.width, self.height, self.fps)
        self._task = asyncio.create_task(self._consume(frames))
        return self

    async def _write(self, image: Image.Image) -> None:
        await self.encoder.push_frame(image)
        self.frames_written += 1
        self._next_slot += 1
        if self._on_frame:
            self._on_frame(self._next_slot, self.target_frames)

    async def _consume(self, frames: AsyncIterator[CompositedFrame]) -> None:
        target = self.target_frames
        async for frame in frames:
            slot = round(frame.timestamp * self.fps)
            if slot < self._next_slot or (target is not None and slot >= target):
                self.frames_dropped += 1
                continue
            while self._next_slot < slot:
                await self._write(self._last_image or frame.image)
                self.frames_repeated += 1
            self._last_image = frame.image
            await self._write(frame.image)

    async def stop(self) -> bytes:
        """Wait for the frame stream to drain, then finalize.

        Returns:
            Encoded output bytes

        Raises:
            EmptyOutputError: If nothing was captured
            ReelforgeError: Whatever ended the frame stream early
        """
        if self._task is None:
            raise EncoderError("Encoder session was never started")
        try:
            await self._task
            target = self.target_frames
            if target is not None and self._last_image is not None:
                while self._next_slot < target:
                    await self._write(self._last_image)
                    self.frames_repeated += 1

            if self.frames_written == 0:
                await self.encoder.abort()
                raise EmptyOutputError("No frames were captured")

            data = await self.encoder.finish()
        except BaseException:
            await self.encoder.abort()
            raise
        finally:
            self._task = None

        if not data:
            raise EmptyOutputError("Encoder produced zero bytes")
        logger.info(
            f"[ENCODER] Session done: written={self.frames_written}, "
            f"repeated={self.frames_repeated}, dropped={self.frames_dropped}"
        )
        return data

    async def cancel(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.encoder.abort()
