"""In-process stand-ins for the ffmpeg-backed source and encoder."""

import asyncio

from PIL import Image

from reelforge.exceptions import SourceUnavailableError
from reelforge.render.encoder import Encoder
from reelforge.render.source import FrameSource


def color_for_index(index: int) -> tuple[int, int, int]:
    """Solid color that encodes a source frame index."""
    return (index % 256, (index // 256) % 256, 128)


def index_for_color(color: tuple[int, ...]) -> int:
    return color[0] + color[1] * 256


class FakeFrameSource(FrameSource):
    """Synthetic source: frame ``i`` is a solid color encoding ``i``.

    Args:
        duration: Source length in seconds (None = unknown)
        seek_gate: When set, seeks block until the event is set
        hang_seeks: Seeks never complete
        fail_open: open() raises like an undecodable file
    """

    def __init__(
        self,
        path: str = "fake.mp4",
        fps: float = 10,
        *,
        width: int = 320,
        height: int = 240,
        duration: float | None = 20.0,
        seek_gate: asyncio.Event | None = None,
        hang_seeks: bool = False,
        fail_open: bool = False,
        never_ready: bool = False,
    ):
        super().__init__()
        self.path = path
        self.fps = float(fps)
        self.width = width
        self.height = height
        self.duration = duration
        self.seek_gate = seek_gate
        self.hang_seeks = hang_seeks
        self.fail_open = fail_open
        self.never_ready = never_ready
        self.seeks: list[float] = []
        self.reads = 0
        self.closed = False
        self._index = 0

    def _show(self, index: int) -> Image.Image:
        self._index = index
        self.position = index / self.fps
        self.frame = Image.new("RGB", (self.width, self.height), color_for_index(index))
        return self.frame

    async def open(self) -> None:
        if self.fail_open:
            raise SourceUnavailableError("fake source cannot be decoded", stage="open")
        if self.never_ready:
            await asyncio.Event().wait()
        self._show(0)

    async def seek(self, t: float) -> None:
        self.seeks.append(t)
        if self.hang_seeks:
            await asyncio.Event().wait()
        if self.seek_gate is not None:
            await self.seek_gate.wait()
        self._show(round(self.clamp(t) * self.fps))

    async def read_frame(self) -> Image.Image | None:
        next_index = self._index + 1
        if self.duration is not None and next_index / self.fps >= self.duration:
            return None
        self.reads += 1
        return self._show(next_index)

    async def close(self) -> None:
        self.closed = True


class FakeEncoder(Encoder):
    """Records pushed frames; returns a small non-empty blob unless ``empty``."""

    def __init__(self, *, empty: bool = False, push_delay: float = 0.0):
        self.empty = empty
        self.push_delay = push_delay
        self.frames: list[Image.Image] = []
        self.started_with: tuple[int, int, float] | None = None
        self.finished = False
        self.aborted = False

    async def start(self, width: int, height: int, fps: float) -> None:
        self.started_with = (width, height, fps)

    async def push_frame(self, image: Image.Image) -> None:
        if self.push_delay:
            await asyncio.sleep(self.push_delay)
        self.frames.append(image)

    async def finish(self) -> bytes:
        self.finished = True
        if self.empty:
            return b""
        return b"FAKEMP4" + len(self.frames).to_bytes(4, "big")

    async def abort(self) -> None:
        self.aborted = True
