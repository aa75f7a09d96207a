"""Timeline scheduler.

Drives the fixed-rate render loop: each tick picks the active scene, decides
whether the source must seek or keep playing forward, and composites one
frame. A frame is always produced; while a seek is in flight the last good
source frame is reused instead of dropping to black.

State machine::

    IDLE -> SEEKING(scene) <-> PLAYING(scene) -> DRAINING -> COMPLETE
                                              \\-> FAILED / CANCELLED
"""

import asyncio
import contextlib
import dataclasses
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from PIL import Image

from reelforge.config import get_settings
from reelforge.exceptions import SeekTimeoutError, SourceUnavailableError
from reelforge.render.layer_compositor import FrameCompositor
from reelforge.render.scene_mapping import SceneVideoMapping, find_scene
from reelforge.render.source import FrameSource
from reelforge.render.text_renderer import RenderableText, compute_fade_opacity
from reelforge.schemas.template import TextOverlay, TextStyle

logger = logging.getLogger(__name__)

# Forward decode steps allowed per tick before a corrective seek is cheaper
MAX_FORWARD_FRAMES = 4
# After a seek timeout, corrective seeks are suppressed for this long (output seconds)
SEEK_RETRY_BACKOFF_S = 1.0


class SchedulerState(Enum):
    IDLE = "idle"
    SEEKING = "seeking"
    PLAYING = "playing"
    DRAINING = "draining"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ============================================================================
# Clocks
# ============================================================================


class Clock(ABC):
    """Tick source for the render loop."""

    realtime: bool = False

    def __init__(self, fps: float):
        self.fps = float(fps)
        self._tick = 0

    @property
    def interval(self) -> float:
        return 1.0 / self.fps

    @abstractmethod
    def start(self) -> None: ...

    @abstractmethod
    def elapsed(self) -> float: ...

    @abstractmethod
    async def wait_next_tick(self) -> None: ...


class WallClock(Clock):
    """Real-time pacing; output time is measured wall-clock time."""

    realtime = True

    def __init__(self, fps: float):
        super().__init__(fps)
        self._start = 0.0

    def start(self) -> None:
        self._start = time.monotonic()
        self._tick = 0

    def elapsed(self) -> float:
        return time.monotonic() - self._start

    async def wait_next_tick(self) -> None:
        self._tick += 1
        delay = self._start + self._tick * self.interval - time.monotonic()
        if delay > 0:
            await asyncio.sleep(delay)
            return
        # Fell behind: realign to the current slot instead of bursting
        self._tick = int(self.elapsed() * self.fps)
        await asyncio.sleep(0)


class FrameClock(Clock):
    """Offline pacing; each tick advances output time by exactly one frame."""

    def start(self) -> None:
        self._tick = 0

    def elapsed(self) -> float:
        return self._tick / self.fps

    async def wait_next_tick(self) -> None:
        self._tick += 1
        await asyncio.sleep(0)


# ============================================================================
# Data
# ============================================================================


@dataclass
class SceneOverlay:
    """Resolved overlay text and effective style of one scene."""

    overlay: TextOverlay
    style: TextStyle


@dataclass
class CompositedFrame:
    timestamp: float  # output time
    scene_index: int | None
    image: Image.Image
    held: bool = False  # source frame reused from an earlier tick


@dataclass
class SchedulerStats:
    frames: int = 0
    seeks: int = 0
    corrective_seeks: int = 0
    pre_seeks: int = 0
    seek_timeouts: int = 0
    held_frames: int = 0
    loops: int = 0
    state_changes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "frames": self.frames,
            "seeks": self.seeks,
            "corrective_seeks": self.corrective_seeks,
            "pre_seeks": self.pre_seeks,
            "seek_timeouts": self.seek_timeouts,
            "held_frames": self.held_frames,
            "loops": self.loops,
        }


# ============================================================================
# Scheduler
# ============================================================================


class TimelineScheduler:
    """Produces composited frames for one pass (or endless loop) over a template.

    Args:
        source: Opened frame source
        mappings: Scene windows in timeline order
        overlays: Per-scene overlay (None = no text), same order as ``mappings``
        duration: Template duration in seconds
        compositor: Output surface
        clock: Tick source; defaults to a FrameClock at the configured fps
        loop: Wrap output time at ``duration`` (preview)
        await_seeks: Block the loop on seeks instead of running them in the
            background; defaults to True for non-realtime clocks
    """

    def __init__(
        self,
        source: FrameSource,
        mappings: Sequence[SceneVideoMapping],
        overlays: Sequence[SceneOverlay | None],
        duration: float,
        compositor: FrameCompositor,
        clock: Clock | None = None,
        *,
        loop: bool = False,
        await_seeks: bool | None = None,
        drift_tolerance: float | None = None,
        pre_seek_buffer: float | None = None,
        seek_timeout: float | None = None,
        ready_timeout: float | None = None,
    ):
        settings = get_settings()
        if len(overlays) != len(mappings):
            raise ValueError("overlays and mappings must have the same length")

        self.source = source
        self.mappings = list(mappings)
        self.overlays = list(overlays)
        self.duration = duration
        self.compositor = compositor
        self.clock = clock or FrameClock(settings.render_fps)
        self.loop = loop
        self.await_seeks = (not self.clock.realtime) if await_seeks is None else await_seeks
        if drift_tolerance is None:
            drift_tolerance = settings.preview_drift_tolerance_s if loop else settings.drift_tolerance_s
        self.drift_tolerance = drift_tolerance
        self.pre_seek_buffer = (
            settings.pre_seek_buffer_s if pre_seek_buffer is None else pre_seek_buffer
        )
        self.seek_timeout = settings.seek_timeout_s if seek_timeout is None else seek_timeout
        self.ready_timeout = (
            settings.source_ready_timeout_s if ready_timeout is None else ready_timeout
        )

        self.state = SchedulerState.IDLE
        self.stats = SchedulerStats()
        self.last_good_frame: Image.Image | None = source.frame

        self._current: SceneVideoMapping | None = None
        self._seek_task: asyncio.Task | None = None
        self._pre_seeked_scene: int | None = None
        self._seek_backoff_until = -1.0
        self._source_exhausted = False
        self._layouts: dict[int, RenderableText | None] = {}

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(self, state: SchedulerState) -> None:
        if state is self.state:
            return
        self.state = state
        self.stats.state_changes.append(state.value)

    @property
    def seeking(self) -> bool:
        return self._seek_task is not None and not self._seek_task.done()

    # ------------------------------------------------------------------
    # Seeking
    # ------------------------------------------------------------------

    async def _run_seek(self, target: float, scene_index: int | None, output_time: float) -> bool:
        try:
            await asyncio.wait_for(self.source.seek(target), timeout=self.seek_timeout)
        except asyncio.TimeoutError:
            error = SeekTimeoutError(target, scene_index)
            self.stats.seek_timeouts += 1
            self._seek_backoff_until = output_time + SEEK_RETRY_BACKOFF_S
            logger.warning(f"[SCHEDULER] {error.message}; holding last good frame")
            return False
        self._source_exhausted = False
        return True

    async def _cancel_seek(self) -> None:
        task = self._seek_task
        self._seek_task = None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _seek(self, target: float, scene_index: int | None, output_time: float) -> None:
        await self._cancel_seek()
        self.stats.seeks += 1
        logger.debug(f"[SCHEDULER] Seek to {target:.3f}s for scene {scene_index}")
        if self.await_seeks:
            self._set_state(SchedulerState.SEEKING)
            await self._run_seek(target, scene_index, output_time)
        else:
            self._seek_task = asyncio.create_task(self._run_seek(target, scene_index, output_time))

    # ------------------------------------------------------------------
    # Per-tick decisions
    # ------------------------------------------------------------------

    def _next_mapping(self, current: SceneVideoMapping) -> SceneVideoMapping | None:
        following = [m for m in self.mappings if m.output_start >= current.output_end]
        if not following:
            return None
        return min(following, key=lambda m: (m.output_start, m.scene_index))

    async def _enter_scene(self, mapping: SceneVideoMapping, output_time: float) -> None:
        previous = self._current
        self._current = mapping
        logger.info(
            f"[SCHEDULER] Scene {mapping.scene_index} at {output_time:.3f}s "
            f"(source {mapping.source_start:.2f}-{mapping.source_end:.2f}s)"
        )
        if self._pre_seeked_scene == mapping.scene_index:
            self._pre_seeked_scene = None
            return
        self._pre_seeked_scene = None

        target = mapping.source_time_at(output_time)
        if (
            previous is not None
            and not self.seeking
            and not self._source_exhausted
            and abs(self.source.position - target) <= 1.5 * self.source.frame_interval
        ):
            # Contiguous source footage; keep playing through the cut
            return
        await self._seek(target, mapping.scene_index, output_time)

    async def _advance(self, mapping: SceneVideoMapping, output_time: float) -> None:
        """Keep the source within tolerance of the expected position."""
        expected = mapping.source_time_at(output_time)
        behind = expected - self.source.position

        if abs(behind) > self.drift_tolerance and not self._source_exhausted:
            if output_time >= self._seek_backoff_until:
                self.stats.corrective_seeks += 1
                logger.info(
                    f"[SCHEDULER] Drift {behind:+.3f}s in scene {mapping.scene_index}, "
                    f"corrective seek to {expected:.3f}s"
                )
                await self._seek(expected, mapping.scene_index, output_time)
            return

        steps = 0
        half_frame = self.source.frame_interval / 2
        while (
            not self._source_exhausted
            and expected - self.source.position >= half_frame
            and steps < MAX_FORWARD_FRAMES
        ):
            if await self.source.read_frame() is None:
                self._source_exhausted = True
                logger.info(f"[SCHEDULER] Source ended at {self.source.position:.3f}s")
            steps += 1

    async def _maybe_pre_seek(self, mapping: SceneVideoMapping, output_time: float) -> None:
        # Blocking seeks already land exactly on the cut
        if self.await_seeks or self.pre_seek_buffer <= 0:
            return
        if self._pre_seeked_scene is not None or self.seeking:
            return
        nxt = self._next_mapping(mapping)
        if nxt is None or nxt.output_start - output_time > self.pre_seek_buffer:
            return
        if nxt.output_start >= self.duration and not self.loop:
            return

        # Footage that continues straight on needs no cut
        continues_at = mapping.source_time_at(mapping.output_end)
        if nxt.output_start == mapping.output_end and abs(nxt.source_start - continues_at) <= (
            self.source.frame_interval
        ):
            return

        self.stats.pre_seeks += 1
        self._pre_seeked_scene = nxt.scene_index
        logger.debug(
            f"[SCHEDULER] Pre-seek to scene {nxt.scene_index} at {nxt.source_start:.3f}s"
        )
        await self._seek(nxt.source_start, nxt.scene_index, output_time)

    def _overlay_for(self, mapping: SceneVideoMapping, output_time: float) -> RenderableText | None:
        entry = self.overlays[mapping.scene_index]
        if entry is None:
            return None
        index = mapping.scene_index
        if index not in self._layouts:
            width, height = self.compositor.size
            self._layouts[index] = self.compositor.text_renderer.layout(
                entry.overlay, width, height, style=entry.style
            )
        base = self._layouts[index]
        if base is None:
            return None
        style = entry.style
        if style.fade_in <= 0 and style.fade_out <= 0:
            return base
        opacity = compute_fade_opacity(
            mapping.progress_at(output_time),
            mapping.output_duration,
            style.fade_in,
            style.fade_out,
        )
        return dataclasses.replace(base, opacity=opacity)

    def _source_image(self, holding: bool) -> tuple[Image.Image | None, bool]:
        if holding or self.seeking or self.source.frame is None:
            return self.last_good_frame, True
        self.last_good_frame = self.source.frame
        return self.last_good_frame, False

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _wait_until_ready(self) -> None:
        first = find_scene(self.mappings, 0.0) or (self.mappings[0] if self.mappings else None)
        self._set_state(SchedulerState.SEEKING)
        try:
            if first is not None:
                await asyncio.wait_for(
                    self.source.seek(first.source_start), timeout=self.ready_timeout
                )
                self.stats.seeks += 1
        except asyncio.TimeoutError as e:
            self._set_state(SchedulerState.FAILED)
            raise SourceUnavailableError(
                f"Source not ready within {self.ready_timeout:.1f}s", stage="schedule"
            ) from e
        if not self.source.is_ready:
            self._set_state(SchedulerState.FAILED)
            raise SourceUnavailableError("Source produced no decodable frame", stage="schedule")
        self.last_good_frame = self.source.frame
        if first is not None and first.contains(0.0):
            self._current = first
            logger.info(f"[SCHEDULER] Scene {first.scene_index} at 0.000s")

    async def frames(self) -> AsyncIterator[CompositedFrame]:
        """Yield composited frames in strictly increasing output-time order."""
        if self.state is not SchedulerState.IDLE:
            raise RuntimeError(f"Scheduler already used (state={self.state.value})")

        await self._wait_until_ready()
        self.clock.start()
        last_timestamp = -1.0
        last_loop_time = -1.0

        try:
            while True:
                elapsed = self.clock.elapsed()
                output_time = elapsed
                if self.loop:
                    output_time = elapsed % self.duration
                    if output_time < last_loop_time:
                        self.stats.loops += 1
                        self._current = None
                        self._pre_seeked_scene = None
                        logger.debug(f"[SCHEDULER] Loop {self.stats.loops}")
                    last_loop_time = output_time
                elif output_time >= self.duration:
                    self._set_state(SchedulerState.DRAINING)
                    break

                if elapsed <= last_timestamp:
                    await self.clock.wait_next_tick()
                    continue
                last_timestamp = elapsed

                mapping = find_scene(
                    self.mappings,
                    output_time,
                    self._current.scene_index if self._current else None,
                )
                holding = False
                if mapping is None:
                    # Gap between scenes: no overlay, footage keeps rolling
                    if not self.seeking and not self._source_exhausted:
                        if await self.source.read_frame() is None:
                            self._source_exhausted = True
                elif self._current is None or mapping.scene_index != self._current.scene_index:
                    await self._enter_scene(mapping, output_time)
                else:
                    if not self.seeking and self._pre_seeked_scene is None:
                        await self._advance(mapping, output_time)
                    if self._pre_seeked_scene is None:
                        await self._maybe_pre_seek(mapping, output_time)
                    holding = self._pre_seeked_scene is not None

                self._set_state(SchedulerState.SEEKING if self.seeking else SchedulerState.PLAYING)

                image, held = self._source_image(holding)
                renderable = self._overlay_for(mapping, output_time) if mapping else None
                composite = self.compositor.composite(image, renderable)
                self.stats.frames += 1
                if held:
                    self.stats.held_frames += 1

                yield CompositedFrame(
                    timestamp=output_time if self.loop else elapsed,
                    scene_index=mapping.scene_index if mapping else None,
                    image=composite,
                    held=held,
                )
                await self.clock.wait_next_tick()
        except asyncio.CancelledError:
            self._set_state(SchedulerState.CANCELLED)
            raise
        except Exception:
            self._set_state(SchedulerState.FAILED)
            raise
        finally:
            await self._cancel_seek()

        self._set_state(SchedulerState.COMPLETE)
        logger.info(f"[SCHEDULER] Complete: {self.stats.to_dict()}")
