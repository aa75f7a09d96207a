"""
Render pipeline for template videos.

This module orchestrates one render request:
1. Validate the template and normalize content variables
2. Consult the render cache
3. Fetch and open the source video
4. Map scenes onto the source and resolve overlay text
5. Run the timeline scheduler into an encoder session
6. Store the encoded output in the cache

``RenderSession`` owns the per-template state that preview and generation
share (scene mapping, draw geometry, last good frame) and keeps the two modes
mutually exclusive.
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from PIL import Image

from reelforge.config import get_settings
from reelforge.exceptions import (
    EncoderBusyError,
    ReelforgeError,
    RenderCancelledError,
    RenderTimeoutError,
    SourceUnavailableError,
)
from reelforge.render.cache import RenderCache, build_cache_key, get_render_cache
from reelforge.render.encoder import Encoder, EncoderSession, FFmpegEncoder
from reelforge.render.layer_compositor import FrameCompositor
from reelforge.render.scene_mapping import SceneVideoMapping, map_scenes
from reelforge.render.scheduler import (
    CompositedFrame,
    FrameClock,
    SceneOverlay,
    TimelineScheduler,
    WallClock,
)
from reelforge.render.source import FFmpegFrameSource, FrameSource
from reelforge.render.variables import collect_unresolved, resolve
from reelforge.schemas.envelope import ErrorInfo
from reelforge.schemas.template import VideoTemplate, load_template, normalize_content
from reelforge.services.source_fetcher import FetchedSource, fetch_source, source_identity

logger = logging.getLogger(__name__)


# ============================================================================
# Enums / Dataclasses
# ============================================================================


class RenderStatus(Enum):
    """Render job status."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RenderProgress:
    """Progress information for a render."""

    status: RenderStatus
    percent: int = 0
    stage: Optional[str] = None
    elapsed_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "percent": self.percent,
            "stage": self.stage,
            "elapsed_ms": self.elapsed_ms,
        }


@dataclass
class RenderConfig:
    """Output and pacing configuration for one render."""

    width: int = 1080
    height: int = 1920
    fps: int = 30
    realtime: bool = False
    timeout_s: float = 300.0
    source_ready_timeout_s: float = 10.0
    default_source_duration_s: float = 30.0
    preview_scale: float = 0.5

    @classmethod
    def from_settings(cls) -> "RenderConfig":
        settings = get_settings()
        return cls(
            width=settings.render_output_width,
            height=settings.render_output_height,
            fps=settings.render_fps,
            realtime=settings.render_realtime,
            timeout_s=settings.render_timeout_s,
            source_ready_timeout_s=settings.source_ready_timeout_s,
            default_source_duration_s=settings.default_source_duration_s,
            preview_scale=settings.preview_scale,
        )


@dataclass
class RenderResult:
    """Outcome of one render request: complete output or a specific error."""

    status: RenderStatus
    output: bytes | None = None
    error: ErrorInfo | None = None
    cache_hit: bool = False
    cache_key: str | None = None
    warnings: list[str] = field(default_factory=list)
    unresolved_variables: list[str] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)
    elapsed_ms: int = 0
    status_code: int = 200

    @property
    def success(self) -> bool:
        return self.status is RenderStatus.COMPLETED and bool(self.output)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary (without the output bytes)."""
        return {
            "status": self.status.value,
            "output_bytes": len(self.output) if self.output else 0,
            "error": self.error.model_dump(exclude_none=True) if self.error else None,
            "cache_hit": self.cache_hit,
            "cache_key": self.cache_key,
            "warnings": self.warnings,
            "unresolved_variables": self.unresolved_variables,
            "stats": self.stats,
            "elapsed_ms": self.elapsed_ms,
        }


SourceFactory = Callable[[str, float], FrameSource]
EncoderFactory = Callable[[], Encoder]
FrameSink = Callable[[CompositedFrame], Awaitable[None] | None]


def build_scene_overlays(
    template: VideoTemplate, content: Mapping[str, str]
) -> list[SceneOverlay | None]:
    """Resolve each scene's overlay text and merge template style defaults under it."""
    overlays: list[SceneOverlay | None] = []
    for scene in template.scenes:
        if scene.text is None:
            overlays.append(None)
            continue
        resolved = scene.text.model_copy(update={"content": resolve(scene.text.content, content)})
        overlays.append(SceneOverlay(overlay=resolved, style=template.style_for(scene)))
    return overlays


# ============================================================================
# Session
# ============================================================================


class RenderSession:
    """Render state for one template instance.

    Invalidation rules:
    - source URL change: drops the fetched source, mapping, geometry and last good frame
    - scene list change: drops the mapping
    - output or source dimension change: drops the geometry
    - starting generation: stops preview and drops mapping and geometry
    """

    def __init__(
        self,
        template: VideoTemplate,
        content: Mapping[str, str],
        source_url: str,
        *,
        config: RenderConfig | None = None,
        source_factory: SourceFactory | None = None,
        encoder_factory: EncoderFactory | None = None,
    ):
        self.template = template
        self.content = dict(content)
        self.source_url = source_url
        self.config = config or RenderConfig.from_settings()
        self.source_factory: SourceFactory = source_factory or FFmpegFrameSource
        self.encoder_factory: EncoderFactory = encoder_factory or FFmpegEncoder

        self._fetched: FetchedSource | None = None
        self._mappings: list[SceneVideoMapping] | None = None
        self._mapping_key: tuple[Any, ...] | None = None
        self._compositor: FrameCompositor | None = None
        self._dimensions: tuple[int, int, int, int] | None = None
        self.last_good_frame: Image.Image | None = None
        self.last_stats: dict[str, Any] = {}

        self._preview_task: asyncio.Task | None = None
        self._preview_source: FrameSource | None = None
        self._encoder_session: EncoderSession | None = None

    # ------------------------------------------------------------------
    # Cached derived state
    # ------------------------------------------------------------------

    def update(
        self,
        *,
        template: VideoTemplate | None = None,
        content: Mapping[str, str] | None = None,
        source_url: str | None = None,
    ) -> None:
        """Swap inputs, dropping whatever cached state they invalidate."""
        if source_url is not None and source_url != self.source_url:
            self.source_url = source_url
            self._release_fetched()
            self.last_good_frame = None
            self.invalidate("source changed")
        if template is not None:
            if template.scene_payload() != self.template.scene_payload():
                self._mappings = None
                self._mapping_key = None
            self.template = template
        if content is not None:
            self.content = dict(content)
        if self._compositor is not None:
            self._compositor.text_renderer.clear_cache()

    def invalidate(self, reason: str) -> None:
        logger.debug(f"[SESSION] Invalidate mapping and geometry: {reason}")
        self._mappings = None
        self._mapping_key = None
        self._compositor = None
        self._dimensions = None

    def mappings(self, source_duration: float | None) -> list[SceneVideoMapping]:
        key = (id(self.template.scenes), len(self.template.scenes), source_duration)
        if self._mappings is None or self._mapping_key != key:
            self._mappings = map_scenes(
                self.template.scenes,
                source_duration,
                self.config.default_source_duration_s,
            )
            self._mapping_key = key
        return self._mappings

    def compositor(self, source_width: int, source_height: int) -> FrameCompositor:
        dimensions = (self.config.width, self.config.height, source_width, source_height)
        if self._compositor is None or self._dimensions != dimensions:
            if self._compositor is not None:
                self._compositor.invalidate()
            self._compositor = FrameCompositor(self.config.width, self.config.height)
            self._dimensions = dimensions
        return self._compositor

    def scene_overlays(self) -> list[SceneOverlay | None]:
        return build_scene_overlays(self.template, self.content)

    # ------------------------------------------------------------------
    # Source
    # ------------------------------------------------------------------

    async def _fetch(self) -> FetchedSource:
        if self._fetched is None:
            self._fetched = await fetch_source(self.source_url)
        return self._fetched

    def _release_fetched(self) -> None:
        if self._fetched is not None:
            self._fetched.cleanup()
            self._fetched = None

    async def _open_source(self) -> FrameSource:
        fetched = await self._fetch()
        source = self.source_factory(fetched.path, self.config.fps)
        try:
            await asyncio.wait_for(source.open(), timeout=self.config.source_ready_timeout_s)
        except asyncio.TimeoutError as e:
            await source.close()
            raise SourceUnavailableError(
                f"Source not ready within {self.config.source_ready_timeout_s:.1f}s",
                stage="open",
            ) from e
        except BaseException:
            await source.close()
            raise
        return source

    def _scheduler(self, source: FrameSource, *, loop: bool) -> TimelineScheduler:
        realtime = loop or self.config.realtime
        clock = WallClock(self.config.fps) if realtime else FrameClock(self.config.fps)
        return TimelineScheduler(
            source,
            self.mappings(source.duration),
            self.scene_overlays(),
            self.template.duration,
            self.compositor(source.width, source.height),
            clock,
            loop=loop,
            ready_timeout=self.config.source_ready_timeout_s,
        )

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    @property
    def previewing(self) -> bool:
        return self._preview_task is not None and not self._preview_task.done()

    @property
    def generating(self) -> bool:
        return self._encoder_session is not None

    async def start_preview(self, sink: FrameSink) -> None:
        """Loop the template in real time, handing downscaled frames to ``sink``.

        Layout always runs at full output size; only the finished frame is
        scaled, so preview and final render place text identically.
        """
        if self.generating:
            raise EncoderBusyError("Cannot preview while generating")
        await self.stop_preview()
        source = await self._open_source()
        self._preview_source = source
        self._preview_task = asyncio.create_task(self._run_preview(source, sink))

    async def _run_preview(self, source: FrameSource, sink: FrameSink) -> None:
        scale = self.config.preview_scale
        size = (
            max(1, round(self.config.width * scale)),
            max(1, round(self.config.height * scale)),
        )
        scheduler = self._scheduler(source, loop=True)
        try:
            async for frame in scheduler.frames():
                if scale != 1.0:
                    frame.image = frame.image.resize(size, Image.Resampling.BILINEAR)
                result = sink(frame)
                if asyncio.iscoroutine(result):
                    await result
        finally:
            self.last_good_frame = scheduler.last_good_frame

    async def stop_preview(self) -> None:
        task = self._preview_task
        source = self._preview_source
        self._preview_task = None
        self._preview_source = None
        if task is not None:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            elif not task.cancelled() and task.exception() is not None:
                logger.warning(f"[SESSION] Preview ended with error: {task.exception()}")
        # A task cancelled before its first step never runs its finally block
        if source is not None:
            await source.close()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(
        self,
        encoder: Encoder | None = None,
        on_frame: Callable[[int, int | None], None] | None = None,
    ) -> bytes:
        """Render the whole template once and return the encoded output.

        Raises:
            EncoderBusyError: If a generation is already running
            SourceUnavailableError, EmptyOutputError, RenderTimeoutError, ...
        """
        if self.generating:
            raise EncoderBusyError()
        session = EncoderSession(encoder or self.encoder_factory(), self.config.width, self.config.height)
        self._encoder_session = session
        try:
            await self.stop_preview()
            self.invalidate("generation started")
            source = await self._open_source()
            try:
                scheduler = self._scheduler(source, loop=False)
                await session.start(
                    scheduler.frames(),
                    self.config.fps,
                    duration=self.template.duration,
                    on_frame=on_frame,
                )
                try:
                    data = await asyncio.wait_for(session.stop(), timeout=self.config.timeout_s)
                except asyncio.TimeoutError as e:
                    raise RenderTimeoutError(self.config.timeout_s) from e
                self.last_good_frame = scheduler.last_good_frame
                self.last_stats = {
                    **scheduler.stats.to_dict(),
                    "frames_written": session.frames_written,
                    "frames_repeated": session.frames_repeated,
                    "frames_dropped": session.frames_dropped,
                }
                return data
            finally:
                await source.close()
        finally:
            self._encoder_session = None

    async def cancel(self) -> None:
        await self.stop_preview()
        if self._encoder_session is not None:
            await self._encoder_session.cancel()

    async def close(self) -> None:
        await self.cancel()
        self._release_fetched()


# ============================================================================
# Pipeline
# ============================================================================


class RenderPipeline:
    """
    Render requests end to end.

    Handles:
    - Template validation and variable resolution
    - Cache lookups and stores
    - Source fetch, scheduling and encoding with a wall-clock timeout
    """

    def __init__(
        self,
        cache: RenderCache | None = None,
        config: RenderConfig | None = None,
        source_factory: SourceFactory | None = None,
        encoder_factory: EncoderFactory | None = None,
    ):
        self.cache = cache if cache is not None else get_render_cache()
        self.config = config or RenderConfig.from_settings()
        self.source_factory = source_factory
        self.encoder_factory = encoder_factory
        self._progress_callback: Optional[Callable[[RenderProgress], None]] = None
        self._started = 0.0
        self._percent = 0
        self._cancel_check: Optional[Callable[[], bool]] = None

    def set_progress_callback(self, callback: Callable[[RenderProgress], None]) -> None:
        """Set callback for progress updates."""
        self._progress_callback = callback

    def _update_progress(
        self, percent: int, stage: str, status: RenderStatus = RenderStatus.PROCESSING
    ) -> None:
        """Update render progress."""
        self._percent = percent
        if self._progress_callback:
            self._progress_callback(
                RenderProgress(
                    status=status,
                    percent=percent,
                    stage=stage,
                    elapsed_ms=int((time.perf_counter() - self._started) * 1000),
                )
            )

    def cache_key(self, template: VideoTemplate, content: Mapping[str, str], source_url: str) -> str:
        return build_cache_key(
            template,
            content,
            source_id=source_identity(source_url),
            width=self.config.width,
            height=self.config.height,
            fps=self.config.fps,
            version=self.cache.version,
        )

    def _frame_progress(self, frame: int, total: int | None) -> None:
        if self._cancel_check and self._cancel_check():
            raise RenderCancelledError()
        if total and frame % max(1, self.config.fps) == 0:
            # Encoding spans 10-95%
            self._update_progress(10 + int(85 * min(frame / total, 1.0)), "encoding")

    async def render(
        self,
        template_data: Mapping[str, Any] | VideoTemplate,
        content: Mapping[str, Any] | None,
        source_url: str,
        *,
        use_cache: bool = True,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> RenderResult:
        """
        Execute the full render pipeline.

        Args:
            template_data: Template JSON or a validated template
            content: Content variables (lists are joined with newlines)
            source_url: Source video URL or local path
            use_cache: Read and write the render cache
            cancel_check: Polled once per frame; returning True cancels the render

        Returns:
            RenderResult with output bytes on success or ErrorInfo on failure
        """
        started = self._started = time.perf_counter()
        self._cancel_check = cancel_check
        result = RenderResult(status=RenderStatus.PROCESSING)
        session: RenderSession | None = None

        try:
            self._update_progress(0, "validating")
            template = load_template(template_data)
            variables = normalize_content(content)
            texts = [scene.text.content for scene in template.scenes if scene.text]
            result.unresolved_variables = collect_unresolved(texts, variables)
            result.warnings = [f"Unresolved variable: {name}" for name in result.unresolved_variables]

            if use_cache:
                result.cache_key = self.cache_key(template, variables, source_url)
                cached = self.cache.get(result.cache_key)
                if cached is not None:
                    logger.info(f"[RENDER] Cache hit {result.cache_key[:24]}")
                    result.status = RenderStatus.COMPLETED
                    result.output = cached
                    result.cache_hit = True
                    self._update_progress(100, "cached", RenderStatus.COMPLETED)
                    return result

            self._update_progress(5, "fetching source")
            session = RenderSession(
                template,
                variables,
                source_url,
                config=self.config,
                source_factory=self.source_factory,
                encoder_factory=self.encoder_factory,
            )
            output = await session.generate(on_frame=self._frame_progress)
            result.stats = session.last_stats

            if use_cache and result.cache_key:
                self.cache.put(result.cache_key, output)
            result.status = RenderStatus.COMPLETED
            result.output = output
            self._update_progress(100, "completed", RenderStatus.COMPLETED)
            logger.info(f"[RENDER] Completed: {len(output)} bytes, stats={result.stats}")
        except RenderCancelledError as e:
            logger.info("[RENDER] Cancelled")
            result.status = RenderStatus.CANCELLED
            result.error = e.to_error_info()
            result.status_code = e.status_code
            self._update_progress(self._percent, "cancelled", RenderStatus.CANCELLED)
        except ReelforgeError as e:
            logger.error(f"[RENDER] Failed ({e.code}): {e.message}")
            result.status = RenderStatus.FAILED
            result.output = None
            result.error = e.to_error_info()
            result.status_code = e.status_code
            self._update_progress(self._percent, "failed", RenderStatus.FAILED)
        finally:
            if session is not None:
                await session.close()
            result.elapsed_ms = int((time.perf_counter() - started) * 1000)
        return result
