"""
Tests for the render pipeline and render sessions.

Features:
- End-to-end render into a recording encoder
- Cache hits skip decoding entirely
- Source, encoder and timeout failures surface as specific errors
- Preview and final generation are mutually exclusive
"""

import asyncio

import pytest

from fakes import FakeEncoder, FakeFrameSource
from reelforge.exceptions import EncoderBusyError
from reelforge.render.pipeline import (
    RenderPipeline,
    RenderProgress,
    RenderSession,
    RenderStatus,
    build_scene_overlays,
)
from reelforge.schemas.template import load_template


class Factories:
    """Source/encoder factories that remember what they built."""

    def __init__(self, encoder_kwargs=None, **source_kwargs):
        self.encoder_kwargs = encoder_kwargs or {}
        self.source_kwargs = source_kwargs
        self.sources: list[FakeFrameSource] = []
        self.encoders: list[FakeEncoder] = []

    def source(self, path, fps):
        source = FakeFrameSource(path, fps, **self.source_kwargs)
        self.sources.append(source)
        return source

    def encoder(self):
        encoder = FakeEncoder(**self.encoder_kwargs)
        self.encoders.append(encoder)
        return encoder


@pytest.fixture
def source_file(temp_output_dir):
    path = temp_output_dir / "clip.mp4"
    path.write_bytes(b"not really a video")
    return str(path)


def _pipeline(config, cache, factories):
    return RenderPipeline(
        cache=cache,
        config=config,
        source_factory=factories.source,
        encoder_factory=factories.encoder,
    )


class TestRender:
    """Successful renders."""

    @pytest.mark.asyncio
    async def test_render_produces_output(self, small_config, memory_cache, hook_template, source_file):
        """Scenario: a one-scene template with hook='Hi' renders 10s of frames."""
        factories = Factories()
        pipeline = _pipeline(small_config, memory_cache, factories)

        result = await pipeline.render(hook_template, {"hook": "Hi"}, source_file)

        assert result.success
        assert result.status is RenderStatus.COMPLETED
        assert result.output.startswith(b"FAKEMP4")
        assert not result.cache_hit
        assert result.warnings == []
        assert len(factories.encoders[0].frames) == 100
        assert factories.encoders[0].started_with == (108, 192, 10.0)
        assert factories.sources[0].closed
        assert result.stats["frames_written"] == 100

    @pytest.mark.asyncio
    async def test_unresolved_variable_is_a_warning(
        self, small_config, memory_cache, hook_template, source_file
    ):
        pipeline = _pipeline(small_config, memory_cache, Factories())

        result = await pipeline.render(hook_template, {}, source_file)

        assert result.success
        assert result.unresolved_variables == ["hook"]
        assert result.warnings == ["Unresolved variable: hook"]

    @pytest.mark.asyncio
    async def test_second_render_hits_cache(self, small_config, memory_cache, hook_template, source_file):
        factories = Factories()
        pipeline = _pipeline(small_config, memory_cache, factories)

        first = await pipeline.render(hook_template, {"hook": "Hi"}, source_file)
        second = await pipeline.render(hook_template, {"hook": "Hi"}, source_file)

        assert second.cache_hit
        assert second.output == first.output
        assert second.cache_key == first.cache_key
        assert len(factories.sources) == 1

    @pytest.mark.asyncio
    async def test_different_content_misses_cache(
        self, small_config, memory_cache, hook_template, source_file
    ):
        factories = Factories()
        pipeline = _pipeline(small_config, memory_cache, factories)

        await pipeline.render(hook_template, {"hook": "Hi"}, source_file)
        result = await pipeline.render(hook_template, {"hook": "Bye"}, source_file)

        assert not result.cache_hit
        assert len(memory_cache) == 2

    @pytest.mark.asyncio
    async def test_cache_disabled(self, small_config, memory_cache, hook_template, source_file):
        pipeline = _pipeline(small_config, memory_cache, Factories())

        result = await pipeline.render(hook_template, {"hook": "Hi"}, source_file, use_cache=False)

        assert result.success
        assert result.cache_key is None
        assert len(memory_cache) == 0

    @pytest.mark.asyncio
    async def test_progress_reported(self, small_config, memory_cache, hook_template, source_file):
        pipeline = _pipeline(small_config, memory_cache, Factories())
        updates = []
        pipeline.set_progress_callback(updates.append)

        await pipeline.render(hook_template, {"hook": "Hi"}, source_file)

        assert all(isinstance(update, RenderProgress) for update in updates)
        stages = [update.stage for update in updates]
        assert stages[0] == "validating"
        assert "encoding" in stages
        assert updates[-1].status is RenderStatus.COMPLETED
        assert updates[-1].percent == 100
        assert updates[-1].to_dict()["stage"] == "completed"
        assert all(u.status is RenderStatus.PROCESSING for u in updates[:-1])
        percents = [update.percent for update in updates]
        assert percents == sorted(percents)

    @pytest.mark.asyncio
    async def test_failure_reported_as_progress(self, small_config, memory_cache, source_file):
        pipeline = _pipeline(small_config, memory_cache, Factories())
        updates = []
        pipeline.set_progress_callback(updates.append)

        await pipeline.render({"duration": 5, "scenes": []}, {}, source_file)

        assert updates[-1].status is RenderStatus.FAILED
        assert updates[-1].stage == "failed"
        assert updates[-1].percent == 0


class TestRenderFailures:
    """Failures surface as specific errors and nothing is cached."""

    @pytest.mark.asyncio
    async def test_invalid_template(self, small_config, memory_cache, source_file):
        pipeline = _pipeline(small_config, memory_cache, Factories())
        template = {"duration": 5, "scenes": [{"start": 3, "end": 1}]}

        result = await pipeline.render(template, {}, source_file)

        assert result.status is RenderStatus.FAILED
        assert result.error.code == "INVALID_TEMPLATE"
        assert result.error.location.scene_index == 0
        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_source_file(self, small_config, memory_cache, hook_template, temp_output_dir):
        pipeline = _pipeline(small_config, memory_cache, Factories())

        result = await pipeline.render(hook_template, {}, str(temp_output_dir / "nope.mp4"))

        assert result.error.code == "SOURCE_UNAVAILABLE"
        assert result.status_code == 502
        assert result.output is None

    @pytest.mark.asyncio
    async def test_undecodable_source(self, small_config, memory_cache, hook_template, source_file):
        factories = Factories(fail_open=True)
        pipeline = _pipeline(small_config, memory_cache, factories)

        result = await pipeline.render(hook_template, {}, source_file)

        assert result.error.code == "SOURCE_UNAVAILABLE"
        assert result.error.location.stage == "open"
        assert factories.sources[0].closed

    @pytest.mark.asyncio
    async def test_source_never_ready(self, small_config, memory_cache, hook_template, source_file):
        small_config.source_ready_timeout_s = 0.05
        pipeline = _pipeline(small_config, memory_cache, Factories(never_ready=True))

        result = await pipeline.render(hook_template, {}, source_file)

        assert result.error.code == "SOURCE_UNAVAILABLE"
        assert "not ready" in result.error.message

    @pytest.mark.asyncio
    async def test_empty_encoder_output_not_cached(
        self, small_config, memory_cache, hook_template, source_file
    ):
        pipeline = _pipeline(small_config, memory_cache, Factories(encoder_kwargs={"empty": True}))

        result = await pipeline.render(hook_template, {"hook": "Hi"}, source_file)

        assert result.status is RenderStatus.FAILED
        assert result.error.code == "EMPTY_OUTPUT"
        assert len(memory_cache) == 0

    @pytest.mark.asyncio
    async def test_render_timeout(self, small_config, memory_cache, hook_template, source_file):
        small_config.timeout_s = 0.05
        factories = Factories(encoder_kwargs={"push_delay": 0.01})
        pipeline = _pipeline(small_config, memory_cache, factories)

        result = await pipeline.render(hook_template, {"hook": "Hi"}, source_file)

        assert result.error.code == "RENDER_TIMEOUT"
        assert result.status_code == 504
        assert factories.encoders[0].aborted

    @pytest.mark.asyncio
    async def test_cancelled(self, small_config, memory_cache, hook_template, source_file):
        pipeline = _pipeline(small_config, memory_cache, Factories())

        result = await pipeline.render(
            hook_template, {"hook": "Hi"}, source_file, cancel_check=lambda: True
        )

        assert result.status is RenderStatus.CANCELLED
        assert result.error.code == "RENDER_CANCELLED"
        assert result.status_code == 499
        assert len(memory_cache) == 0


class TestRenderSession:
    """Shared state and mode exclusivity."""

    def _session(self, template_data, source_file, small_config, factories):
        return RenderSession(
            load_template(template_data),
            {"hook": "Hi", "cta": "Follow"},
            source_file,
            config=small_config,
            source_factory=factories.source,
            encoder_factory=factories.encoder,
        )

    def test_scene_overlays_resolved(self, two_scene_template):
        template = load_template(two_scene_template)

        overlays = build_scene_overlays(template, {"hook": "Hi", "callToAction": "Follow"})

        assert [o.overlay.content for o in overlays] == ["Hi", "Follow"]

    def test_mappings_cached_until_invalidated(self, two_scene_template, source_file, small_config):
        session = self._session(two_scene_template, source_file, small_config, Factories())

        first = session.mappings(20.0)
        assert session.mappings(20.0) is first
        session.invalidate("test")
        assert session.mappings(20.0) is not first

    def test_source_change_invalidates(self, two_scene_template, source_file, small_config):
        session = self._session(two_scene_template, source_file, small_config, Factories())
        first = session.mappings(20.0)
        compositor = session.compositor(320, 240)

        session.update(source_url="other.mp4")

        assert session.mappings(20.0) is not first
        assert session.compositor(320, 240) is not compositor

    def test_geometry_follows_dimensions(self, two_scene_template, source_file, small_config):
        session = self._session(two_scene_template, source_file, small_config, Factories())
        compositor = session.compositor(320, 240)

        assert session.compositor(320, 240) is compositor
        assert session.compositor(640, 480) is not compositor

    @pytest.mark.asyncio
    async def test_preview_frames_downscaled(self, two_scene_template, source_file, small_config):
        session = self._session(two_scene_template, source_file, small_config, Factories())
        frames = []

        await session.start_preview(frames.append)
        for _ in range(100):
            if len(frames) >= 2:
                break
            await asyncio.sleep(0.05)
        await session.stop_preview()

        assert len(frames) >= 2
        assert frames[0].image.size == (54, 96)
        assert not session.previewing

    @pytest.mark.asyncio
    async def test_generate_stops_preview(self, two_scene_template, source_file, small_config):
        factories = Factories()
        session = self._session(two_scene_template, source_file, small_config, factories)

        await session.start_preview(lambda frame: None)
        assert session.previewing
        data = await session.generate()

        assert data.startswith(b"FAKEMP4")
        assert not session.previewing
        assert all(source.closed for source in factories.sources)
        await session.close()

    @pytest.mark.asyncio
    async def test_preview_rejected_while_generating(
        self, two_scene_template, source_file, small_config
    ):
        factories = Factories(encoder_kwargs={"push_delay": 0.01})
        session = self._session(two_scene_template, source_file, small_config, factories)

        task = asyncio.create_task(session.generate())
        await asyncio.sleep(0.05)
        assert session.generating

        with pytest.raises(EncoderBusyError):
            await session.start_preview(lambda frame: None)
        with pytest.raises(EncoderBusyError):
            await session.generate()

        await session.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not session.generating
