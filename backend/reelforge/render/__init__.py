from reelforge.render.cache import RenderCache, build_cache_key
from reelforge.render.encoder import Encoder, EncoderSession, FFmpegEncoder
from reelforge.render.layer_compositor import FrameCompositor, composite_frame
from reelforge.render.pipeline import RenderPipeline, RenderProgress, RenderResult, RenderSession
from reelforge.render.scene_mapping import SceneVideoMapping, map_scenes
from reelforge.render.scheduler import TimelineScheduler
from reelforge.render.text_renderer import TextRenderer
from reelforge.render.variables import resolve

__all__ = [
    "RenderPipeline",
    "RenderProgress",
    "RenderResult",
    "RenderSession",
    "RenderCache",
    "build_cache_key",
    "Encoder",
    "EncoderSession",
    "FFmpegEncoder",
    "FrameCompositor",
    "composite_frame",
    "SceneVideoMapping",
    "map_scenes",
    "TimelineScheduler",
    "TextRenderer",
    "resolve",
]
