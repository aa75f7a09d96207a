"""Render API endpoints - synchronous rendering of template videos."""

import logging
from functools import lru_cache
from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response

from reelforge.middleware.request_context import build_meta, create_request_context, error_response
from reelforge.render.pipeline import RenderPipeline, build_scene_overlays
from reelforge.render.scene_mapping import map_scenes
from reelforge.render.text_renderer import TextRenderer
from reelforge.render.variables import collect_unresolved
from reelforge.schemas.envelope import EnvelopeResponse
from reelforge.schemas.render import RenderRequest, SceneSummary, ValidateRequest, ValidateResponse
from reelforge.schemas.template import load_template, normalize_content

router = APIRouter()
logger = logging.getLogger(__name__)


@lru_cache
def get_pipeline() -> RenderPipeline:
    return RenderPipeline()


Pipeline = Annotated[RenderPipeline, Depends(get_pipeline)]


@router.post("/render")
async def render_video(request: RenderRequest, pipeline: Pipeline) -> Response:
    """
    Render a template over a source video.

    Returns the MP4 bytes directly, or an error envelope.
    """
    context = create_request_context()
    logger.info(f"[API] Render request {context.request_id} source={request.source_url}")

    result = await pipeline.render(
        request.template,
        request.content,
        request.source_url,
        use_cache=request.use_cache,
    )
    context.warnings.extend(result.warnings)

    if not result.success:
        return error_response(context, result.error, result.status_code)

    headers = {
        "X-Request-Id": context.request_id,
        "X-Render-Cache": "hit" if result.cache_hit else "miss",
        "X-Render-Time-Ms": str(result.elapsed_ms),
    }
    if result.unresolved_variables:
        headers["X-Render-Warnings"] = ",".join(result.unresolved_variables)
    return Response(content=result.output, media_type="video/mp4", headers=headers)


@router.post("/render/validate")
async def validate_template(request: ValidateRequest, pipeline: Pipeline) -> JSONResponse:
    """Dry run: resolved text, wrapped lines and scene mapping without decoding video."""
    context = create_request_context()

    template = load_template(request.template)
    content = normalize_content(request.content)
    mappings = map_scenes(
        template.scenes, request.source_duration, pipeline.config.default_source_duration_s
    )
    overlays = build_scene_overlays(template, content)
    renderer = TextRenderer()

    scenes: list[SceneSummary] = []
    for scene, mapping, overlay in zip(template.scenes, mappings, overlays):
        text = None
        lines: list[str] = []
        if overlay is not None:
            text = overlay.overlay.content
            layout = renderer.layout(
                overlay.overlay,
                pipeline.config.width,
                pipeline.config.height,
                style=overlay.style,
            )
            lines = [line.text for line in layout.lines] if layout else []
        scenes.append(
            SceneSummary(
                scene_index=mapping.scene_index,
                output_start=mapping.output_start,
                output_end=mapping.output_end,
                source_start=mapping.source_start,
                source_end=mapping.source_end,
                explicit_source=scene.has_explicit_source,
                text=text,
                lines=lines,
            )
        )

    unresolved = collect_unresolved(
        [scene.text.content for scene in template.scenes if scene.text], content
    )
    context.warnings.extend(f"Unresolved variable: {name}" for name in unresolved)

    data = ValidateResponse(
        name=template.name,
        duration=template.duration,
        scenes=scenes,
        unresolved_variables=unresolved,
        cache_key=(
            pipeline.cache_key(template, content, request.source_url)
            if request.source_url
            else None
        ),
    )
    envelope = EnvelopeResponse(
        request_id=context.request_id,
        data=data.model_dump(),
        meta=build_meta(context),
    )
    return JSONResponse(content=jsonable_encoder(envelope.model_dump(exclude_none=True)))
