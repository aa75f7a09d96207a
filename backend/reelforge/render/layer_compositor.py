"""Per-frame compositing into the fixed output surface.

Layer structure (bottom to top):
1. Background fill (black)
2. Source frame, aspect-filled and center-cropped
3. Text background box
4. Text stroke
5. Text fill
"""

import logging
from dataclasses import dataclass
from enum import IntEnum

from PIL import Image

from reelforge.render.text_renderer import RenderableText, TextRenderer

logger = logging.getLogger(__name__)


class LayerType(IntEnum):
    """Layer types ordered from bottom to top."""

    BACKGROUND = 1
    SOURCE = 2
    TEXT_BACKGROUND = 3
    TEXT_STROKE = 4
    TEXT_FILL = 5


@dataclass(frozen=True)
class DrawGeometry:
    """Where the scaled source frame lands on the output surface."""

    source_width: int
    source_height: int
    draw_x: float
    draw_y: float
    draw_width: float
    draw_height: float

    def crop_box(self, output_width: int, output_height: int) -> tuple[float, float, float, float]:
        """Region of the source frame that is visible on the output, in source pixels."""
        scale_x = self.source_width / self.draw_width
        scale_y = self.source_height / self.draw_height
        left = max(0.0, -self.draw_x) * scale_x
        top = max(0.0, -self.draw_y) * scale_y
        right = min(self.draw_width, output_width - self.draw_x) * scale_x
        bottom = min(self.draw_height, output_height - self.draw_y) * scale_y
        return left, top, right, bottom


def compute_draw_geometry(
    source_width: int, source_height: int, output_width: int, output_height: int
) -> DrawGeometry:
    """Aspect-fill the source into the output.

    A relatively wider source is scaled to the output height and cropped left
    and right; otherwise it is scaled to the output width and cropped top and
    bottom. Both crops are centered.
    """
    if source_width <= 0 or source_height <= 0:
        raise ValueError(f"Invalid source dimensions: {source_width}x{source_height}")

    source_aspect = source_width / source_height
    target_aspect = output_width / output_height
    if source_aspect > target_aspect:
        draw_height = float(output_height)
        draw_width = output_height * source_aspect
        draw_x = (output_width - draw_width) / 2
        draw_y = 0.0
    else:
        draw_width = float(output_width)
        draw_height = output_width / source_aspect
        draw_x = 0.0
        draw_y = (output_height - draw_height) / 2

    return DrawGeometry(
        source_width=source_width,
        source_height=source_height,
        draw_x=draw_x,
        draw_y=draw_y,
        draw_width=draw_width,
        draw_height=draw_height,
    )


class FrameCompositor:
    """Composites source frames and overlay text at a fixed output size.

    The draw geometry is cached per source size and dropped by
    ``invalidate()`` when the session's dimensions change.
    """

    def __init__(
        self,
        width: int,
        height: int,
        text_renderer: TextRenderer | None = None,
        background: tuple[int, int, int] = (0, 0, 0),
    ):
        self.width = width
        self.height = height
        self.text_renderer = text_renderer or TextRenderer()
        self.background = background
        self._geometry: DrawGeometry | None = None
        self.last_layers: list[LayerType] = []

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height

    def geometry_for(self, source_width: int, source_height: int) -> DrawGeometry:
        cached = self._geometry
        if cached is not None and (cached.source_width, cached.source_height) == (
            source_width,
            source_height,
        ):
            return cached
        self._geometry = compute_draw_geometry(source_width, source_height, self.width, self.height)
        logger.info(
            f"[COMPOSITE] Source {source_width}x{source_height} -> "
            f"draw {self._geometry.draw_width:.0f}x{self._geometry.draw_height:.0f} "
            f"at ({self._geometry.draw_x:.0f}, {self._geometry.draw_y:.0f})"
        )
        return self._geometry

    def invalidate(self) -> None:
        self._geometry = None
        self.text_renderer.clear_cache()

    def _scaled_source(self, source_frame: Image.Image) -> tuple[Image.Image, tuple[int, int]]:
        geometry = self.geometry_for(*source_frame.size)
        box = geometry.crop_box(self.width, self.height)
        dest_x = max(0, round(geometry.draw_x))
        dest_y = max(0, round(geometry.draw_y))
        dest_w = min(self.width, round(geometry.draw_x + geometry.draw_width)) - dest_x
        dest_h = min(self.height, round(geometry.draw_y + geometry.draw_height)) - dest_y
        scaled = source_frame.convert("RGB").resize(
            (max(1, dest_w), max(1, dest_h)), Image.Resampling.BILINEAR, box=box
        )
        return scaled, (dest_x, dest_y)

    def composite(
        self,
        source_frame: Image.Image | None,
        renderable: RenderableText | None = None,
    ) -> Image.Image:
        """Build one output frame.

        Args:
            source_frame: Decoded source frame, or None to show only the background
            renderable: Overlay layout for this instant, or None

        Returns:
            RGB image of the output size
        """
        layers = [LayerType.BACKGROUND]
        canvas = Image.new("RGB", self.size, self.background)

        if source_frame is not None:
            scaled, dest = self._scaled_source(source_frame)
            canvas.paste(scaled, dest)
            layers.append(LayerType.SOURCE)

        rendered = None
        if renderable is not None:
            rendered = self.text_renderer.render_overlay(renderable, self.size)
        if rendered is not None:
            # Blend only the overlay's region instead of the whole frame
            layer, (x, y) = rendered
            region = canvas.crop((x, y, x + layer.width, y + layer.height)).convert("RGBA")
            region.alpha_composite(layer)
            canvas.paste(region.convert("RGB"), (x, y))
            if renderable.box is not None:
                layers.append(LayerType.TEXT_BACKGROUND)
            if renderable.stroke is not None and renderable.stroke_width > 0:
                layers.append(LayerType.TEXT_STROKE)
            layers.append(LayerType.TEXT_FILL)

        self.last_layers = layers
        return canvas


def composite_frame(
    source_frame: Image.Image | None,
    output_width: int,
    output_height: int,
    renderable: RenderableText | None = None,
) -> Image.Image:
    """One-off composite without a long-lived compositor."""
    return FrameCompositor(output_width, output_height).composite(source_frame, renderable)
