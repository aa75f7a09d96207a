"""Overlay text layout and drawing.

Layout converts percentage-based overlay positions into output pixels, wraps
text against the real font metrics, centers the line block vertically and
sizes one background box behind all lines. Drawing burns the result into an
RGBA frame in the order: background box, stroke, fill.
"""

import logging
import math
import re
from collections import OrderedDict
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from PIL import Image, ImageColor, ImageDraw, ImageFont

from reelforge.config import get_settings
from reelforge.schemas.template import TextOverlay, TextStyle

logger = logging.getLogger(__name__)

DEFAULT_BACKGROUND = "rgba(0, 0, 0, 0.5)"
PADDING_X_RATIO = 0.6
PADDING_Y_RATIO = 0.4

RGBA = tuple[int, int, int, int]

# Font families mapped to candidate files, regular then bold.
# Bare file names are resolved by Pillow against the system font directories.
FONT_CANDIDATES: dict[str, dict[str, list[str]]] = {
    "arial": {
        "regular": ["Arial.ttf", "arial.ttf", "LiberationSans-Regular.ttf"],
        "bold": ["Arial Bold.ttf", "arialbd.ttf", "LiberationSans-Bold.ttf"],
    },
    "helvetica": {
        "regular": ["Helvetica.ttc", "LiberationSans-Regular.ttf"],
        "bold": ["Helvetica.ttc", "LiberationSans-Bold.ttf"],
    },
    "helvetica neue": {
        "regular": ["HelveticaNeue.ttc", "LiberationSans-Regular.ttf"],
        "bold": ["HelveticaNeue.ttc", "LiberationSans-Bold.ttf"],
    },
    "inter": {
        "regular": ["Inter-Regular.ttf", "Inter.ttf", "Inter-Regular.otf"],
        "bold": ["Inter-Bold.ttf", "Inter-Bold.otf"],
    },
    "noto sans jp": {
        "regular": [
            "/usr/share/fonts/opentype/noto/NotoSansCJK-Regular.ttc",
            "/usr/share/fonts/truetype/noto/NotoSansCJK-Regular.ttc",
        ],
        "bold": [
            "/usr/share/fonts/opentype/noto/NotoSansCJK-Bold.ttc",
            "/usr/share/fonts/truetype/noto/NotoSansCJK-Bold.ttc",
        ],
    },
    "sans-serif": {
        "regular": ["DejaVuSans.ttf", "LiberationSans-Regular.ttf", "NotoSans-Regular.ttf"],
        "bold": ["DejaVuSans-Bold.ttf", "LiberationSans-Bold.ttf", "NotoSans-Bold.ttf"],
    },
    "serif": {
        "regular": ["DejaVuSerif.ttf", "LiberationSerif-Regular.ttf"],
        "bold": ["DejaVuSerif-Bold.ttf", "LiberationSerif-Bold.ttf"],
    },
    "monospace": {
        "regular": ["DejaVuSansMono.ttf", "LiberationMono-Regular.ttf"],
        "bold": ["DejaVuSansMono-Bold.ttf", "LiberationMono-Bold.ttf"],
    },
}

_RGBA_FUNC = re.compile(
    r"^rgba?\(\s*([\d.]+)\s*,\s*([\d.]+)\s*,\s*([\d.]+)\s*(?:,\s*([\d.]+%?)\s*)?\)$",
    re.IGNORECASE,
)


def parse_color(value: str | None, default: str = "#ffffff") -> RGBA:
    """Parse a CSS-like color into RGBA.

    Accepts ``#rgb``, ``#rrggbb``, ``#rrggbbaa``, ``rgb()``/``rgba()`` with a
    0-1 alpha, named colors, and the ``color@alpha`` form used by ffmpeg.
    Invalid input falls back to ``default``.
    """
    if not value or value == "transparent":
        return (0, 0, 0, 0) if value == "transparent" else parse_color(default, "#ffffff")

    text = value.strip()
    alpha_override: float | None = None
    if "@" in text:
        text, _, alpha_part = text.partition("@")
        try:
            alpha_override = float(alpha_part)
        except ValueError:
            alpha_override = None

    match = _RGBA_FUNC.match(text)
    if match:
        r, g, b = (min(255, int(float(match.group(i)))) for i in (1, 2, 3))
        a_raw = match.group(4)
        if a_raw is None:
            alpha = 1.0
        elif a_raw.endswith("%"):
            alpha = float(a_raw[:-1]) / 100
        else:
            alpha = float(a_raw)
        rgba = (r, g, b, round(min(max(alpha, 0.0), 1.0) * 255))
    else:
        try:
            parsed = ImageColor.getrgb(text)
        except ValueError:
            logger.warning(f"[TEXT] Invalid color {value!r}, using {default}")
            return parse_color(default, "#ffffff")
        rgba = parsed if len(parsed) == 4 else (*parsed, 255)

    if alpha_override is not None:
        rgba = (*rgba[:3], round(min(max(alpha_override, 0.0), 1.0) * 255))
    return rgba


def _is_bold(weight: str | int) -> bool:
    if isinstance(weight, int):
        return weight >= 600
    weight = str(weight).strip().lower()
    if weight.isdigit():
        return int(weight) >= 600
    return weight in ("bold", "bolder", "semibold", "extrabold", "black")


def _family_names(font_family: str) -> list[str]:
    return [name.strip().strip("'\"").lower() for name in font_family.split(",") if name.strip()]


@lru_cache(maxsize=64)
def load_font(font_family: str, size: int, bold: bool = False) -> ImageFont.FreeTypeFont:
    """Resolve a CSS font-family list to a concrete font at ``size`` px.

    Falls back to generic sans-serif files and finally to Pillow's bundled
    font so measurement always works.
    """
    settings = get_settings()
    families = _family_names(font_family)
    families.append(settings.default_font_family.lower())
    families.append("sans-serif")

    weight_order = ("bold", "regular") if bold else ("regular",)
    candidates: list[str] = []
    for family in families:
        spec = FONT_CANDIDATES.get(family, {})
        for weight in weight_order:
            for name in spec.get(weight, []):
                if name not in candidates:
                    candidates.append(name)

    for candidate in candidates:
        paths = [candidate]
        if not Path(candidate).is_absolute():
            paths = [str(Path(d) / candidate) for d in settings.font_dirs] + [candidate]
        for path in paths:
            try:
                font = ImageFont.truetype(path, size)
            except OSError:
                continue
            logger.info(f"[TEXT] Loaded font: {path} ({size}px)")
            return font

    logger.warning(f"[TEXT] No font found for {font_family!r}, using Pillow default")
    return ImageFont.load_default(size=size)


def wrap_text(text: str, font: ImageFont.FreeTypeFont, max_width: float) -> list[str]:
    """Greedy word wrap against measured pixel width.

    Explicit newlines always break. A single word wider than ``max_width``
    stays whole on its own line.
    """
    lines: list[str] = []
    for paragraph in text.split("\n"):
        words = paragraph.split()
        if not words:
            lines.append("")
            continue
        current = words[0]
        for word in words[1:]:
            candidate = f"{current} {word}"
            if font.getlength(candidate) > max_width:
                lines.append(current)
                current = word
            else:
                current = candidate
        lines.append(current)
    return lines


def compute_fade_opacity(
    scene_progress: float | None,
    scene_duration: float,
    fade_in: float = 0.0,
    fade_out: float = 0.0,
) -> float:
    """Linear fade in over the first ``fade_in`` seconds and out over the last ``fade_out``."""
    if scene_progress is None or (fade_in <= 0 and fade_out <= 0) or scene_duration <= 0:
        return 1.0

    elapsed = min(max(scene_progress, 0.0), 1.0) * scene_duration
    remaining = scene_duration - elapsed
    opacity = 1.0
    if fade_in > 0 and elapsed < fade_in:
        opacity = elapsed / fade_in
    if fade_out > 0 and remaining < fade_out:
        opacity = min(opacity, remaining / fade_out)
    return min(max(opacity, 0.0), 1.0)


def background_color_for(style: TextStyle) -> str | None:
    """Resolved box color, or None when the style asks for no box."""
    if style.background is False:
        return None
    if isinstance(style.background, str):
        return style.background
    return style.background_color or DEFAULT_BACKGROUND


@dataclass(frozen=True)
class TextLine:
    text: str
    x: float  # anchor x (center, left or right edge per alignment)
    y: float  # vertical middle of the line
    width: float


@dataclass(frozen=True)
class BackgroundBox:
    x0: float
    y0: float
    x1: float
    y1: float
    radius: float
    color: RGBA

    @property
    def width(self) -> float:
        return self.x1 - self.x0

    @property
    def height(self) -> float:
        return self.y1 - self.y0


@dataclass(frozen=True)
class RenderableText:
    """Pixel-space layout of one overlay at one instant."""

    lines: tuple[TextLine, ...]
    font_family: str
    font_size: int
    bold: bool
    line_height: float
    center_x: float
    center_y: float
    anchor: str
    fill: RGBA
    stroke: RGBA | None = None
    stroke_width: int = 0
    box: BackgroundBox | None = None
    opacity: float = 1.0
    # Union of drawn glyph boxes; may extend past the line block
    ink: tuple[float, float, float, float] | None = None

    @property
    def text(self) -> str:
        return "\n".join(line.text for line in self.lines)

    @property
    def block_width(self) -> float:
        return max((line.width for line in self.lines), default=0.0)

    @property
    def block_height(self) -> float:
        return len(self.lines) * self.line_height

    def bounds(self) -> tuple[int, int, int, int]:
        """Integer pixel region touched when drawing."""
        margin = self.stroke_width + 2
        if self.anchor.startswith("l"):
            left = self.center_x
        elif self.anchor.startswith("r"):
            left = self.center_x - self.block_width
        else:
            left = self.center_x - self.block_width / 2
        top = self.center_y - self.block_height / 2
        x0, y0 = left - margin, top - margin
        x1, y1 = left + self.block_width + margin, top + self.block_height + margin
        if self.box is not None:
            x0, y0 = min(x0, self.box.x0), min(y0, self.box.y0)
            x1, y1 = max(x1, self.box.x1), max(y1, self.box.y1)
        if self.ink is not None:
            x0, y0 = min(x0, self.ink[0] - 1), min(y0, self.ink[1] - 1)
            x1, y1 = max(x1, self.ink[2] + 1), max(y1, self.ink[3] + 1)
        return math.floor(x0), math.floor(y0), math.ceil(x1), math.ceil(y1)


@dataclass
class _OverlayCacheEntry:
    image: Image.Image
    origin: tuple[int, int]


class TextRenderer:
    """Lays out overlays and rasterizes them onto output frames."""

    def __init__(self, cache_size: int = 8) -> None:
        self.cache_size = cache_size
        # Rasterized overlays keyed by layout, quantized opacity and frame size
        self._overlays: OrderedDict[tuple, _OverlayCacheEntry] = OrderedDict()

    def layout(
        self,
        overlay: TextOverlay,
        frame_width: int,
        frame_height: int,
        scene_progress: float | None = None,
        scene_duration: float = 0.0,
        style: TextStyle | None = None,
    ) -> RenderableText | None:
        """Compute pixel geometry for an already-resolved overlay.

        Args:
            overlay: Overlay with variables substituted
            frame_width: Output frame width in px
            frame_height: Output frame height in px
            scene_progress: Scene progress 0..1, None disables fades
            scene_duration: Scene length in seconds, used for fade timing
            style: Effective style, defaults to ``overlay.style``

        Returns:
            RenderableText, or None when the text is empty after substitution
        """
        text = overlay.content or ""
        if not text.strip():
            return None

        style = style or overlay.style
        font_size = max(1, round(style.font_size))
        bold = _is_bold(style.font_weight)
        font = load_font(style.font_family, font_size, bold)

        center_x = overlay.position.x / 100 * frame_width
        center_y = overlay.position.y / 100 * frame_height

        if style.max_width < 100:
            lines = wrap_text(text, font, style.max_width / 100 * frame_width)
        else:
            lines = text.split("\n")

        line_height = font_size * style.line_height_multiplier
        total_height = len(lines) * line_height
        start_y = center_y - total_height / 2 + line_height / 2
        widths = [font.getlength(line) for line in lines]
        block_width = max(widths)

        if style.text_align == "left":
            anchor, x = "lm", center_x - block_width / 2
        elif style.text_align == "right":
            anchor, x = "rm", center_x + block_width / 2
        else:
            anchor, x = "mm", center_x

        placed = tuple(
            TextLine(text=line, x=x, y=start_y + i * line_height, width=width)
            for i, (line, width) in enumerate(zip(lines, widths))
        )

        box = None
        box_color = background_color_for(style)
        if box_color is not None:
            rgba = parse_color(box_color, DEFAULT_BACKGROUND)
            if rgba[3] > 0:
                pad_x = font_size * PADDING_X_RATIO
                pad_y = font_size * PADDING_Y_RATIO
                box_width = block_width + pad_x * 2
                top = start_y - line_height / 2 - pad_y
                box = BackgroundBox(
                    x0=center_x - box_width / 2,
                    y0=top,
                    x1=center_x + box_width / 2,
                    y1=top + total_height + pad_y * 2,
                    radius=style.background_radius,
                    color=rgba,
                )

        stroke = None
        stroke_width = 0
        if style.stroke and style.stroke_width > 0 and style.stroke != "transparent":
            stroke = parse_color(style.stroke, "#000000")
            # Canvas strokes straddle the outline; Pillow strokes grow outward only
            stroke_width = max(1, math.ceil(style.stroke_width / 2))

        ink = None
        for line in placed:
            if not line.text:
                continue
            left, top, right, bottom = font.getbbox(
                line.text, anchor=anchor, stroke_width=stroke_width
            )
            glyph = (line.x + left, line.y + top, line.x + right, line.y + bottom)
            if ink is None:
                ink = glyph
            else:
                ink = (
                    min(ink[0], glyph[0]),
                    min(ink[1], glyph[1]),
                    max(ink[2], glyph[2]),
                    max(ink[3], glyph[3]),
                )

        opacity = compute_fade_opacity(
            scene_progress, scene_duration, style.fade_in, style.fade_out
        )

        return RenderableText(
            lines=placed,
            font_family=style.font_family,
            font_size=font_size,
            bold=bold,
            line_height=line_height,
            center_x=center_x,
            center_y=center_y,
            anchor=anchor,
            fill=parse_color(style.color, "#ffffff"),
            stroke=stroke,
            stroke_width=stroke_width,
            box=box,
            opacity=opacity,
            ink=ink,
        )

    def render_overlay(
        self, renderable: RenderableText, frame_size: tuple[int, int]
    ) -> tuple[Image.Image, tuple[int, int]] | None:
        """Rasterize an overlay into a transparent layer clipped to the frame.

        Returns:
            (layer, (x, y)) destination offset, or None if fully off-frame or invisible
        """
        alpha_step = round(renderable.opacity * 255)
        if alpha_step <= 0:
            return None

        key = (renderable, alpha_step, tuple(frame_size))
        cached = self._overlays.get(key)
        if cached is not None:
            self._overlays.move_to_end(key)
            return cached.image, cached.origin

        x0, y0, x1, y1 = renderable.bounds()
        x0, y0 = max(x0, 0), max(y0, 0)
        x1, y1 = min(x1, frame_size[0]), min(y1, frame_size[1])
        if x1 <= x0 or y1 <= y0:
            return None

        size = (x1 - x0, y1 - y0)
        font = load_font(renderable.font_family, renderable.font_size, renderable.bold)

        # Each pass gets its own layer so later passes blend over earlier ones
        layer = Image.new("RGBA", size, (0, 0, 0, 0))
        if renderable.box is not None:
            box = renderable.box
            box_layer = Image.new("RGBA", size, (0, 0, 0, 0))
            ImageDraw.Draw(box_layer).rounded_rectangle(
                [(box.x0 - x0, box.y0 - y0), (box.x1 - x0, box.y1 - y0)],
                radius=box.radius,
                fill=box.color,
            )
            layer.alpha_composite(box_layer)

        if renderable.stroke is not None and renderable.stroke_width > 0:
            stroke_layer = Image.new("RGBA", size, (0, 0, 0, 0))
            draw = ImageDraw.Draw(stroke_layer)
            for line in renderable.lines:
                draw.text(
                    (line.x - x0, line.y - y0),
                    line.text,
                    font=font,
                    anchor=renderable.anchor,
                    fill=renderable.stroke,
                    stroke_width=renderable.stroke_width,
                    stroke_fill=renderable.stroke,
                )
            layer.alpha_composite(stroke_layer)

        fill_layer = Image.new("RGBA", size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(fill_layer)
        for line in renderable.lines:
            draw.text(
                (line.x - x0, line.y - y0),
                line.text,
                font=font,
                anchor=renderable.anchor,
                fill=renderable.fill,
            )
        layer.alpha_composite(fill_layer)

        if alpha_step < 255:
            alpha = layer.getchannel("A").point(lambda a: a * alpha_step // 255)
            layer.putalpha(alpha)

        self._overlays[key] = _OverlayCacheEntry(image=layer, origin=(x0, y0))
        while len(self._overlays) > self.cache_size:
            self._overlays.popitem(last=False)
        return layer, (x0, y0)

    def draw(self, frame: Image.Image, renderable: RenderableText) -> None:
        """Burn ``renderable`` into an RGBA ``frame`` in place."""
        rendered = self.render_overlay(renderable, frame.size)
        if rendered is None:
            return
        layer, origin = rendered
        frame.alpha_composite(layer, dest=origin)

    def clear_cache(self) -> None:
        self._overlays.clear()
