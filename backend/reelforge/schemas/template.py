"""Video template models.

Templates arrive as camelCase JSON from the template storage API. Field names
of the older storage format (``start``/``end``, ``videoStart``/``videoEnd``,
``textStyle``) are accepted as aliases so stored templates load unchanged.
"""

from collections.abc import Mapping
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from reelforge.exceptions import InvalidTemplateError

SCHEMA_VERSION = 1


class TextStyle(BaseModel):
    """Overlay text styling. Sizes are output pixels, maxWidth is percent of frame width."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    font_size: float = Field(default=48, alias="fontSize", gt=0)
    font_weight: str | int = Field(default="bold", alias="fontWeight")
    font_family: str = Field(default="Arial, sans-serif", alias="fontFamily")
    color: str = "#ffffff"
    stroke: str | None = None
    stroke_width: float = Field(default=0, alias="strokeWidth", ge=0)
    max_width: float = Field(default=100, alias="maxWidth", gt=0, le=100)
    line_height_multiplier: float = Field(default=1.35, alias="lineHeightMultiplier", gt=0)
    fade_in: float = Field(default=0, alias="fadeIn", ge=0)
    fade_out: float = Field(default=0, alias="fadeOut", ge=0)
    # False = no box, a color string = that box color, otherwise backgroundColor or the default
    background: bool | str | None = None
    background_color: str | None = Field(default=None, alias="backgroundColor")
    background_radius: float = Field(default=12, alias="backgroundRadius", ge=0)
    text_align: Literal["left", "center", "right"] = Field(default="center", alias="textAlign")

    def merged_over(self, base: "TextStyle | None") -> "TextStyle":
        """Return this style layered over ``base``; only explicitly set fields override."""
        if base is None:
            return self
        data = base.model_dump(exclude_unset=True)
        data.update(self.model_dump(exclude_unset=True))
        return TextStyle.model_validate(data)


class TextPosition(BaseModel):
    """Overlay center in percent (0-100) of the output frame."""

    x: float = Field(default=50, ge=0, le=100)
    y: float = Field(default=50, ge=0, le=100)


class TextOverlay(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    content: str = ""
    position: TextPosition = Field(default_factory=TextPosition)
    style: TextStyle = Field(default_factory=TextStyle)


class Scene(BaseModel):
    """One segment of the output timeline."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    output_start: float = Field(
        alias="outputStart",
        validation_alias=AliasChoices("outputStart", "start", "output_start"),
        ge=0,
    )
    output_end: float = Field(
        alias="outputEnd",
        validation_alias=AliasChoices("outputEnd", "end", "output_end"),
        ge=0,
    )
    source_start: float | None = Field(
        default=None,
        alias="sourceStart",
        validation_alias=AliasChoices("sourceStart", "videoStart", "source_start"),
        ge=0,
    )
    source_end: float | None = Field(
        default=None,
        alias="sourceEnd",
        validation_alias=AliasChoices("sourceEnd", "videoEnd", "source_end"),
        ge=0,
    )
    text: TextOverlay | None = Field(
        default=None,
        validation_alias=AliasChoices("text", "overlay"),
    )
    # Cosmetic filter descriptors, carried as opaque tags
    filters: list[Any] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_times(self) -> "Scene":
        if self.output_end <= self.output_start:
            raise ValueError(
                f"outputEnd ({self.output_end}) must be greater than outputStart ({self.output_start})"
            )
        if self.has_explicit_source and self.source_end <= self.source_start:
            raise ValueError(
                f"sourceEnd ({self.source_end}) must be greater than sourceStart ({self.source_start})"
            )
        return self

    @property
    def duration(self) -> float:
        return self.output_end - self.output_start

    @property
    def has_explicit_source(self) -> bool:
        """Explicit mapping requires both ends; a lone sourceStart is ignored."""
        return self.source_start is not None and self.source_end is not None


class VideoTemplate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    schema_version: int = Field(
        default=SCHEMA_VERSION,
        alias="schemaVersion",
        validation_alias=AliasChoices("schemaVersion", "schema_version"),
    )
    name: str | None = None
    duration: float = Field(gt=0)
    scenes: list[Scene] = Field(min_length=1)
    default_text_style: TextStyle | None = Field(
        default=None,
        alias="defaultTextStyle",
        validation_alias=AliasChoices("defaultTextStyle", "textStyle", "default_text_style"),
    )

    @model_validator(mode="after")
    def _check_version(self) -> "VideoTemplate":
        if self.schema_version > SCHEMA_VERSION:
            raise ValueError(
                f"schemaVersion {self.schema_version} is newer than supported ({SCHEMA_VERSION})"
            )
        return self

    def style_for(self, scene: Scene) -> TextStyle:
        """Effective style of a scene overlay with template defaults merged under it."""
        style = scene.text.style if scene.text else TextStyle()
        return style.merged_over(self.default_text_style)

    def scene_payload(self) -> list[dict[str, Any]]:
        """Canonical JSON-ready form of the scene list."""
        return [
            scene.model_dump(mode="json", by_alias=True, exclude_none=True)
            for scene in self.scenes
        ]


def load_template(data: Mapping[str, Any] | VideoTemplate) -> VideoTemplate:
    """Validate raw template JSON.

    Raises:
        InvalidTemplateError: naming the offending scene index and field
    """
    if isinstance(data, VideoTemplate):
        return data
    try:
        return VideoTemplate.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        loc = list(first.get("loc", ()))
        scene_index = None
        if len(loc) >= 2 and loc[0] == "scenes" and isinstance(loc[1], int):
            scene_index = loc[1]
        field = ".".join(str(part) for part in loc) or None
        where = f"{field}: " if field else ""
        raise InvalidTemplateError(
            f"{where}{first.get('msg', 'invalid value')}",
            scene_index=scene_index,
            field=field,
        ) from e


def normalize_content(raw: Mapping[str, Any] | None) -> dict[str, str]:
    """Flatten caller content into a string map.

    Lists are joined with newlines, None becomes empty and other scalars are
    stringified.
    """
    content: dict[str, str] = {}
    for key, value in (raw or {}).items():
        if value is None:
            content[key] = ""
        elif isinstance(value, (list, tuple)):
            content[key] = "\n".join(str(v) for v in value if v is not None)
        else:
            content[key] = str(value)
    return content
