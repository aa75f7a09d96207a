from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class RenderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_url: str = Field(
        validation_alias=AliasChoices("sourceUrl", "source_url", "brollUrl", "videoUrl"),
        min_length=1,
    )
    template: dict[str, Any]
    content: dict[str, Any] = Field(default_factory=dict)
    use_cache: bool = Field(default=True, validation_alias=AliasChoices("useCache", "use_cache"))


class ValidateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    template: dict[str, Any]
    content: dict[str, Any] = Field(default_factory=dict)
    # Cache key is only reported when the source is named
    source_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("sourceUrl", "source_url", "brollUrl", "videoUrl"),
    )
    # Mapping preview for a known source length; omitted = configured fallback
    source_duration: float | None = Field(
        default=None,
        validation_alias=AliasChoices("sourceDuration", "source_duration"),
        ge=0,
    )


class SceneSummary(BaseModel):
    scene_index: int
    output_start: float
    output_end: float
    source_start: float
    source_end: float
    explicit_source: bool
    text: str | None = None
    lines: list[str] = Field(default_factory=list)


class ValidateResponse(BaseModel):
    name: str | None = None
    duration: float
    scenes: list[SceneSummary]
    unresolved_variables: list[str] = Field(default_factory=list)
    cache_key: str | None = None
