"""Tests for template validation, legacy field names and style merging."""

import pytest

from reelforge.exceptions import InvalidTemplateError
from reelforge.schemas.template import (
    TextStyle,
    VideoTemplate,
    load_template,
    normalize_content,
)


def _template(**overrides):
    data = {
        "duration": 10,
        "scenes": [
            {"outputStart": 0, "outputEnd": 5, "text": {"content": "{{hook}}"}},
            {"outputStart": 5, "outputEnd": 10},
        ],
    }
    data.update(overrides)
    return data


class TestLoadTemplate:
    """Validation of raw template JSON."""

    def test_valid_template(self):
        template = load_template(_template())

        assert isinstance(template, VideoTemplate)
        assert len(template.scenes) == 2
        assert template.scenes[0].text.content == "{{hook}}"
        assert template.scenes[1].text is None

    def test_model_passes_through(self):
        template = load_template(_template())
        assert load_template(template) is template

    def test_end_before_start_names_scene(self):
        data = _template(scenes=[
            {"outputStart": 0, "outputEnd": 5},
            {"outputStart": 6, "outputEnd": 4},
        ])

        with pytest.raises(InvalidTemplateError) as exc_info:
            load_template(data)

        error = exc_info.value
        assert error.status_code == 400
        assert error.location.scene_index == 1
        assert error.location.stage == "validate"
        assert "outputEnd" in error.message

    def test_zero_length_scene_rejected(self):
        with pytest.raises(InvalidTemplateError):
            load_template(_template(scenes=[{"outputStart": 2, "outputEnd": 2}]))

    def test_missing_field_named(self):
        with pytest.raises(InvalidTemplateError) as exc_info:
            load_template(_template(scenes=[{"outputStart": 0}]))

        assert exc_info.value.location.scene_index == 0
        assert "outputEnd" in exc_info.value.location.field

    def test_nonpositive_duration(self):
        with pytest.raises(InvalidTemplateError) as exc_info:
            load_template(_template(duration=0))

        assert exc_info.value.location.field == "duration"
        assert exc_info.value.location.scene_index is None

    def test_empty_scene_list(self):
        with pytest.raises(InvalidTemplateError):
            load_template(_template(scenes=[]))

    def test_inverted_source_window(self):
        data = _template(scenes=[{"outputStart": 0, "outputEnd": 2, "sourceStart": 5, "sourceEnd": 3}])

        with pytest.raises(InvalidTemplateError) as exc_info:
            load_template(data)

        assert exc_info.value.location.scene_index == 0

    def test_newer_schema_version_rejected(self):
        with pytest.raises(InvalidTemplateError):
            load_template(_template(schemaVersion=99))

    def test_max_width_bounds(self):
        scenes = [{"outputStart": 0, "outputEnd": 1, "text": {"content": "x", "style": {"maxWidth": 150}}}]
        with pytest.raises(InvalidTemplateError):
            load_template(_template(scenes=scenes))


class TestLegacyFieldNames:
    """Older storage format keys."""

    def test_start_end_and_video_window(self):
        data = {
            "duration": 4,
            "scenes": [{"start": 0, "end": 4, "videoStart": 1, "videoEnd": 5}],
        }
        scene = load_template(data).scenes[0]

        assert (scene.output_start, scene.output_end) == (0, 4)
        assert (scene.source_start, scene.source_end) == (1, 5)
        assert scene.has_explicit_source

    def test_text_style_alias(self):
        template = load_template(_template(textStyle={"fontSize": 64}))

        assert template.default_text_style.font_size == 64

    def test_dump_uses_camel_case(self):
        template = load_template(_template())
        payload = template.scene_payload()

        assert payload[0]["outputStart"] == 0
        assert "sourceStart" not in payload[0]


class TestStyleMerging:
    """Scene styles layered over template defaults."""

    def test_defaults_apply_to_unset_fields(self):
        data = _template(defaultTextStyle={"fontSize": 60, "color": "#ff0000"})
        data["scenes"][0]["text"]["style"] = {"color": "#00ff00"}
        template = load_template(data)

        style = template.style_for(template.scenes[0])

        assert style.font_size == 60
        assert style.color == "#00ff00"

    def test_no_defaults(self):
        template = load_template(_template())
        style = template.style_for(template.scenes[0])

        assert style.font_size == 48
        assert style.line_height_multiplier == pytest.approx(1.35)

    def test_merged_over_none(self):
        style = TextStyle(fontSize=20)
        assert style.merged_over(None) is style

    def test_explicit_default_value_still_overrides(self):
        base = TextStyle(fontSize=80)
        style = TextStyle(fontSize=48).merged_over(base)

        assert style.font_size == 48


class TestNormalizeContent:
    """Caller content flattening."""

    def test_lists_joined_with_newlines(self):
        assert normalize_content({"items": ["one", "two"]}) == {"items": "one\ntwo"}

    def test_none_and_scalars(self):
        assert normalize_content({"a": None, "b": 3, "c": True}) == {"a": "", "b": "3", "c": "True"}

    def test_missing_content(self):
        assert normalize_content(None) == {}
