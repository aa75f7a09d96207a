"""Tests for the command line entry point."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from reelforge.cli import build_parser, main
from reelforge.render.pipeline import RenderResult, RenderStatus
from reelforge.schemas.envelope import ErrorInfo


@pytest.fixture
def template_file(temp_output_dir, two_scene_template):
    path = temp_output_dir / "template.json"
    path.write_text(json.dumps(two_scene_template))
    return path


@pytest.fixture
def content_file(temp_output_dir):
    path = temp_output_dir / "content.json"
    path.write_text(json.dumps({"hook": "Hello", "cta": ["Like", "Follow"]}))
    return path


class TestValidateCommand:
    def test_prints_mapping(self, template_file, content_file, capsys):
        code = main([
            "validate",
            "--template", str(template_file),
            "--content", str(content_file),
            "--source-duration", "20",
        ])

        out = capsys.readouterr().out
        assert code == 0
        assert "scene 0: out 0.00-5.00s src 0.00-5.00s 'Hello'" in out
        assert "scene 1: out 5.00-10.00s src 10.00-15.00s 'Like\\nFollow'" in out

    def test_reports_unresolved(self, template_file, capsys):
        code = main(["validate", "--template", str(template_file)])

        assert code == 0
        assert "unresolved: hook, cta" in capsys.readouterr().err

    def test_invalid_template(self, temp_output_dir, capsys):
        path = temp_output_dir / "bad.json"
        path.write_text(json.dumps({"duration": 5, "scenes": [{"start": 2, "end": 1}]}))

        assert main(["validate", "--template", str(path)]) == 1
        assert "INVALID_TEMPLATE" in capsys.readouterr().err

    def test_unreadable_file(self, temp_output_dir):
        with pytest.raises(SystemExit):
            main(["validate", "--template", str(temp_output_dir / "missing.json")])


class TestRenderCommand:
    def test_writes_output(self, template_file, temp_output_dir, capsys):
        output = temp_output_dir / "out.mp4"
        result = RenderResult(status=RenderStatus.COMPLETED, output=b"MP4DATA", elapsed_ms=12)

        with patch("reelforge.cli.RenderPipeline.render", new=AsyncMock(return_value=result)) as render:
            code = main([
                "render",
                "--source", "clip.mp4",
                "--template", str(template_file),
                "--output", str(output),
                "--no-cache",
            ])

        assert code == 0
        assert output.read_bytes() == b"MP4DATA"
        assert render.await_args.kwargs["use_cache"] is False

    def test_failure_exit_code(self, template_file, temp_output_dir, capsys):
        output = temp_output_dir / "out.mp4"
        result = RenderResult(
            status=RenderStatus.FAILED,
            error=ErrorInfo(code="SOURCE_UNAVAILABLE", message="Source file not found: x.mp4"),
        )

        with patch("reelforge.cli.RenderPipeline.render", new=AsyncMock(return_value=result)):
            code = main([
                "render", "--source", "x.mp4", "--template", str(template_file), "--output", str(output),
            ])

        assert code == 1
        assert "SOURCE_UNAVAILABLE" in capsys.readouterr().err
        assert not output.exists()

    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
