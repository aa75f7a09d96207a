"""Command line entry point.

    reelforge render --source clip.mp4 --template t.json --content c.json --output out.mp4
    reelforge validate --template t.json --content c.json
    reelforge serve --port 8000
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import uvicorn

from reelforge.config import get_settings
from reelforge.exceptions import ReelforgeError
from reelforge.render.cache import RenderCache
from reelforge.render.pipeline import RenderConfig, RenderPipeline
from reelforge.render.scene_mapping import map_scenes
from reelforge.render.variables import collect_unresolved, resolve
from reelforge.schemas.template import load_template, normalize_content

logger = logging.getLogger(__name__)


def _load_json(path: str | None) -> dict[str, Any]:
    if not path:
        return {}
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise SystemExit(f"Cannot read {path}: {e}") from e


def _render(args: argparse.Namespace) -> int:
    settings = get_settings()
    config = RenderConfig.from_settings()
    if args.realtime:
        config.realtime = True
    cache = RenderCache(directory=args.cache_dir or settings.render_cache_dir or None)
    pipeline = RenderPipeline(cache=cache, config=config)
    pipeline.set_progress_callback(
        lambda progress: logger.info(f"[CLI] {progress.percent:3d}% {progress.stage}")
    )

    result = asyncio.run(
        pipeline.render(
            _load_json(args.template),
            _load_json(args.content),
            args.source,
            use_cache=not args.no_cache,
        )
    )
    for warning in result.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    if not result.success:
        error = result.error
        print(f"error: {error.code}: {error.message}", file=sys.stderr)
        return 1

    Path(args.output).write_bytes(result.output)
    origin = "cache" if result.cache_hit else f"{result.elapsed_ms} ms"
    print(f"{args.output}: {len(result.output)} bytes ({origin})")
    return 0


def _validate(args: argparse.Namespace) -> int:
    settings = get_settings()
    try:
        template = load_template(_load_json(args.template))
    except ReelforgeError as e:
        print(f"error: {e.code}: {e.message}", file=sys.stderr)
        return 1

    content = normalize_content(_load_json(args.content))
    mappings = map_scenes(
        template.scenes, args.source_duration, settings.default_source_duration_s
    )
    for scene, mapping in zip(template.scenes, mappings):
        text = resolve(scene.text.content, content) if scene.text else ""
        print(
            f"scene {mapping.scene_index}: out {mapping.output_start:.2f}-{mapping.output_end:.2f}s "
            f"src {mapping.source_start:.2f}-{mapping.source_end:.2f}s {text!r}"
        )
    unresolved = collect_unresolved(
        [scene.text.content for scene in template.scenes if scene.text], content
    )
    if unresolved:
        print(f"unresolved: {', '.join(unresolved)}", file=sys.stderr)
    return 0


def _serve(args: argparse.Namespace) -> int:
    uvicorn.run("reelforge.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reelforge", description="Template video renderer")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    render = sub.add_parser("render", help="Render a template over a source video")
    render.add_argument("--source", required=True, help="Source video path or URL")
    render.add_argument("--template", required=True, help="Template JSON file")
    render.add_argument("--content", help="Content variables JSON file")
    render.add_argument("--output", required=True, help="Output MP4 path")
    render.add_argument("--no-cache", action="store_true", help="Skip the render cache")
    render.add_argument("--cache-dir", help="Persistent cache directory")
    render.add_argument("--realtime", action="store_true", help="Pace the render in real time")
    render.set_defaults(func=_render)

    validate = sub.add_parser("validate", help="Check a template and show its scene mapping")
    validate.add_argument("--template", required=True, help="Template JSON file")
    validate.add_argument("--content", help="Content variables JSON file")
    validate.add_argument("--source-duration", type=float, help="Source length in seconds")
    validate.set_defaults(func=_validate)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=_serve)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
