"""Command line entry for the framely render pipeline."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from batch_data import load_data_file
from config_loader import AppConfig, load_config
from logging_utils import configure_logging, get_logger
from render_pipeline.batch import format_summary
from render_pipeline.errors import RenderError, ValidationError
from render_pipeline.models import BatchOutcome
from render_pipeline.progress import ConsoleBar
from render_pipeline.service import SOURCE_KINDS, RenderService
from render_pipeline.validation import validate_port

logger = get_logger(__name__)

LOG_LEVELS = ["error", "warn", "info", "verbose"]


def _common_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        help="Path to configuration file (default: config.yaml when present)",
    )
    common.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        help="Logging verbosity (default: logging.level from config, else info)",
    )
    common.add_argument("--frontend-url", help="Front-end URL serving the compositions")
    common.add_argument(
        "--allow-remote",
        action="store_true",
        help="Allow a front-end URL that is not on this machine",
    )
    common.add_argument(
        "--source",
        choices=SOURCE_KINDS,
        help="Frame source: headless browser (default) or synthetic test pattern",
    )
    return common


def _add_props(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--props", help="Input props as a JSON object")
    parser.add_argument("--props-file", help="Path to a JSON file holding the input props")


def _add_dimensions(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--width", help="Override composition width")
    parser.add_argument("--height", help="Override composition height")
    parser.add_argument("--scale", default="1", help="Output scale factor (default: 1)")


def _add_encoding(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--codec", help="Codec id (see `codecs`); default from config or h264")
    parser.add_argument("--crf", help="Constant rate factor (codec dependent range)")
    parser.add_argument("--bitrate", help="Target video bitrate, e.g. 5M (overrides CRF)")
    parser.add_argument("--preset", default="fast", help="x264/x265 preset (default: fast)")
    parser.add_argument("--prores-profile", help="ProRes profile: proxy, lt, standard, hq, 4444, 4444xq")
    parser.add_argument("--fps", help="Override composition frame rate")
    parser.add_argument("--muted", action="store_true", help="Render without audio")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Render compositions to video, images or batches")
    sub = parser.add_subparsers(dest="command", required=True)
    common = _common_parser()

    render = sub.add_parser("render", parents=[common], help="Render a composition to a video file")
    render.add_argument("composition", help="Composition id")
    render.add_argument("output", nargs="?", help="Output file (or directory for image sequences)")
    _add_dimensions(render)
    _add_encoding(render)
    _add_props(render)
    render.add_argument("--duration", help="Override composition duration in frames")
    render.add_argument("--start-frame", default="0", help="First frame to render (default: 0)")
    render.add_argument("--end-frame", help="Last frame to render (default: last frame)")
    render.add_argument("--concurrency", help="Parallel segment workers (default from config)")
    render.add_argument("--image-sequence", action="store_true", help="Write one image per frame")
    render.add_argument("--image-format", default="png", help="Image format: png or jpeg")
    render.add_argument("--quality", default="80", help="JPEG quality 0-100 (default: 80)")
    render.add_argument("--no-progress", action="store_true", help="Do not draw a progress bar")

    still = sub.add_parser("still", parents=[common], help="Capture a single frame as an image")
    still.add_argument("composition", help="Composition id")
    still.add_argument("output", nargs="?", help="Output image file")
    still.add_argument("--frame", type=int, default=0, help="Frame to capture (default: 0)")
    still.add_argument("--image-format", default="png", help="Image format: png or jpeg")
    still.add_argument("--quality", default="80", help="JPEG quality 0-100 (default: 80)")
    _add_dimensions(still)
    _add_props(still)

    batch = sub.add_parser("batch", parents=[common], help="Render one video per row of a data file")
    batch.add_argument("composition", help="Composition id")
    batch.add_argument("--data", required=True, help="Data file: .csv, .tsv, .json, .yaml")
    batch.add_argument(
        "--output-pattern",
        help="Filename pattern with {field}, {_index}, {compositionId} placeholders",
    )
    batch.add_argument("--output-dir", help="Directory for rendered files (default from config)")
    batch.add_argument("--concurrency", help="Jobs rendered at the same time (default from config)")
    batch.add_argument("--fail-fast", action="store_true", help="Stop at the first failed job")
    _add_dimensions(batch)
    _add_encoding(batch)
    _add_props(batch)

    codecs = sub.add_parser("codecs", parents=[common], help="List supported codecs")
    codecs.add_argument("--json", action="store_true", help="Print as JSON")

    compositions = sub.add_parser(
        "compositions", parents=[common], help="List compositions registered by the front end"
    )
    compositions.add_argument("--json", action="store_true", help="Print as JSON")

    serve = sub.add_parser("serve", parents=[common], help="Run the HTTP render server")
    serve.add_argument("--host", help="Bind address (default from config)")
    serve.add_argument("--port", help="Port (default from config or $PORT)")
    return parser


def _load_props(args: argparse.Namespace) -> Dict[str, Any]:
    props: Dict[str, Any] = {}
    if getattr(args, "props_file", None):
        path = Path(args.props_file)
        if not path.exists():
            raise FileNotFoundError(f"Props file not found: {path}")
        try:
            props.update(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid JSON in props file {path}: {exc}") from exc
    if getattr(args, "props", None):
        try:
            inline = json.loads(args.props)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid JSON in --props: {exc}") from exc
        if not isinstance(inline, dict):
            raise ValidationError("--props must be a JSON object")
        props.update(inline)
    return props


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> None:
    if args.frontend_url:
        config.render.frontend_url = args.frontend_url
    if args.allow_remote:
        config.render.allow_remote = True
    if args.source:
        config.render.source = args.source


def _request_fields(args: argparse.Namespace) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        "width": getattr(args, "width", None),
        "height": getattr(args, "height", None),
        "scale": getattr(args, "scale", None),
        "input_props": _load_props(args),
    }
    for name in ("codec", "crf", "bitrate", "preset", "prores_profile", "fps"):
        fields[name] = getattr(args, name, None)
    if getattr(args, "muted", False):
        fields["muted"] = True
    return fields


def _run_render(service: RenderService, args: argparse.Namespace) -> int:
    fields = _request_fields(args)
    fields.update(
        duration_in_frames=args.duration,
        start_frame=args.start_frame,
        end_frame=args.end_frame,
        concurrency=args.concurrency,
        image_sequence=args.image_sequence or None,
        image_format=args.image_format,
        image_quality=args.quality,
    )
    request = service.new_request(args.composition, **fields)

    bar: Optional[ConsoleBar] = None

    def on_progress(done: int, total: int) -> None:
        nonlocal bar
        if bar is None:
            bar = ConsoleBar(total_frames=total, label=args.composition)
        bar.update(done, total)

    try:
        result = service.render(
            request,
            Path(args.output) if args.output else None,
            on_progress=None if args.no_progress else on_progress,
        )
    finally:
        if bar is not None:
            bar.finish()
    summary = {
        "output_path": str(result.output_path),
        "codec": result.codec,
        "total_frames": result.total_frames,
        "elapsed_seconds": round(result.elapsed_seconds, 2),
    }
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0


def _run_still(service: RenderService, args: argparse.Namespace) -> int:
    fields = _request_fields(args)
    fields.update(image_format=args.image_format, image_quality=args.quality)
    request = service.new_request(args.composition, **fields)
    result = service.still(request, args.frame, Path(args.output) if args.output else None)
    print(json.dumps({"output_path": str(result.output_path), "frame": result.frame}, indent=2))
    return 0


def _run_batch(service: RenderService, args: argparse.Namespace) -> int:
    rows = load_data_file(args.data)
    fields = _request_fields(args)
    fields["concurrency"] = args.concurrency or service.settings.concurrency
    shared_props = fields.pop("input_props")
    if shared_props:
        rows = [{**shared_props, **row} for row in rows]
    request = service.new_request(args.composition, **fields)
    logger.info("Batch render: %s, %d row(s) from %s", args.composition, len(rows), args.data)

    def on_outcome(outcome: BatchOutcome, finished: int, total: int) -> None:
        mark = "✓" if outcome.ok else "✗"
        detail = "" if outcome.ok else f" {outcome.error}"
        print(f"  {mark} [{finished}/{total}] {outcome.filename}{detail}", flush=True)

    summary = service.batch(
        request,
        rows,
        output_dir=Path(args.output_dir).expanduser().resolve() if args.output_dir else None,
        output_pattern=args.output_pattern,
        fail_fast=args.fail_fast,
        on_outcome=on_outcome,
    )
    print(format_summary(summary))
    if summary.failed:
        print(f"{summary.failed} job(s) failed. Re-run with --log-level verbose for details.", file=sys.stderr)
        return 1
    return 0


def _run_codecs(service: RenderService, args: argparse.Namespace) -> int:
    codecs = service.codecs()
    if args.json:
        print(json.dumps({"codecs": codecs}, ensure_ascii=False, indent=2))
        return 0
    for codec in codecs:
        print(f"{codec['id']:<8} {codec['description']}")
    return 0


def _run_compositions(service: RenderService, args: argparse.Namespace) -> int:
    compositions = service.compositions()
    if args.json:
        print(json.dumps(compositions, ensure_ascii=False, indent=2))
        return 0
    if not compositions:
        print("No compositions found.")
        print("Make sure the frontend is running and registers its compositions.", file=sys.stderr)
        return 0
    width = max(2, max(len(str(c.get("id", ""))) for c in compositions))
    print(f"{'ID':<{width + 2}}{'Resolution':<14}{'FPS':<6}Duration")
    for comp in compositions:
        frames = comp.get("durationInFrames")
        fps = comp.get("fps")
        resolution = f"{comp.get('width') or '?'}x{comp.get('height') or '?'}"
        fps_text = f"{fps:g}" if fps else "?"
        seconds = f"{frames / fps:.1f}s" if frames and fps else "?"
        print(f"{comp.get('id', 'unknown'):<{width + 2}}{resolution:<14}{fps_text:<6}{frames or '?'} frames ({seconds})")
    print(f"{len(compositions)} composition(s) found")
    return 0


def _run_serve(config: AppConfig, args: argparse.Namespace) -> int:
    import uvicorn

    from render_server import create_app

    port = validate_port(args.port if args.port is not None else config.render.port)
    host = args.host or config.render.host
    config.render.port = port
    logger.info("Render server listening on http://%s:%d", host, port)
    uvicorn.run(create_app(config), host=host, port=port, log_config=None)
    return 0


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config, project_root=Path.cwd())
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    _apply_overrides(config, args)
    configure_logging(args.log_level or config.logging_level, config.log_file)
    logger.debug("Config: %s", config.dumps())

    try:
        if args.command == "serve":
            return _run_serve(config, args)
        service = RenderService(config)
        handlers = {
            "render": _run_render,
            "still": _run_still,
            "batch": _run_batch,
            "codecs": _run_codecs,
            "compositions": _run_compositions,
        }
        return handlers[args.command](service, args)
    except (RenderError, FileNotFoundError) as exc:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
