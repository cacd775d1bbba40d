from __future__ import annotations

from pathlib import Path
from typing import Iterable, List

from logging_utils import get_logger

from .errors import EncodeFailedError
from .runner import run_ffmpeg

logger = get_logger(__name__)

FASTSTART_SUFFIXES = {".mp4", ".mov", ".m4v"}


def _container_args(output: Path) -> List[str]:
    if output.suffix.lower() in FASTSTART_SUFFIXES:
        return ["-movflags", "+faststart"]
    return []


def concat_streamcopy(inputs: Iterable[Path], output: Path, *, ffmpeg_path: str = "ffmpeg") -> Path:
    """Concat identically-encoded segments using the concat demuxer with copy.

    - Inputs are joined in the order given; callers sort by segment start
    - Validates input files (existence, size>0)
    - If only one input: fast path with stream copy
    """
    output.parent.mkdir(parents=True, exist_ok=True)
    files = [Path(p).resolve() for p in inputs]

    if not files:
        raise EncodeFailedError("concat: no input segments provided")

    missing = [str(p) for p in files if not p.exists()]
    zero = [str(p) for p in files if p.exists() and p.stat().st_size == 0]
    if missing or zero:
        logger.error("concat: invalid inputs | missing=%d zero=%d", len(missing), len(zero))
        for p in missing[:10]:
            logger.error("missing: %s", p)
        for p in zero[:10]:
            logger.error("zero-size: %s", p)
        raise EncodeFailedError("concat: some segments are missing or empty")

    if len(files) == 1:
        logger.info("concat: single segment, stream-copying to final")
        run_ffmpeg(
            ["-i", str(files[0]), "-c", "copy", *_container_args(output), "-y", str(output)],
            ffmpeg_path=ffmpeg_path,
        )
        return output

    list_file = output.with_name(output.name + ".concat.txt")
    lines = ["ffconcat version 1.0"] + [f"file '{p}'" for p in files]
    list_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
    logger.debug("concat: list file => %s (%d segments)", list_file, len(files))

    args = [
        "-safe", "0",
        "-f", "concat",
        "-i", str(list_file),
        "-c", "copy",
        *_container_args(output),
        "-y", str(output),
    ]
    try:
        run_ffmpeg(args, ffmpeg_path=ffmpeg_path)
    except EncodeFailedError:
        logger.error("concat list head: %s", " | ".join(lines[:5]))
        logger.error("concat list tail: %s", " | ".join(lines[-5:]))
        raise
    finally:
        list_file.unlink(missing_ok=True)
    return output
