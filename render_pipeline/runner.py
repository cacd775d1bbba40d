from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

from logging_utils import get_logger

from .errors import EncodeFailedError

logger = get_logger(__name__)

FFMPEG_QUIET_ARGS = ["-hide_banner", "-loglevel", "error", "-nostats"]
STDERR_TAIL_LINES = 50


def pretty_command(cmd: Sequence[str]) -> str:
    return " ".join(a if " " not in a else f"'{a}'" for a in cmd)


def log_stderr_tail(stderr: str, *, lines: int = STDERR_TAIL_LINES) -> str:
    tail = (stderr or "").splitlines()[-lines:]
    for line in tail:
        logger.error("ffmpeg: %s", line)
    return "\n".join(tail)


def run_ffmpeg(
    args: Sequence[str],
    *,
    ffmpeg_path: str = "ffmpeg",
    cwd: Optional[Path] = None,
) -> None:
    """Run a one-shot ffmpeg command (concat, audio mix, mux).

    Raises ``EncodeFailedError`` with the stderr tail on non-zero exit, or
    when the executable cannot be started at all.
    """
    cmd: List[str] = [ffmpeg_path] + FFMPEG_QUIET_ARGS + list(args)
    logger.debug("FFmpeg: %s", pretty_command(cmd))
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as exc:
        raise EncodeFailedError(f"Could not start ffmpeg ({ffmpeg_path}): {exc}") from exc
    if proc.returncode != 0:
        tail = log_stderr_tail(proc.stderr)
        raise EncodeFailedError(
            f"ffmpeg failed with exit code {proc.returncode}",
            returncode=proc.returncode,
            stderr_tail=tail,
        )
