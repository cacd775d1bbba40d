"""Streaming ffmpeg encoder fed frame images on stdin.

``EncoderSession`` is a scoped resource: ``start`` spawns ffmpeg, ``write``
pushes one encoded image, ``finish`` closes stdin and validates the exit,
``abort`` terminates the process and removes the partial output. Used as a
context manager, any exception inside the block aborts the session.
"""
from __future__ import annotations

import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, List, Optional

from logging_utils import get_logger

from .codec_registry import AudioOptions, EncodeOptions, get_audio_args, get_codec
from .errors import EncodeFailedError
from .runner import FFMPEG_QUIET_ARGS, log_stderr_tail, pretty_command

logger = get_logger(__name__)

STDERR_BUFFER_LINES = 200
TERMINATE_GRACE_SECONDS = 5.0
INPUT_CODECS = {"png": "png", "jpeg": "mjpeg"}


@dataclass
class EncoderConfig:
    output_path: Path
    codec: str
    fps: float
    width: int
    height: int
    image_format: str = "png"
    crf: Optional[int] = None
    bitrate: Optional[str] = None
    preset: str = "fast"
    prores_profile: Optional[str] = None
    audio_path: Optional[Path] = None
    audio: AudioOptions = field(default_factory=AudioOptions)
    ffmpeg_path: str = "ffmpeg"

    def encode_options(self) -> EncodeOptions:
        return EncodeOptions(
            crf=self.crf,
            bitrate=self.bitrate,
            preset=self.preset,
            profile=self.prores_profile,
            fps=self.fps,
            width=self.width,
            height=self.height,
            alpha=get_codec(self.codec).supports_alpha,
        )


def _fps_text(fps: float) -> str:
    return str(int(fps)) if float(fps).is_integer() else f"{fps:g}"


def build_encoder_command(config: EncoderConfig) -> List[str]:
    profile = get_codec(config.codec)
    cmd: List[str] = [config.ffmpeg_path] + FFMPEG_QUIET_ARGS + [
        "-y",
        "-f", "image2pipe",
        "-c:v", INPUT_CODECS.get(config.image_format, "png"),
        "-framerate", _fps_text(config.fps),
        "-i", "-",
    ]
    with_audio = config.audio_path is not None and profile.supports_audio
    if with_audio:
        cmd += ["-i", str(config.audio_path)]
    cmd += profile.args(config.encode_options())
    if with_audio:
        cmd += ["-map", "0:v:0", "-map", "1:a:0"]
        cmd += get_audio_args(config.audio)
        cmd += ["-shortest"]
    cmd.append(str(config.output_path))
    return cmd


class EncoderSession:
    def __init__(
        self,
        config: EncoderConfig,
        *,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        grace_seconds: float = TERMINATE_GRACE_SECONDS,
    ) -> None:
        self.config = config
        self.grace_seconds = grace_seconds
        self.frames_written = 0
        self._popen = popen
        self._proc: Optional[subprocess.Popen] = None
        self._stderr_lines: Deque[str] = deque(maxlen=STDERR_BUFFER_LINES)
        self._stderr_thread: Optional[threading.Thread] = None
        self._done = False

    @property
    def output_path(self) -> Path:
        return self.config.output_path

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_lines)

    def start(self) -> "EncoderSession":
        if self._proc is not None:
            return self
        cmd = build_encoder_command(self.config)
        self.config.output_path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug("FFmpeg(encode): %s", pretty_command(cmd))
        try:
            self._proc = self._popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise EncodeFailedError(f"Could not start ffmpeg ({self.config.ffmpeg_path}): {exc}") from exc
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr, name="ffmpeg-stderr", daemon=True
        )
        self._stderr_thread.start()
        return self

    def write(self, data: bytes) -> None:
        if self._proc is None or self._done:
            raise EncodeFailedError("Encoder is not running")
        if self._proc.poll() is not None:
            self._raise_exited_early()
        try:
            self._proc.stdin.write(data)
        except (BrokenPipeError, ValueError) as exc:
            self._raise_exited_early(exc)
        self.frames_written += 1

    def finish(self) -> Path:
        """Close stdin, wait for ffmpeg and validate the result."""
        if self._proc is None:
            raise EncodeFailedError("Encoder was never started")
        if self._done:
            return self.config.output_path
        try:
            self._proc.stdin.close()
        except BrokenPipeError:
            pass
        returncode = self._proc.wait()
        self._join_stderr()
        self._done = True
        if returncode != 0:
            tail = log_stderr_tail(self.stderr_tail)
            self._remove_output()
            raise EncodeFailedError(
                f"ffmpeg failed with exit code {returncode}",
                returncode=returncode,
                stderr_tail=tail,
            )
        output = self.config.output_path
        if not output.exists() or output.stat().st_size == 0:
            raise EncodeFailedError(f"ffmpeg produced no output at {output}", returncode=returncode)
        logger.debug("Encoded %d frames into %s", self.frames_written, output)
        return output

    def abort(self) -> None:
        """Terminate ffmpeg (kill after the grace period), reap it and drop the partial file."""
        if self._done:
            return
        self._done = True
        proc = self._proc
        if proc is not None:
            try:
                proc.stdin.close()
            except (BrokenPipeError, OSError):
                pass
            if proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=self.grace_seconds)
                except subprocess.TimeoutExpired:
                    logger.warning("ffmpeg did not exit after terminate, killing pid %s", proc.pid)
                    proc.kill()
                    proc.wait()
            self._join_stderr()
        self._remove_output()

    def __enter__(self) -> "EncoderSession":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.abort()
        elif not self._done:
            self.finish()

    # ------------------------------------------------------------------
    def _drain_stderr(self) -> None:
        stream = self._proc.stderr
        if stream is None:
            return
        for raw in iter(stream.readline, b""):
            self._stderr_lines.append(raw.decode("utf-8", errors="replace").rstrip())
        stream.close()

    def _join_stderr(self) -> None:
        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=self.grace_seconds)
            self._stderr_thread = None

    def _remove_output(self) -> None:
        try:
            self.config.output_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove partial output %s: %s", self.config.output_path, exc)

    def _raise_exited_early(self, cause: Optional[BaseException] = None) -> None:
        try:
            returncode = self._proc.wait(timeout=self.grace_seconds)
        except subprocess.TimeoutExpired:
            returncode = None
        self._join_stderr()
        tail = log_stderr_tail(self.stderr_tail)
        self.abort()
        raise EncodeFailedError(
            f"ffmpeg closed its input after {self.frames_written} frames (exit code {returncode})",
            returncode=returncode,
            stderr_tail=tail,
        ) from cause


EncoderFactory = Callable[[EncoderConfig], EncoderSession]
