"""A single render: one frame source feeding one encoder, frame by frame."""
from __future__ import annotations

import shutil
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from logging_utils import get_logger

from .audio import prepare_audio
from .browser_source import playwright_source_factory
from .codec_registry import AudioOptions, get_codec
from .encoder import EncoderConfig, EncoderFactory, EncoderSession
from .errors import JobCancelledError, RenderError, ValidationError
from .frame_source import FrameSource, FrameSourceFactory, SessionConfig
from .models import CompositionMetadata, RenderRequest, RenderResult, StillResult
from .progress import ProgressCallback
from .validation import validate_request

if TYPE_CHECKING:
    from config_loader import RenderSettings

logger = get_logger(__name__)


def _close_quietly(source: FrameSource) -> None:
    try:
        source.close()
    except Exception as exc:  # teardown must not mask the primary error
        logger.warning("Frame source close failed: %s", exc)


def _as_render_error(exc: BaseException, message: str) -> RenderError:
    if isinstance(exc, RenderError):
        return exc
    return RenderError(f"{message}: {exc}")


def sequence_frame_name(frame: int, padding: int, image_format: str) -> str:
    ext = "jpg" if image_format == "jpeg" else image_format
    return f"frame-{str(frame).zfill(padding)}.{ext}"


def make_scratch_dir(prefix: str, near: Path, settings: Optional["RenderSettings"] = None) -> Path:
    """Create a scratch directory under the configured temp dir, else beside ``near``."""
    base = settings.temp_dir if settings is not None and settings.temp_dir is not None else Path(near)
    base.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix=prefix, dir=base))


def publish_frames(staging: Path, output_dir: Path) -> int:
    """Move finished frame files from ``staging`` into ``output_dir``."""
    output_dir.mkdir(parents=True, exist_ok=True)
    moved = 0
    for path in sorted(staging.iterdir()):
        if path.is_file():
            shutil.move(str(path), str(output_dir / path.name))
            moved += 1
    return moved


class RenderJob:
    """Render ``request`` to ``output_path``.

    The job owns its frame source and encoder for its whole lifetime and
    tears both down on every exit path. Frames are captured and written
    strictly in ascending order. ``cancel_event`` is checked before every
    capture and every write. Image sequences are staged in a scratch
    directory and moved into ``output_path`` only after the last frame.
    """

    def __init__(
        self,
        request: RenderRequest,
        output_path: Path,
        *,
        source_factory: Optional[FrameSourceFactory] = None,
        encoder_factory: Optional[EncoderFactory] = None,
        settings: Optional["RenderSettings"] = None,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
        job_id: Optional[str] = None,
        segment: Optional[int] = None,
        row: Optional[int] = None,
        sequence_padding: Optional[int] = None,
    ) -> None:
        self.request = request
        self.output_path = Path(output_path)
        self.source_factory = source_factory or playwright_source_factory
        self.encoder_factory = encoder_factory or EncoderSession
        self.settings = settings
        self.cancel_event = cancel_event or threading.Event()
        self.on_progress = on_progress
        self.job_id = job_id or uuid.uuid4().hex[:8]
        self.segment = segment
        self.row = row
        self.sequence_padding = sequence_padding
        self.frames_done = 0

    @property
    def context(self) -> dict:
        return {"job_id": self.job_id, "segment": self.segment, "row": self.row}

    def cancel(self) -> None:
        self.cancel_event.set()

    def run(self) -> RenderResult:
        started = time.monotonic()
        frame: Optional[int] = None
        self._check_cancelled(frame)
        request = validate_request(self.request)
        source = self.source_factory(SessionConfig.from_request(request, self.settings))
        encoder = None
        scratch: Optional[Path] = None
        try:
            metadata = source.open()
            request = validate_request(request.with_metadata(metadata))
            total = request.total_frames
            logger.info(
                "Job %s: rendering %s frames %d-%d (%d frames, %s)",
                self.job_id,
                request.composition_id,
                request.start_frame,
                request.last_frame,
                total,
                "image sequence" if request.image_sequence else request.codec,
            )

            if request.image_sequence:
                scratch = make_scratch_dir(".framely-frames-", self.output_path.parent, self.settings)
                self._render_sequence(source, request, scratch)
                publish_frames(scratch, self.output_path)
            else:
                audio_path = None
                if self._wants_audio(request):
                    scratch = make_scratch_dir(".framely-audio-", self.output_path.parent, self.settings)
                    audio_path = prepare_audio(
                        source.audio_tracks(),
                        fps=float(request.fps),
                        start_frame=request.start_frame,
                        end_frame=request.last_frame,
                        work_dir=scratch,
                        base_url=request.frontend_url,
                        options=self._audio_options,
                        ffmpeg_path=self._ffmpeg_path,
                    )
                encoder = self.encoder_factory(self._encoder_config(request, audio_path))
                encoder.start()
                for frame in range(request.start_frame, request.last_frame + 1):
                    self._check_cancelled(frame)
                    data = source.seek_and_capture(frame)
                    self._check_cancelled(frame)
                    encoder.write(data)
                    self._advance(total)
                frame = None
                _close_quietly(source)
                encoder.finish()
                encoder = None
        except BaseException as exc:
            if encoder is not None:
                try:
                    encoder.abort()
                except Exception as abort_exc:
                    logger.warning("Encoder abort failed: %s", abort_exc)
            if not isinstance(exc, Exception):
                raise
            err = _as_render_error(exc, f"Render job {self.job_id} failed")
            err.annotate(frame=frame, **self.context)
            if err is exc:
                raise
            raise err from exc
        finally:
            _close_quietly(source)
            if scratch is not None:
                shutil.rmtree(scratch, ignore_errors=True)

        elapsed = time.monotonic() - started
        logger.info("Job %s: done in %.1fs -> %s", self.job_id, elapsed, self.output_path)
        return RenderResult(
            output_path=self.output_path,
            total_frames=request.total_frames,
            elapsed_seconds=elapsed,
            codec=request.codec,
            image_sequence=request.image_sequence,
        )

    # ------------------------------------------------------------------
    @property
    def _ffmpeg_path(self) -> str:
        return self.settings.ffmpeg_path if self.settings is not None else "ffmpeg"

    @property
    def _audio_options(self) -> AudioOptions:
        return self.settings.audio if self.settings is not None else AudioOptions()

    def _wants_audio(self, request: RenderRequest) -> bool:
        return not request.muted and get_codec(request.codec).supports_audio

    def _encoder_config(self, request: RenderRequest, audio_path: Optional[Path]) -> EncoderConfig:
        return EncoderConfig(
            output_path=self.output_path,
            codec=request.codec,
            fps=float(request.fps),
            width=request.output_width,
            height=request.output_height,
            image_format=request.image_format,
            crf=request.crf,
            bitrate=request.bitrate,
            preset=request.preset,
            prores_profile=request.prores_profile,
            audio_path=audio_path,
            audio=self._audio_options,
            ffmpeg_path=self._ffmpeg_path,
        )

    def _render_sequence(self, source: FrameSource, request: RenderRequest, staging: Path) -> None:
        total = request.total_frames
        padding = self.sequence_padding or len(str(request.last_frame))
        for frame in range(request.start_frame, request.last_frame + 1):
            self._check_cancelled(frame)
            data = source.seek_and_capture(frame)
            self._check_cancelled(frame)
            name = sequence_frame_name(frame, padding, request.image_format)
            (staging / name).write_bytes(data)
            self._advance(total)

    def _advance(self, total: int) -> None:
        self.frames_done += 1
        if self.on_progress is not None:
            self.on_progress(self.frames_done, total)

    def _check_cancelled(self, frame: Optional[int]) -> None:
        if self.cancel_event.is_set():
            raise JobCancelledError(f"Render job {self.job_id} was cancelled", frame=frame, **self.context)


def fetch_metadata(
    request: RenderRequest,
    *,
    source_factory: Optional[FrameSourceFactory] = None,
    settings: Optional["RenderSettings"] = None,
) -> CompositionMetadata:
    """Open a short-lived session just to read the composition's metadata."""
    factory = source_factory or playwright_source_factory
    source = factory(SessionConfig.from_request(request, settings))
    try:
        return source.open()
    finally:
        _close_quietly(source)


def render_still(
    request: RenderRequest,
    frame: int,
    output_path: Path,
    *,
    source_factory: Optional[FrameSourceFactory] = None,
    settings: Optional["RenderSettings"] = None,
) -> StillResult:
    """Capture one frame to a PNG or JPEG file."""
    started = time.monotonic()
    request = validate_request(request)
    if isinstance(frame, bool) or not isinstance(frame, int) or frame < 0:
        raise ValidationError(f"Frame must be a non-negative integer, got {frame!r}")
    factory = source_factory or playwright_source_factory
    source = factory(SessionConfig.from_request(request, settings))
    output_path = Path(output_path)
    try:
        metadata = source.open()
        duration = request.duration_in_frames or metadata.duration_in_frames
        if frame >= duration:
            raise ValidationError(f"Frame {frame} is out of range (0-{duration - 1})", frame=frame)
        data = source.seek_and_capture(frame)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(data)
    except RenderError as exc:
        exc.annotate(frame=frame)
        raise
    finally:
        _close_quietly(source)
    elapsed = time.monotonic() - started
    logger.info("Still frame %d of %s -> %s", frame, request.composition_id, output_path)
    return StillResult(output_path=output_path, frame=frame, elapsed_seconds=elapsed)
