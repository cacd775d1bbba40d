"""Split one render into contiguous frame segments rendered concurrently.

Each segment is an independent, muted ``RenderJob`` writing a partial file
into a scratch directory. Partials are merged with a stream-copy concat in
ascending segment order only when every segment succeeded; audio for the
full range is muxed afterwards. Image-sequence segments stage their frames
in one shared scratch directory that is published the same way.
"""
from __future__ import annotations

import shutil
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from logging_utils import get_logger

from .audio import mux_audio, prepare_audio
from .browser_source import playwright_source_factory
from .codec_registry import AudioOptions, get_codec
from .concat import concat_streamcopy
from .encoder import EncoderFactory
from .errors import JobCancelledError, RenderError
from .frame_source import FrameSourceFactory, SessionConfig
from .job import RenderJob, fetch_metadata, make_scratch_dir, publish_frames
from .models import RenderRequest, RenderResult, Segment
from .progress import ProgressAggregator, ProgressCallback
from .validation import validate_request

if TYPE_CHECKING:
    from config_loader import RenderSettings

logger = get_logger(__name__)

ConcatFn = Callable[..., Path]


def split_segments(start_frame: int, end_frame: int, concurrency: int) -> List[Segment]:
    """Cut ``[start_frame, end_frame]`` into ``min(concurrency, total)`` ranges.

    Every segment gets ``total // n`` frames; the last one also takes the
    remainder. Segments are contiguous, disjoint and cover the range.
    """
    total = end_frame - start_frame + 1
    if total <= 0:
        return []
    count = max(1, min(concurrency, total))
    size = total // count
    segments: List[Segment] = []
    for index in range(count):
        start = start_frame + index * size
        end = end_frame if index == count - 1 else start + size - 1
        segments.append(Segment(index=index, start=start, end=end))
    return segments


class ParallelRenderCoordinator:
    def __init__(
        self,
        *,
        source_factory: Optional[FrameSourceFactory] = None,
        encoder_factory: Optional[EncoderFactory] = None,
        concat_fn: ConcatFn = concat_streamcopy,
        settings: Optional["RenderSettings"] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.source_factory = source_factory
        self.encoder_factory = encoder_factory
        self.concat_fn = concat_fn
        self.settings = settings
        self.on_progress = on_progress
        self.cancel_event = cancel_event or threading.Event()

    @property
    def _ffmpeg_path(self) -> str:
        return self.settings.ffmpeg_path if self.settings is not None else "ffmpeg"

    @property
    def _audio_options(self) -> AudioOptions:
        return self.settings.audio if self.settings is not None else AudioOptions()

    def render(self, request: RenderRequest, output_path: Path) -> RenderResult:
        started = time.monotonic()
        output_path = Path(output_path)
        request = validate_request(request)
        if request.needs_metadata:
            metadata = fetch_metadata(request, source_factory=self.source_factory, settings=self.settings)
            request = validate_request(request.with_metadata(metadata))

        profile = get_codec(request.codec)
        segments = split_segments(request.start_frame, request.last_frame, request.concurrency)
        if profile.uses_palette and len(segments) > 1 and not request.image_sequence:
            logger.warning(
                "%s needs a single palette pass over all frames; rendering without segmentation",
                profile.name,
            )
            segments = [Segment(0, request.start_frame, request.last_frame)]
        if len(segments) <= 1:
            return self._job(request, output_path, self.on_progress).run()

        job_id = uuid.uuid4().hex[:8]
        logger.info(
            "Parallel render %s: %d frames in %d segments (%s)",
            job_id,
            request.total_frames,
            len(segments),
            ", ".join(f"{s.start}-{s.end}" for s in segments),
        )
        if request.image_sequence:
            self._render_sequence(request, segments, job_id, output_path)
        else:
            self._render_video(request, segments, job_id, output_path)

        elapsed = time.monotonic() - started
        logger.info("Parallel render %s done in %.1fs -> %s", job_id, elapsed, output_path)
        return RenderResult(
            output_path=output_path,
            total_frames=request.total_frames,
            elapsed_seconds=elapsed,
            codec=request.codec,
            image_sequence=request.image_sequence,
        )

    # ------------------------------------------------------------------
    def _job(self, request: RenderRequest, output_path: Path, on_progress, **kwargs) -> RenderJob:
        return RenderJob(
            request,
            output_path,
            source_factory=self.source_factory,
            encoder_factory=self.encoder_factory,
            settings=self.settings,
            cancel_event=self.cancel_event,
            on_progress=on_progress,
            **kwargs,
        )

    def _render_video(
        self,
        request: RenderRequest,
        segments: List[Segment],
        job_id: str,
        output_path: Path,
    ) -> None:
        ext = get_codec(request.codec).extension
        output_path.parent.mkdir(parents=True, exist_ok=True)
        temp_dir = make_scratch_dir(".framely-parallel-", output_path.parent, self.settings)
        try:
            partials = self._run_segments(
                request,
                segments,
                job_id,
                lambda seg: temp_dir / f"segment-{seg.index:04d}.{ext}",
            )
            with_audio = not request.muted and get_codec(request.codec).supports_audio
            merged = temp_dir / f"merged.{ext}" if with_audio else output_path
            self.concat_fn(partials, merged, ffmpeg_path=self._ffmpeg_path)
            if with_audio:
                self._attach_audio(request, merged, output_path, temp_dir)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def _render_sequence(
        self,
        request: RenderRequest,
        segments: List[Segment],
        job_id: str,
        output_path: Path,
    ) -> None:
        temp_dir = make_scratch_dir(".framely-parallel-", output_path.parent, self.settings)
        frames_dir = temp_dir / "frames"
        try:
            self._run_segments(request, segments, job_id, lambda seg: frames_dir)
            publish_frames(frames_dir, output_path)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def _run_segments(
        self,
        request: RenderRequest,
        segments: List[Segment],
        job_id: str,
        segment_output: Callable[[Segment], Path],
    ) -> List[Path]:
        padding = len(str(request.last_frame))
        results: Dict[int, Path] = {}
        failure: Optional[BaseException] = None
        with ProgressAggregator(request.total_frames, self.on_progress) as progress:
            with ThreadPoolExecutor(max_workers=len(segments), thread_name_prefix="segment") as executor:
                futures: Dict[Future, Segment] = {}
                for seg in segments:
                    seg_request = request.with_overrides(
                        start_frame=seg.start, end_frame=seg.end, muted=True
                    )
                    job = self._job(
                        seg_request,
                        segment_output(seg),
                        progress.reporter(seg.index),
                        job_id=f"{job_id}-{seg.index}",
                        segment=seg.index,
                        sequence_padding=padding,
                    )
                    futures[executor.submit(job.run)] = seg

                for future in as_completed(futures):
                    seg = futures[future]
                    try:
                        results[seg.index] = future.result().output_path
                    except JobCancelledError:
                        continue
                    except Exception as exc:
                        if failure is None:
                            failure = exc
                            logger.error("Segment %d (frames %d-%d) failed: %s", seg.index, seg.start, seg.end, exc)
                            self.cancel_event.set()
                            for pending in futures:
                                pending.cancel()

        if failure is not None:
            if isinstance(failure, RenderError):
                raise failure
            raise RenderError(f"Parallel render {job_id} failed: {failure}", job_id=job_id) from failure
        if len(results) != len(segments):
            raise JobCancelledError(f"Parallel render {job_id} was cancelled", job_id=job_id)
        ordered = sorted(segments, key=lambda s: s.start)
        return [results[s.index] for s in ordered]

    def _attach_audio(self, request: RenderRequest, merged: Path, output_path: Path, temp_dir: Path) -> None:
        factory = self.source_factory or playwright_source_factory
        source = factory(SessionConfig.from_request(request, self.settings))
        try:
            source.open()
            tracks = source.audio_tracks()
        finally:
            source.close()
        audio_path = None
        if tracks:
            audio_path = prepare_audio(
                tracks,
                fps=float(request.fps),
                start_frame=request.start_frame,
                end_frame=request.last_frame,
                work_dir=temp_dir / "audio",
                base_url=request.frontend_url,
                options=self._audio_options,
                ffmpeg_path=self._ffmpeg_path,
            )
        if audio_path is None:
            shutil.move(str(merged), str(output_path))
            return
        mux_audio(merged, audio_path, output_path, options=self._audio_options, ffmpeg_path=self._ffmpeg_path)
