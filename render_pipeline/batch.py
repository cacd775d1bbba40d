"""Render one composition many times, once per data row.

Every row becomes an independent ``RenderJob`` with the row as its input
props. Jobs run on a bounded thread pool; in continue mode failures are
recorded per row, in fail-fast mode the first failure cancels the rest.
"""
from __future__ import annotations

import re
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Sequence

from logging_utils import get_logger

from .codec_registry import get_extension
from .encoder import EncoderFactory
from .errors import RenderError, ValidationError
from .frame_source import FrameSourceFactory
from .job import RenderJob, fetch_metadata
from .models import BatchJob, BatchOutcome, BatchSummary, RenderRequest
from .validation import validate_request

if TYPE_CHECKING:
    from config_loader import RenderSettings

logger = get_logger(__name__)

# Reserved row keys that override render settings instead of becoming props.
ROW_OVERRIDE_KEYS = {
    "_width": "width",
    "_height": "height",
    "_fps": "fps",
    "_durationInFrames": "duration_in_frames",
    "_codec": "codec",
    "_crf": "crf",
}

_UNSAFE_CHARS = re.compile(r'[/\\:*?"<>|]')
_WHITESPACE = re.compile(r"\s+")
_EXTENSION = re.compile(r"\.[^.]+$")

OutcomeCallback = Callable[[BatchOutcome, int, int], None]


def sanitize_filename(value: Any) -> str:
    return _WHITESPACE.sub("-", _UNSAFE_CHARS.sub("-", str(value)))


def _placeholder_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_output_pattern(
    pattern: str,
    row: Mapping[str, Any],
    index: int,
    total_rows: int,
    composition_id: str,
    extension: str,
) -> str:
    """Expand ``{_index}``, ``{compositionId}`` and ``{field}`` placeholders.

    ``{_index}`` is zero-padded to at least three digits. Field values are
    sanitized for use in a filename; unknown placeholders are left as-is.
    The extension is forced to ``extension``.
    """
    padding = max(len(str(max(total_rows - 1, 0))), 3)
    filename = pattern.replace("{_index}", str(index).zfill(padding))
    filename = filename.replace("{compositionId}", composition_id)
    for key, value in row.items():
        filename = filename.replace("{" + str(key) + "}", sanitize_filename(_placeholder_text(value)))
    if not filename.endswith(f".{extension}"):
        filename = _EXTENSION.sub("", filename) + f".{extension}"
    return filename


def split_row(row: Mapping[str, Any]) -> tuple:
    """Return ``(props, overrides)`` with reserved keys mapped to request fields."""
    props: Dict[str, Any] = {}
    overrides: Dict[str, Any] = {}
    for key, value in row.items():
        if key in ROW_OVERRIDE_KEYS:
            if value is not None and value != "":
                overrides[ROW_OVERRIDE_KEYS[key]] = value
        else:
            props[key] = value
    return props, overrides


def format_summary(summary: BatchSummary) -> str:
    lines = [
        "─── Summary ───",
        f"Total:    {summary.total}",
        f"Success:  {summary.succeeded}",
    ]
    if summary.failed:
        lines.append(f"Failed:   {summary.failed}")
    lines += [
        f"Time:     {summary.elapsed_seconds:.1f}s",
        f"Output:   {summary.output_dir}",
    ]
    for outcome in summary.failures:
        lines.append(f"  ✗ {outcome.filename}: {outcome.error}")
    return "\n".join(lines)


class BatchCoordinator:
    def __init__(
        self,
        *,
        source_factory: Optional[FrameSourceFactory] = None,
        encoder_factory: Optional[EncoderFactory] = None,
        settings: Optional["RenderSettings"] = None,
        on_outcome: Optional[OutcomeCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.source_factory = source_factory
        self.encoder_factory = encoder_factory
        self.settings = settings
        self.on_outcome = on_outcome
        self.cancel_event = cancel_event or threading.Event()

    def plan(
        self,
        base: RenderRequest,
        rows: Sequence[Mapping[str, Any]],
        output_dir: Path,
        output_pattern: Optional[str] = None,
    ) -> List[BatchJob]:
        """Resolve every row's props, overrides and output file; no rendering."""
        if not rows:
            raise ValidationError("Batch data has no rows")
        output_dir = Path(output_dir)
        pattern = output_pattern or f"{base.composition_id}-{{_index}}.{get_extension(base.codec)}"
        jobs: List[BatchJob] = []
        seen: Dict[str, int] = {}
        for index, row in enumerate(rows):
            if not isinstance(row, Mapping):
                raise ValidationError(f"Batch row must be an object, got {type(row).__name__}", row=index)
            props, overrides = split_row(row)
            try:
                validate_request(base.with_overrides(input_props=props, **overrides))
            except ValidationError as exc:
                raise exc.annotate(row=index)
            codec = str(overrides.get("codec", base.codec)).strip().lower()
            filename = resolve_output_pattern(
                pattern, row, index, len(rows), base.composition_id, get_extension(codec)
            )
            if filename in seen:
                raise ValidationError(
                    f'Duplicate output filename "{filename}" (rows {seen[filename]} and {index}). '
                    "Use {_index} in your pattern to ensure uniqueness.",
                    row=index,
                )
            seen[filename] = index
            jobs.append(
                BatchJob(
                    index=index,
                    props=props,
                    overrides=overrides,
                    filename=filename,
                    output_path=output_dir / filename,
                )
            )
        return jobs

    def run(
        self,
        base: RenderRequest,
        rows: Sequence[Mapping[str, Any]],
        output_dir: Path,
        *,
        output_pattern: Optional[str] = None,
        fail_fast: bool = False,
    ) -> BatchSummary:
        started = time.monotonic()
        output_dir = Path(output_dir)
        base = validate_request(base)
        jobs = self.plan(base, rows, output_dir, output_pattern)
        output_dir.mkdir(parents=True, exist_ok=True)

        if base.needs_metadata:
            metadata = fetch_metadata(base, source_factory=self.source_factory, settings=self.settings)
            logger.info(
                "Composition %s: %dx%d @ %s fps, %d frames",
                base.composition_id,
                metadata.width,
                metadata.height,
                metadata.fps,
                metadata.duration_in_frames,
            )
            base = validate_request(base.with_metadata(metadata))

        batch_id = uuid.uuid4().hex[:8]
        total = len(jobs)
        logger.info(
            "Batch %s: %d job(s), concurrency %d, %s",
            batch_id,
            total,
            base.concurrency,
            "fail-fast" if fail_fast else "continue on error",
        )

        outcomes: List[Optional[BatchOutcome]] = [None] * total
        finished = 0
        first_error: Optional[BaseException] = None
        with ThreadPoolExecutor(max_workers=base.concurrency, thread_name_prefix="batch") as executor:
            futures: Dict[Future, BatchJob] = {
                executor.submit(self._render_row, base, job, batch_id): job for job in jobs
            }
            for future in as_completed(futures):
                job = futures[future]
                if future.cancelled():
                    continue
                outcome = future.result()
                outcomes[job.index] = outcome
                if fail_fast and first_error is not None:
                    continue
                finished += 1
                if outcome.ok:
                    logger.info("[%d/%d] ✓ %s", finished, total, job.filename)
                else:
                    logger.error("[%d/%d] ✗ %s: %s", finished, total, job.filename, outcome.error)
                if self.on_outcome is not None:
                    self.on_outcome(outcome, finished, total)
                if fail_fast and not outcome.ok:
                    first_error = outcome.error
                    self.cancel_event.set()
                    for pending in futures:
                        pending.cancel()

        if first_error is not None:
            if isinstance(first_error, RenderError):
                raise first_error
            raise RenderError(f"Batch {batch_id} failed: {first_error}") from first_error

        recorded = [o for o in outcomes if o is not None]
        succeeded = sum(1 for o in recorded if o.ok)
        summary = BatchSummary(
            total=total,
            succeeded=succeeded,
            failed=total - succeeded,
            elapsed_seconds=time.monotonic() - started,
            output_dir=output_dir,
            outcomes=recorded,
        )
        logger.info(
            "Batch %s finished: %d succeeded, %d failed in %.1fs",
            batch_id,
            summary.succeeded,
            summary.failed,
            summary.elapsed_seconds,
        )
        return summary

    def _render_row(self, base: RenderRequest, job: BatchJob, batch_id: str) -> BatchOutcome:
        started = time.monotonic()
        request = base.with_overrides(input_props=job.props, concurrency=1, **job.overrides)
        render_job = RenderJob(
            request,
            job.output_path,
            source_factory=self.source_factory,
            encoder_factory=self.encoder_factory,
            settings=self.settings,
            cancel_event=self.cancel_event,
            job_id=f"{batch_id}-{job.index}",
            row=job.index,
        )
        try:
            result = render_job.run()
        except Exception as exc:
            if isinstance(exc, RenderError):
                exc.annotate(row=job.index)
            return BatchOutcome(job.index, job.filename, error=exc, elapsed_seconds=time.monotonic() - started)
        return BatchOutcome(
            job.index,
            job.filename,
            output_path=result.output_path,
            elapsed_seconds=time.monotonic() - started,
        )
