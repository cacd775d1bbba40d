from __future__ import annotations

import sys
import threading
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from config_loader import RenderSettings
from conftest import FakeStudio, expected_video, frame_bytes
from render_pipeline.errors import (
    CompositionNotFoundError,
    EncodeFailedError,
    JobCancelledError,
    RenderError,
    ValidationError,
)
from render_pipeline.job import RenderJob, fetch_metadata, make_scratch_dir, render_still, sequence_frame_name
from render_pipeline.models import RenderRequest


def _job(studio: FakeStudio, request: RenderRequest, output: Path, **kwargs) -> RenderJob:
    return RenderJob(
        request,
        output,
        source_factory=studio.source_factory,
        encoder_factory=studio.encoder_factory,
        **kwargs,
    )


def test_job_writes_frames_in_order_and_fills_metadata(studio: FakeStudio, tmp_path: Path) -> None:
    output = tmp_path / "out.mp4"
    progress = []
    result = _job(studio, RenderRequest("Promo"), output, on_progress=lambda d, t: progress.append((d, t))).run()

    assert output.read_bytes() == expected_video(0, 59)
    assert result.total_frames == 60
    assert result.codec == "h264"
    assert progress[0] == (1, 60)
    assert progress[-1] == (60, 60)
    assert studio.sources[0].captured == list(range(60))
    assert all(source.closed for source in studio.sources)
    assert studio.encoders[0].finished


def test_job_renders_only_the_requested_range(studio: FakeStudio, tmp_path: Path) -> None:
    output = tmp_path / "range.mp4"
    request = RenderRequest("Promo", start_frame=10, end_frame=19)

    result = _job(studio, request, output).run()

    assert result.total_frames == 10
    assert output.read_bytes() == expected_video(10, 19)


def test_encoder_gets_scaled_dimensions(studio: FakeStudio, tmp_path: Path) -> None:
    request = RenderRequest("Promo", width=640, height=360, fps=24, duration_in_frames=5, scale=0.5)
    _job(studio, request, tmp_path / "small.mp4").run()

    config = studio.encoders[0].config
    assert (config.width, config.height) == (320, 180)
    assert config.fps == 24


def test_invalid_request_fails_before_any_session(studio: FakeStudio, tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="CRF must be between 0 and 51, got 52"):
        _job(studio, RenderRequest("Promo", crf=52), tmp_path / "x.mp4").run()
    assert studio.sources == []
    assert studio.encoders == []


def test_range_is_checked_against_composition_duration(studio: FakeStudio, tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="End frame must be < 60, got 60"):
        _job(studio, RenderRequest("Promo", end_frame=60), tmp_path / "x.mp4").run()
    assert studio.encoders == []
    assert studio.sources[0].closed


def test_unknown_composition_is_reported(tmp_path: Path) -> None:
    studio = FakeStudio(compositions={"Other"})
    with pytest.raises(CompositionNotFoundError) as excinfo:
        _job(studio, RenderRequest("Promo"), tmp_path / "x.mp4", job_id="job-1").run()
    assert excinfo.value.context["job_id"] == "job-1"
    assert studio.encoders == []


def test_capture_failure_aborts_encoder_and_names_frame(tmp_path: Path) -> None:
    studio = FakeStudio(fail_frames={7})
    output = tmp_path / "broken.mp4"

    with pytest.raises(Exception) as excinfo:
        _job(studio, RenderRequest("Promo"), output, job_id="job-2").run()

    err = excinfo.value
    assert err.context["frame"] == 7
    assert err.context["job_id"] == "job-2"
    assert studio.encoders[0].aborted
    assert not output.exists()
    assert studio.sources[0].closed


def test_encoder_failure_is_surfaced(tmp_path: Path) -> None:
    studio = FakeStudio(encoder_fail_on_write=3)
    output = tmp_path / "enc.mp4"

    with pytest.raises(EncodeFailedError) as excinfo:
        _job(studio, RenderRequest("Promo"), output).run()

    assert excinfo.value.context["frame"] == 3
    assert not output.exists()


def test_cancelled_job_never_opens_a_source(studio: FakeStudio, tmp_path: Path) -> None:
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(JobCancelledError):
        _job(studio, RenderRequest("Promo"), tmp_path / "x.mp4", cancel_event=cancel).run()
    assert studio.sources == []


def test_cancel_mid_render_removes_partial_output(studio: FakeStudio, tmp_path: Path) -> None:
    cancel = threading.Event()
    output = tmp_path / "cancel.mp4"

    def on_progress(done: int, total: int) -> None:
        if done == 5:
            cancel.set()

    with pytest.raises(JobCancelledError) as excinfo:
        _job(studio, RenderRequest("Promo"), output, cancel_event=cancel, on_progress=on_progress).run()

    assert excinfo.value.context["frame"] == 5
    assert studio.encoders[0].aborted
    assert not output.exists()


def test_image_sequence_writes_one_file_per_frame(studio: FakeStudio, tmp_path: Path) -> None:
    out_dir = tmp_path / "frames"
    request = RenderRequest("Promo", start_frame=8, end_frame=11, image_sequence=True, image_format="jpg")

    result = _job(studio, request, out_dir).run()

    assert result.image_sequence
    names = sorted(p.name for p in out_dir.iterdir())
    assert names == ["frame-08.jpg", "frame-09.jpg", "frame-10.jpg", "frame-11.jpg"]
    assert (out_dir / "frame-10.jpg").read_bytes() == frame_bytes(10)
    assert studio.encoders == []


def test_sequence_frame_name_padding() -> None:
    assert sequence_frame_name(7, 3, "png") == "frame-007.png"
    assert sequence_frame_name(1234, 3, "jpeg") == "frame-1234.jpg"


def test_render_still_writes_single_frame(studio: FakeStudio, tmp_path: Path) -> None:
    output = tmp_path / "stills" / "frame.png"
    result = render_still(RenderRequest("Promo"), 12, output, source_factory=studio.source_factory)

    assert result.frame == 12
    assert output.read_bytes() == frame_bytes(12)
    assert studio.sources[0].closed


def test_render_still_rejects_frame_outside_composition(studio: FakeStudio, tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="out of range"):
        render_still(RenderRequest("Promo"), 60, tmp_path / "f.png", source_factory=studio.source_factory)
    with pytest.raises(ValidationError):
        render_still(RenderRequest("Promo"), -1, tmp_path / "f.png", source_factory=studio.source_factory)


def test_fetch_metadata_closes_session(studio: FakeStudio) -> None:
    metadata = fetch_metadata(RenderRequest("Promo"), source_factory=studio.source_factory)
    assert metadata.duration_in_frames == 60
    assert studio.sources[0].closed


def test_failed_image_sequence_leaves_no_frames(tmp_path: Path) -> None:
    studio = FakeStudio(fail_frames={10})
    out_dir = tmp_path / "frames"
    request = RenderRequest("Promo", image_sequence=True)

    with pytest.raises(RenderError, match="frame 10"):
        _job(studio, request, out_dir).run()

    assert not out_dir.exists()
    assert list(tmp_path.iterdir()) == []
    assert studio.sources[0].closed


def test_cancelled_image_sequence_leaves_no_frames(studio: FakeStudio, tmp_path: Path) -> None:
    cancel = threading.Event()
    out_dir = tmp_path / "frames"

    def on_progress(done: int, total: int) -> None:
        if done == 3:
            cancel.set()

    request = RenderRequest("Promo", image_sequence=True)
    with pytest.raises(JobCancelledError):
        _job(studio, request, out_dir, cancel_event=cancel, on_progress=on_progress).run()
    assert list(tmp_path.iterdir()) == []


def test_scratch_goes_to_configured_temp_dir(studio: FakeStudio, tmp_path: Path) -> None:
    settings = RenderSettings(temp_dir=tmp_path / "scratch")
    scratch = make_scratch_dir(".framely-frames-", tmp_path / "out", settings)
    assert scratch.parent == tmp_path / "scratch"
    assert make_scratch_dir(".framely-frames-", tmp_path / "out").parent == tmp_path / "out"

    out_dir = tmp_path / "frames"
    _job(studio, RenderRequest("Promo", end_frame=2, image_sequence=True), out_dir, settings=settings).run()
    assert sorted(p.name for p in out_dir.iterdir()) == ["frame-0.png", "frame-1.png", "frame-2.png"]
    assert list((tmp_path / "scratch").iterdir()) == [scratch]
