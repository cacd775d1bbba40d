from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from config_loader import load_config
from conftest import FakeStudio
from render_pipeline.errors import ValidationError
from render_pipeline.frame_source import SessionConfig, SyntheticFrameSource
from render_pipeline.service import RenderService, make_source_factory


def _service(studio: FakeStudio, tmp_path: Path) -> RenderService:
    config = load_config(project_root=tmp_path, environ={})
    config.render.codec = "vp9"
    config.render.crf = 30
    return RenderService(
        config,
        source_factory=studio.source_factory,
        encoder_factory=studio.encoder_factory,
        concat_fn=studio.concat,
    )


def test_new_request_uses_configured_defaults(studio: FakeStudio, tmp_path: Path) -> None:
    service = _service(studio, tmp_path)
    request = service.new_request("Promo", width=None, fps=24)
    assert request.codec == "vp9"
    assert request.crf == 30
    assert request.width is None
    assert request.fps == 24
    assert request.frontend_url == "http://localhost:3000"
    assert service.new_request("Promo", codec="h264").codec == "h264"


def test_default_output_names(studio: FakeStudio, tmp_path: Path) -> None:
    service = _service(studio, tmp_path)
    video = service.default_output(service.new_request("Promo"))
    assert video.parent == service.output_dir
    assert video.name.startswith("Promo-") and video.suffix == ".webm"
    frames = service.default_output(service.new_request("Promo", image_sequence=True))
    assert frames.suffix == ""


def test_render_and_batch_through_service(studio: FakeStudio, tmp_path: Path) -> None:
    service = _service(studio, tmp_path)
    result = service.render(service.new_request("Promo", end_frame=9))
    assert result.output_path.exists()
    assert result.total_frames == 10

    summary = service.batch(
        service.new_request("Promo", concurrency=2),
        [{"name": "a"}, {"name": "b"}],
        output_pattern="{name}.webm",
    )
    assert summary.succeeded == 2
    assert (service.output_dir / "a.webm").exists()


def test_still_defaults_to_png_name(studio: FakeStudio, tmp_path: Path) -> None:
    service = _service(studio, tmp_path)
    result = service.still(service.new_request("Promo", image_format="jpeg"), 3)
    assert result.output_path.name.startswith("Promo-frame3-")
    assert result.output_path.suffix == ".jpg"


def test_make_source_factory() -> None:
    factory = make_source_factory("synthetic")
    assert isinstance(factory(SessionConfig("Promo")), SyntheticFrameSource)
    with pytest.raises(ValidationError, match="Unknown frame source"):
        make_source_factory("webgl")


def test_compositions_come_from_the_frame_source(tmp_path: Path) -> None:
    studio = FakeStudio(compositions={"Promo", "Intro"})
    service = _service(studio, tmp_path)
    assert [c["id"] for c in service.compositions()] == ["Intro", "Promo"]
    assert service.compositions()[0]["durationInFrames"] == 60
    assert all(source.closed for source in studio.sources)


def test_compositions_reject_remote_frontend(studio: FakeStudio, tmp_path: Path) -> None:
    service = _service(studio, tmp_path)
    service.config.render.frontend_url = "https://example.com"
    with pytest.raises(ValidationError, match="must be local"):
        service.compositions()
    assert studio.sources == []
