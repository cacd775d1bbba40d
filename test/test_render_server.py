from __future__ import annotations

import sys
from pathlib import Path
from urllib.parse import urlparse

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from fastapi.testclient import TestClient

from config_loader import load_config
from conftest import FakeStudio, expected_video, frame_bytes
from render_pipeline.errors import EncodeFailedError, RenderConnectionError
from render_pipeline.service import RenderService
from render_server import create_app, status_for


@pytest.fixture
def studio() -> FakeStudio:
    return FakeStudio(compositions={"Promo"})


@pytest.fixture
def client(studio: FakeStudio, tmp_path: Path) -> TestClient:
    config = load_config(project_root=tmp_path, environ={})

    def service_factory(cfg):
        return RenderService(
            cfg,
            source_factory=studio.source_factory,
            encoder_factory=studio.encoder_factory,
            concat_fn=studio.concat,
        )

    app = create_app(config, service_factory=service_factory)
    return TestClient(app, raise_server_exceptions=False)


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_codecs(client: TestClient) -> None:
    codecs = client.get("/api/codecs").json()["codecs"]
    assert [c["id"] for c in codecs] == ["h264", "h265", "vp8", "vp9", "prores", "gif"]


def test_render_returns_download_url(client: TestClient, tmp_path: Path) -> None:
    resp = client.post("/api/render", json={"compositionId": "Promo", "durationInFrames": 30})
    assert resp.status_code == 200
    body = resp.json()
    output = Path(body["outputPath"])
    assert output.parent == (tmp_path / "outputs").resolve()
    assert output.name.startswith("Promo-") and output.suffix == ".mp4"
    assert body["totalFrames"] == 30
    assert body["codec"] == "h264"
    assert body["downloadUrl"] == f"http://localhost:4000/outputs/{output.name}"

    download = client.get(urlparse(body["downloadUrl"]).path)
    assert download.status_code == 200
    assert download.content == expected_video(0, 29)


def test_parallel_render(client: TestClient, studio: FakeStudio) -> None:
    resp = client.post(
        "/api/render",
        json={"compositionId": "Promo", "durationInFrames": 40, "parallel": True, "concurrency": 4},
    )
    assert resp.status_code == 200
    assert len(studio.concat_calls) == 1
    assert Path(resp.json()["outputPath"]).read_bytes() == expected_video(0, 39)


def test_image_sequence_reports_directory(client: TestClient) -> None:
    resp = client.post(
        "/api/render",
        json={"compositionId": "Promo", "durationInFrames": 3, "imageSequence": True},
    )
    body = resp.json()
    assert body["downloadUrl"] == f"Directory: {body['outputPath']}"
    assert sorted(p.name for p in Path(body["outputPath"]).iterdir()) == [
        "frame-0.png",
        "frame-1.png",
        "frame-2.png",
    ]


def test_still(client: TestClient) -> None:
    resp = client.post("/api/still", json={"compositionId": "Promo", "frame": 5})
    assert resp.status_code == 200
    body = resp.json()
    assert "-frame5-" in body["outputPath"]
    assert Path(body["outputPath"]).read_bytes() == frame_bytes(5)


@pytest.mark.parametrize(
    "payload,error_type",
    [
        ({"compositionId": "Promo", "crf": 99}, "ValidationError"),
        ({"compositionId": "Promo", "codec": "mpeg2"}, "UnknownCodecError"),
        ({"compositionId": "Promo", "startFrame": 100, "endFrame": 50}, "ValidationError"),
        ({"compositionId": "Promo", "frontendUrl": "https://example.com"}, "ValidationError"),
        ({"width": 100}, "ValidationError"),
    ],
)
def test_invalid_render_is_400(client: TestClient, payload, error_type: str) -> None:
    resp = client.post("/api/render", json=payload)
    assert resp.status_code == 400
    assert resp.json()["type"] == error_type


def test_unknown_composition_is_404(client: TestClient) -> None:
    resp = client.post("/api/render", json={"compositionId": "Nope"})
    assert resp.status_code == 404
    assert resp.json()["error"] == 'Composition "Nope" not found.'


def test_timeout_is_504(client: TestClient) -> None:
    resp = client.post("/api/render", json={"compositionId": "Promo", "inputProps": {"hang": True}})
    assert resp.status_code == 504
    body = resp.json()
    assert body["type"] == "RenderTimeoutError"
    assert body["context"]["frame"] == 0


def test_status_mapping() -> None:
    assert status_for(RenderConnectionError("down")) == 502
    assert status_for(EncodeFailedError("boom")) == 500


def test_compositions(client: TestClient) -> None:
    assert client.get("/api/compositions").json() == {
        "compositions": [{"id": "Promo", "width": 320, "height": 180, "fps": 30, "durationInFrames": 60}]
    }
