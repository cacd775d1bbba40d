from __future__ import annotations

import json
import sys
from pathlib import Path
from urllib.parse import parse_qs, urlparse

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
import requests
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from render_pipeline import browser_source
from render_pipeline.browser_source import PlaywrightFrameSource, build_render_url, probe_frontend
from render_pipeline.errors import RenderConnectionError, RenderError, RenderTimeoutError
from render_pipeline.frame_source import SessionConfig


def test_build_render_url_encodes_props() -> None:
    url = build_render_url("http://localhost:3000/", "My Comp", {"title": "a&b", "n": 1})
    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    assert url.startswith("http://localhost:3000/?renderMode=true&composition=My%20Comp")
    assert query["renderMode"] == ["true"]
    assert json.loads(query["props"][0]) == {"title": "a&b", "n": 1}
    assert "props" not in build_render_url("http://localhost:3000", "Promo", {})


def test_probe_frontend_raises_connection_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def refuse(url, timeout):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(browser_source.requests, "get", refuse)
    with pytest.raises(RenderConnectionError, match="Is the dev server running"):
        probe_frontend("http://localhost:3000")


def test_probe_frontend_rejects_server_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    class Resp:
        status_code = 503

    monkeypatch.setattr(browser_source.requests, "get", lambda url, timeout: Resp())
    with pytest.raises(RenderConnectionError, match="HTTP 503"):
        probe_frontend("http://localhost:3000")


class _Locator:
    def __init__(self, page: "FakePage") -> None:
        self.page = page

    def screenshot(self, **options) -> bytes:
        self.page.screenshots.append(options)
        return b"image-%d" % self.page.frame


class FakePage:
    """Answers the page scripts the way a mounted composition would."""

    def __init__(self, *, pending: int = 0, settles: bool = True, error: str = "") -> None:
        self.pending = pending
        self.settles = settles
        self.error = error
        self.frame = -1
        self.screenshots = []
        self.waits = 0

    def evaluate(self, script: str, arg=None):
        if script == browser_source._SET_FRAME_JS:
            self.frame = arg
            return self.pending
        if script == browser_source._RENDER_ERROR_JS:
            return self.error or None
        if script == browser_source._PENDING_LABELS_JS:
            return ["webfont"]
        if script == browser_source._COMPOSITIONS_JS:
            return [
                {"id": "Promo", "width": 1280, "height": 720, "fps": 30, "durationInFrames": 90},
                {"id": None, "width": 1, "height": 1},
            ]
        if script == browser_source._AUDIO_TRACKS_JS:
            return [{"src": "/a.mp3"}, {"src": "/b.mp3", "muted": True}, {"src": ""}]
        raise AssertionError(f"unexpected script {script[:40]}")

    def wait_for_function(self, script: str, timeout: float) -> None:
        self.waits += 1
        if not self.settles:
            raise PlaywrightTimeoutError("timeout")

    def locator(self, selector: str) -> _Locator:
        assert selector == "#render-container"
        return _Locator(self)


def _source(page: FakePage, **config) -> PlaywrightFrameSource:
    source = PlaywrightFrameSource(SessionConfig("Promo", settle_seconds=0, **config), probe=False)
    source._page = page
    return source


def test_seek_and_capture_waits_for_pending_work() -> None:
    page = FakePage(pending=2)
    source = _source(page, image_format="jpeg", image_quality=70)

    assert source.seek_and_capture(9) == b"image-9"
    assert page.waits == 1
    assert page.screenshots[0]["type"] == "jpeg"
    assert page.screenshots[0]["quality"] == 70
    assert source.current_frame == 9


def test_seek_and_capture_skips_wait_when_idle() -> None:
    page = FakePage()
    assert _source(page).seek_and_capture(0) == b"image-0"
    assert page.waits == 0
    assert "quality" not in page.screenshots[0]


def test_unsettled_frame_times_out_with_labels() -> None:
    page = FakePage(pending=1, settles=False)
    with pytest.raises(RenderTimeoutError, match="webfont") as excinfo:
        _source(page, timeout_seconds=0.01, retries=1).seek_and_capture(4)
    assert excinfo.value.context["frame"] == 4
    assert page.waits == 2
    assert page.screenshots == []


def test_composition_error_is_raised() -> None:
    page = FakePage(error="props.title is undefined")
    with pytest.raises(RenderError, match="props.title is undefined"):
        _source(page).seek_and_capture(1)


def test_audio_tracks_skip_muted_and_empty() -> None:
    assert _source(FakePage()).audio_tracks() == [{"src": "/a.mp3"}]


def test_close_is_idempotent() -> None:
    source = _source(FakePage())
    source.close()
    source.close()
    with pytest.raises(RenderError, match="not open"):
        source.seek_and_capture(0)


def test_list_compositions_reads_registry_from_open_page() -> None:
    page = FakePage()
    source = _source(page)
    assert source.list_compositions() == [
        {"id": "Promo", "width": 1280, "height": 720, "fps": 30.0, "durationInFrames": 90}
    ]
    assert page.waits == 1
    assert source._page is page


def test_list_compositions_tolerates_missing_ready_flag() -> None:
    page = FakePage(settles=False)
    assert [c["id"] for c in _source(page).list_compositions()] == ["Promo"]
