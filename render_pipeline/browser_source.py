"""Headless Chromium render surface driven through Playwright's sync API.

The front end is loaded in render mode and exposes a small window-level
control surface:

- ``window.__ready``: set once the composition has mounted
- ``window.__setFrame(frame)``: move the clock (may return a promise)
- ``window.__FRAMELY_DELAY_RENDER``: pending async work counter
- ``window.__FRAMELY_RENDER_ERROR``: fatal error reported by the composition
- ``window.__FRAMELY_AUDIO_TRACKS``: audio registered by the composition
- ``window.__FRAMELY_COMPOSITIONS``: registry of every composition (listing)
"""
from __future__ import annotations

import json
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from logging_utils import get_logger

from .errors import CompositionNotFoundError, RenderConnectionError, RenderError, RenderTimeoutError
from .frame_source import FrameSource, SessionConfig, wait_until_settled
from .models import CompositionMetadata

logger = get_logger(__name__)

BROWSER_ARGS = [
    "--disable-web-security",
    "--disable-features=IsolateOrigins",
    "--disable-site-isolation-trials",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-gpu",
    "--disable-dev-shm-usage",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-ipc-flooding-protection",
    "--autoplay-policy=no-user-gesture-required",
]
RENDER_CONTAINER = "#render-container"
PROBE_TIMEOUT_SECONDS = 5.0
COMPOSITIONS_WAIT_SECONDS = 10.0

_PENDING_COUNT_JS = """() => {
  const dr = window.__FRAMELY_DELAY_RENDER;
  if (!dr) return 0;
  if (typeof dr.getPendingCount === 'function') return dr.getPendingCount();
  return dr.pendingCount || 0;
}"""

_SET_FRAME_JS = """async (f) => {
  await window.__setFrame(f);
  const dr = window.__FRAMELY_DELAY_RENDER;
  if (!dr) return 0;
  if (typeof dr.getPendingCount === 'function') return dr.getPendingCount();
  return dr.pendingCount || 0;
}"""

_IDLE_JS = "() => (" + _PENDING_COUNT_JS + ")() === 0"

_PENDING_LABELS_JS = """() => {
  const dr = window.__FRAMELY_DELAY_RENDER;
  return dr && typeof dr.getLabels === 'function' ? dr.getLabels() : [];
}"""

_READY_OR_FAILED_JS = """() => window.__ready === true
  || !!window.__FRAMELY_RENDER_ERROR
  || document.body.innerText.includes('not found')"""

_RENDER_ERROR_JS = """() => {
  const e = window.__FRAMELY_RENDER_ERROR;
  return e ? (e.message || String(e)) : null;
}"""

_METADATA_JS = """() => ({
  width: window.__compositionWidth,
  height: window.__compositionHeight,
  fps: window.__compositionFps,
  durationInFrames: window.__compositionDurationInFrames,
})"""

_AUDIO_TRACKS_JS = """() => (window.__FRAMELY_AUDIO_TRACKS || []).map((t) => ({
  src: t.src,
  startFrame: t.startFrame || 0,
  endFrame: t.endFrame,
  volume: typeof t.volume === 'function' ? 1 : (t.volume ?? 1),
  playbackRate: t.playbackRate || 1,
  loop: t.loop || false,
  muted: t.muted || false,
}))"""

_COMPOSITIONS_READY_JS = "() => window.__ready === true || !!window.__FRAMELY_COMPOSITIONS"

_COMPOSITIONS_JS = """() => Object.values(window.__FRAMELY_COMPOSITIONS || {}).map((c) => ({
  id: c.id,
  width: c.width,
  height: c.height,
  fps: c.fps,
  durationInFrames: c.durationInFrames,
}))"""


def build_render_url(frontend_url: str, composition_id: str, input_props: Optional[Dict[str, Any]] = None) -> str:
    base = frontend_url.rstrip("/")
    url = f"{base}/?renderMode=true&composition={quote(composition_id, safe='')}"
    if input_props:
        url += "&props=" + quote(json.dumps(input_props, separators=(",", ":")), safe="")
    return url


def probe_frontend(frontend_url: str, timeout: float = PROBE_TIMEOUT_SECONDS) -> None:
    """Fail fast with ``RenderConnectionError`` when the front end is down."""
    try:
        resp = requests.get(frontend_url, timeout=timeout)
    except requests.RequestException as exc:
        raise RenderConnectionError(
            f"Cannot reach frontend at {frontend_url}. Is the dev server running? ({exc})"
        ) from exc
    if resp.status_code >= 500:
        raise RenderConnectionError(f"Frontend at {frontend_url} returned HTTP {resp.status_code}")


class PlaywrightFrameSource(FrameSource):
    """One browser, one page, one composition."""

    def __init__(self, config: SessionConfig, *, probe: bool = True) -> None:
        super().__init__(config)
        self.probe = probe
        self._playwright = None
        self._browser = None
        self._page = None

    @property
    def _timeout_ms(self) -> float:
        return self.config.timeout_seconds * 1000

    def open(self) -> CompositionMetadata:
        cfg = self.config
        if self.probe:
            probe_frontend(cfg.frontend_url)
        url = build_render_url(cfg.frontend_url, cfg.composition_id, cfg.input_props)
        try:
            self._launch()
            logger.debug("Loading %s", url)
            try:
                self._page.goto(url, wait_until="load", timeout=self._timeout_ms)
            except PlaywrightTimeoutError as exc:
                raise RenderConnectionError(f"Timed out loading {cfg.frontend_url}") from exc
            except PlaywrightError as exc:
                raise RenderConnectionError(f"Cannot load {cfg.frontend_url}: {exc}") from exc
            self._wait_ready()
            self.metadata = CompositionMetadata.from_dict(self._page.evaluate(_METADATA_JS) or {})
        except BaseException:
            self.close()
            raise
        logger.debug(
            "Composition %s ready: %dx%d @ %s fps, %d frames",
            cfg.composition_id,
            self.metadata.width,
            self.metadata.height,
            self.metadata.fps,
            self.metadata.duration_in_frames,
        )
        return self.metadata

    def seek_and_capture(self, frame: int) -> bytes:
        if self._page is None:
            raise RenderError("Frame source is not open", frame=frame)
        try:
            pending = self._page.evaluate(_SET_FRAME_JS, frame)
            if pending:
                wait_until_settled(
                    self._wait_idle,
                    frame=frame,
                    timeout_seconds=self.config.timeout_seconds,
                    retries=self.config.retries,
                    pending_labels=self._pending_labels,
                )
            self._raise_render_error(frame)
            if self.config.settle_seconds > 0:
                time.sleep(self.config.settle_seconds)
            options: Dict[str, Any] = {"type": self.config.image_format, "timeout": self._timeout_ms}
            if self.config.image_format == "jpeg":
                options["quality"] = self.config.image_quality
            data = self._page.locator(RENDER_CONTAINER).screenshot(**options)
        except PlaywrightTimeoutError as exc:
            raise RenderTimeoutError(f"Timed out capturing frame {frame}: {exc}", frame=frame) from exc
        except PlaywrightError as exc:
            raise RenderError(f"Browser error on frame {frame}: {exc}", frame=frame) from exc
        self.current_frame = frame
        return data

    def audio_tracks(self) -> List[Dict[str, Any]]:
        if self._page is None:
            return []
        tracks = self._page.evaluate(_AUDIO_TRACKS_JS) or []
        return [t for t in tracks if t.get("src") and not t.get("muted")]

    def list_compositions(self) -> List[Dict[str, Any]]:
        """Read the front end's composition registry.

        Uses the open page when there is one; otherwise loads the front end
        outside render mode in a browser of its own and closes it afterwards.
        """
        cfg = self.config
        owns_page = self._page is None
        try:
            if owns_page:
                if self.probe:
                    probe_frontend(cfg.frontend_url)
                self._launch()
                try:
                    self._page.goto(cfg.frontend_url, wait_until="load", timeout=self._timeout_ms)
                except PlaywrightTimeoutError as exc:
                    raise RenderConnectionError(f"Timed out loading {cfg.frontend_url}") from exc
                except PlaywrightError as exc:
                    raise RenderConnectionError(f"Cannot load {cfg.frontend_url}: {exc}") from exc
            try:
                self._page.wait_for_function(_COMPOSITIONS_READY_JS, timeout=COMPOSITIONS_WAIT_SECONDS * 1000)
            except PlaywrightTimeoutError:
                logger.debug("Front end at %s set no ready flag; reading the registry anyway", cfg.frontend_url)
            entries = self._page.evaluate(_COMPOSITIONS_JS) or []
        finally:
            if owns_page:
                self.close()
        return [
            CompositionMetadata.from_dict(entry).describe(str(entry["id"]))
            for entry in entries
            if entry.get("id")
        ]

    def close(self) -> None:
        browser, playwright = self._browser, self._playwright
        self._page = None
        self._browser = None
        self._playwright = None
        if browser is not None:
            try:
                browser.close()
            except PlaywrightError as exc:
                logger.warning("Browser close failed: %s", exc)
        if playwright is not None:
            try:
                playwright.stop()
            except PlaywrightError as exc:
                logger.warning("Playwright stop failed: %s", exc)

    # ------------------------------------------------------------------
    def _launch(self) -> None:
        cfg = self.config
        self._playwright = sync_playwright().start()
        launch_options: Dict[str, Any] = {"headless": cfg.headless, "args": BROWSER_ARGS}
        if cfg.browser_executable:
            launch_options["executable_path"] = cfg.browser_executable
        try:
            self._browser = self._playwright.chromium.launch(**launch_options)
        except PlaywrightError as exc:
            raise RenderConnectionError(f"Could not launch Chromium: {exc}") from exc
        width = round((cfg.width or 1920) * cfg.scale)
        height = round((cfg.height or 1080) * cfg.scale)
        context = self._browser.new_context(
            viewport={"width": width, "height": height},
            device_scale_factor=1,
        )
        self._page = context.new_page()

    def _wait_ready(self) -> None:
        cfg = self.config
        try:
            self._page.wait_for_function(_READY_OR_FAILED_JS, timeout=self._timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise RenderTimeoutError(
                f"Composition {cfg.composition_id!r} did not become ready within {cfg.timeout_seconds:g}s"
            ) from exc
        self._raise_render_error(None)
        if self._page.evaluate("() => window.__ready === true"):
            return
        raise CompositionNotFoundError(f'Composition "{cfg.composition_id}" not found.')

    def _wait_idle(self, timeout: float) -> bool:
        try:
            self._page.wait_for_function(_IDLE_JS, timeout=timeout * 1000)
        except PlaywrightTimeoutError:
            return False
        return True

    def _pending_labels(self) -> List[str]:
        try:
            return list(self._page.evaluate(_PENDING_LABELS_JS) or [])
        except PlaywrightError:
            return []

    def _raise_render_error(self, frame: Optional[int]) -> None:
        message = self._page.evaluate(_RENDER_ERROR_JS)
        if message:
            raise RenderError(f"Composition reported an error: {message}", frame=frame)


def playwright_source_factory(config: SessionConfig) -> FrameSource:
    return PlaywrightFrameSource(config)
