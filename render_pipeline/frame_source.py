"""Frame capture sessions.

A ``FrameSource`` drives one render surface: ``open`` it against a
composition, ``seek_and_capture`` frames in any order, ``close`` it. The
session is owned by exactly one render job and never crosses threads.
"""
from __future__ import annotations

import io
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional

from PIL import Image, ImageDraw

from logging_utils import get_logger

from .errors import CompositionNotFoundError, RenderError, RenderTimeoutError
from .models import CompositionMetadata, RenderRequest

if TYPE_CHECKING:
    from config_loader import RenderSettings

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_RETRIES = 2
DEFAULT_SETTLE_SECONDS = 0.016


@dataclass
class SessionConfig:
    composition_id: str
    frontend_url: str = "http://localhost:3000"
    width: Optional[int] = None
    height: Optional[int] = None
    scale: float = 1.0
    input_props: Dict[str, Any] = field(default_factory=dict)
    image_format: str = "png"
    image_quality: int = 80
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    retries: int = DEFAULT_RETRIES
    settle_seconds: float = DEFAULT_SETTLE_SECONDS
    headless: bool = True
    browser_executable: Optional[str] = None

    @classmethod
    def from_request(
        cls,
        request: RenderRequest,
        settings: Optional["RenderSettings"] = None,
    ) -> "SessionConfig":
        config = cls(
            composition_id=request.composition_id,
            frontend_url=request.frontend_url,
            width=request.width,
            height=request.height,
            scale=request.scale,
            input_props=dict(request.input_props),
            image_format=request.image_format,
            image_quality=request.image_quality,
        )
        if settings is not None:
            config.apply_settings(settings)
        return config

    def apply_settings(self, settings: "RenderSettings") -> None:
        self.timeout_seconds = settings.capture_timeout_seconds
        self.retries = settings.delay_retries
        self.settle_seconds = settings.settle_seconds
        self.headless = settings.headless
        self.browser_executable = settings.browser_executable


class DelayGate:
    """Counter of outstanding async work that blocks capture until it drains.

    ``delay`` registers work and returns a handle, ``continue_render`` clears
    it. Waiters sleep on a condition variable instead of polling.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._pending: Dict[int, str] = {}
        self._next_handle = 0

    def delay(self, label: str = "") -> int:
        with self._cond:
            self._next_handle += 1
            handle = self._next_handle
            self._pending[handle] = label or f"delay-{handle}"
            return handle

    def continue_render(self, handle: int) -> None:
        with self._cond:
            if self._pending.pop(handle, None) is None:
                logger.warning("continue_render called with unknown handle %s", handle)
                return
            if not self._pending:
                self._cond.notify_all()

    @property
    def pending_count(self) -> int:
        with self._cond:
            return len(self._pending)

    def pending_labels(self) -> List[str]:
        with self._cond:
            return list(self._pending.values())

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is pending; ``False`` if ``timeout`` elapsed first."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending, timeout)


def wait_until_settled(
    wait_once: Callable[[float], bool],
    *,
    frame: int,
    timeout_seconds: float,
    retries: int,
    pending_labels: Callable[[], Iterable[str]] = lambda: (),
) -> None:
    """Call ``wait_once(timeout)`` until it reports settled.

    After ``retries`` extra attempts a ``RenderTimeoutError`` is raised that
    names the frame and whatever work is still pending.
    """
    attempts = max(0, retries) + 1
    for attempt in range(1, attempts + 1):
        if wait_once(timeout_seconds):
            return
        if attempt < attempts:
            logger.warning(
                "Frame %d still pending after %.1fs (attempt %d/%d)",
                frame,
                timeout_seconds,
                attempt,
                attempts,
            )
    labels = [label for label in pending_labels() if label]
    detail = f"; pending: {', '.join(labels)}" if labels else ""
    raise RenderTimeoutError(
        f"Frame {frame} did not finish rendering within {timeout_seconds:g}s "
        f"after {attempts} attempt(s){detail}",
        frame=frame,
    )


class FrameSource(ABC):
    """Capture interface used by render jobs."""

    def __init__(self, config: SessionConfig) -> None:
        self.config = config
        self.metadata: Optional[CompositionMetadata] = None
        self.current_frame: Optional[int] = None

    @abstractmethod
    def open(self) -> CompositionMetadata:
        """Start the session and report the composition's metadata."""

    @abstractmethod
    def seek_and_capture(self, frame: int) -> bytes:
        """Render ``frame`` once all pending async work settles and return image bytes."""

    @abstractmethod
    def close(self) -> None:
        """Release the session. Safe to call more than once."""

    def audio_tracks(self) -> List[Dict[str, Any]]:
        return []

    def list_compositions(self) -> List[Dict[str, Any]]:
        """Compositions the surface can render, without opening one of them."""
        return []

    def __enter__(self) -> "FrameSource":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


FrameSourceFactory = Callable[[SessionConfig], FrameSource]


class SyntheticFrameSource(FrameSource):
    """Pillow test-pattern generator standing in for a browser surface.

    Draws the composition id and frame index on a colour that changes every
    frame. ``async_delay`` registers a delay on each seek that a timer clears,
    exercising the same settle path a real surface goes through.
    """

    def __init__(
        self,
        config: SessionConfig,
        *,
        metadata: Optional[CompositionMetadata] = None,
        compositions: Optional[Iterable[str]] = None,
        audio: Optional[List[Dict[str, Any]]] = None,
        async_delay: float = 0.0,
        gate: Optional[DelayGate] = None,
    ) -> None:
        super().__init__(config)
        self._declared = metadata or CompositionMetadata(1920, 1080, 30, 300)
        self._compositions = set(compositions) if compositions is not None else None
        self._audio = list(audio or [])
        self.async_delay = async_delay
        self.gate = gate or DelayGate()
        self._opened = False

    def open(self) -> CompositionMetadata:
        if self._compositions is not None and self.config.composition_id not in self._compositions:
            raise CompositionNotFoundError(
                f'Composition "{self.config.composition_id}" not found.'
            )
        self.metadata = self._declared
        self._opened = True
        logger.debug(
            "Synthetic source opened: %s (%dx%d, %s fps, %d frames)",
            self.config.composition_id,
            self.metadata.width,
            self.metadata.height,
            self.metadata.fps,
            self.metadata.duration_in_frames,
        )
        return self.metadata

    def seek_and_capture(self, frame: int) -> bytes:
        if not self._opened or self.metadata is None:
            raise RenderError("Frame source is not open", frame=frame)
        if frame < 0 or frame >= self.metadata.duration_in_frames:
            raise RenderError(
                f"Frame {frame} is outside the composition (0-{self.metadata.duration_in_frames - 1})",
                frame=frame,
            )
        if self.async_delay > 0:
            handle = self.gate.delay(f"frame-{frame}")
            timer = threading.Timer(self.async_delay, self.gate.continue_render, args=(handle,))
            timer.daemon = True
            timer.start()
        wait_until_settled(
            self.gate.wait_idle,
            frame=frame,
            timeout_seconds=self.config.timeout_seconds,
            retries=self.config.retries,
            pending_labels=self.gate.pending_labels,
        )
        if self.config.settle_seconds > 0:
            time.sleep(self.config.settle_seconds)
        self.current_frame = frame
        return self._draw(frame)

    def close(self) -> None:
        self._opened = False

    def audio_tracks(self) -> List[Dict[str, Any]]:
        return list(self._audio)

    def list_compositions(self) -> List[Dict[str, Any]]:
        if self._compositions is None:
            names = [self.config.composition_id] if self.config.composition_id else []
        else:
            names = sorted(self._compositions)
        return [self._declared.describe(name) for name in names]

    def _draw(self, frame: int) -> bytes:
        width = self.config.width or self.metadata.width
        height = self.config.height or self.metadata.height
        size = (max(1, round(width * self.config.scale)), max(1, round(height * self.config.scale)))
        colour = ((frame * 7) % 256, (frame * 13 + 80) % 256, (frame * 29 + 160) % 256)
        gradient = Image.linear_gradient("L").resize(size).convert("RGB")
        image = Image.blend(Image.new("RGB", size, colour), gradient, 0.35)
        draw = ImageDraw.Draw(image)
        draw.text((size[0] // 20, size[1] // 20), f"{self.config.composition_id} #{frame}", fill=(255, 255, 255))

        buf = io.BytesIO()
        if self.config.image_format == "jpeg":
            image.save(buf, format="JPEG", quality=self.config.image_quality)
        else:
            image.save(buf, format="PNG")
        return buf.getvalue()
