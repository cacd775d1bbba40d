from __future__ import annotations

import random
import sys
import threading
import time
from pathlib import Path
from typing import Iterable, List, Optional, Set

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from render_pipeline.encoder import EncoderConfig
from render_pipeline.errors import CompositionNotFoundError, EncodeFailedError, RenderError, RenderTimeoutError
from render_pipeline.frame_source import FrameSource, SessionConfig
from render_pipeline.models import CompositionMetadata


def frame_bytes(frame: int) -> bytes:
    return b"frame-%05d\n" % frame


def expected_video(start: int, end: int) -> bytes:
    return b"".join(frame_bytes(f) for f in range(start, end + 1))


class FakeSource(FrameSource):
    """In-memory surface: each frame is a short byte string, capture order is logged."""

    def __init__(self, studio: "FakeStudio", config: SessionConfig) -> None:
        super().__init__(config)
        self.studio = studio
        self.captured: List[int] = []
        self.opened = False
        self.closed = False

    def open(self) -> CompositionMetadata:
        if self.studio.compositions is not None and self.config.composition_id not in self.studio.compositions:
            raise CompositionNotFoundError(f'Composition "{self.config.composition_id}" not found.')
        self.opened = True
        self.metadata = self.studio.metadata
        return self.metadata

    def seek_and_capture(self, frame: int) -> bytes:
        if frame in self.studio.slow_frames:
            time.sleep(0.2)
        elif self.studio.jitter:
            time.sleep(random.uniform(0, self.studio.jitter))
        props = self.config.input_props
        if props.get("hang"):
            raise RenderTimeoutError(f"Frame {frame} did not finish rendering", frame=frame)
        if props.get("fail") or frame in self.studio.fail_frames:
            raise RenderError(f"capture failed at frame {frame}")
        self.captured.append(frame)
        return frame_bytes(frame)

    def list_compositions(self):
        return [self.studio.metadata.describe(name) for name in sorted(self.studio.compositions or ())]

    def close(self) -> None:
        self.closed = True


class FakeEncoder:
    """Writes the raw frame bytes straight to the output file."""

    def __init__(
        self,
        config: EncoderConfig,
        *,
        fail_on_write: Optional[int] = None,
        finish_order: Optional[List[Path]] = None,
    ) -> None:
        self.config = config
        self.finish_order = finish_order
        self.fail_on_write = fail_on_write
        self.frames_written = 0
        self.finished = False
        self.aborted = False
        self._fh = None

    def start(self) -> "FakeEncoder":
        self.config.output_path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self.config.output_path.open("wb")
        return self

    def write(self, data: bytes) -> None:
        if self.fail_on_write is not None and self.frames_written >= self.fail_on_write:
            raise EncodeFailedError("ffmpeg closed its input", returncode=1)
        self._fh.write(data)
        self.frames_written += 1

    def finish(self) -> Path:
        self._fh.close()
        self.finished = True
        if self.finish_order is not None:
            self.finish_order.append(self.config.output_path)
        return self.config.output_path

    def abort(self) -> None:
        if self._fh is not None:
            self._fh.close()
        self.aborted = True
        self.config.output_path.unlink(missing_ok=True)


class FakeStudio:
    """Factories for sources, encoders and concat that never touch a browser or ffmpeg."""

    def __init__(
        self,
        *,
        metadata: Optional[CompositionMetadata] = None,
        fail_frames: Iterable[int] = (),
        compositions: Optional[Iterable[str]] = None,
        jitter: float = 0.002,
        slow_frames: Iterable[int] = (),
        encoder_fail_on_write: Optional[int] = None,
    ) -> None:
        self.metadata = metadata or CompositionMetadata(width=320, height=180, fps=30, duration_in_frames=60)
        self.fail_frames: Set[int] = set(fail_frames)
        self.compositions = set(compositions) if compositions is not None else None
        self.jitter = jitter
        self.slow_frames: Set[int] = set(slow_frames)
        self.finish_order: List[Path] = []
        self.encoder_fail_on_write = encoder_fail_on_write
        self.sources: List[FakeSource] = []
        self.encoders: List[FakeEncoder] = []
        self.concat_calls: List[List[Path]] = []
        self._lock = threading.Lock()

    def source_factory(self, config: SessionConfig) -> FakeSource:
        source = FakeSource(self, config)
        with self._lock:
            self.sources.append(source)
        return source

    def encoder_factory(self, config: EncoderConfig) -> FakeEncoder:
        encoder = FakeEncoder(config, fail_on_write=self.encoder_fail_on_write, finish_order=self.finish_order)
        with self._lock:
            self.encoders.append(encoder)
        return encoder

    def concat(self, inputs: Iterable[Path], output: Path, *, ffmpeg_path: str = "ffmpeg") -> Path:
        files = [Path(p) for p in inputs]
        self.concat_calls.append(files)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(b"".join(p.read_bytes() for p in files))
        return output


@pytest.fixture
def studio() -> FakeStudio:
    return FakeStudio()
