from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class CompositionMetadata:
    width: int
    height: int
    fps: float
    duration_in_frames: int

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CompositionMetadata":
        return cls(
            width=int(payload.get("width") or 1920),
            height=int(payload.get("height") or 1080),
            fps=float(payload.get("fps") or 30),
            duration_in_frames=int(payload.get("durationInFrames") or 300),
        )

    def describe(self, composition_id: str) -> Dict[str, Any]:
        """Listing entry in the front end's ``{id, width, height, fps, durationInFrames}`` shape."""
        return {
            "id": composition_id,
            "width": self.width,
            "height": self.height,
            "fps": self.fps,
            "durationInFrames": self.duration_in_frames,
        }


@dataclass
class RenderRequest:
    """Everything needed to render one composition to one artifact.

    ``width``, ``height``, ``fps`` and ``duration_in_frames`` may be left as
    ``None`` to take the composition's own metadata; ``end_frame=None`` means
    the last frame of the composition.
    """

    composition_id: str
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[float] = None
    duration_in_frames: Optional[int] = None
    start_frame: int = 0
    end_frame: Optional[int] = None
    codec: str = "h264"
    crf: Optional[int] = None
    bitrate: Optional[str] = None
    preset: str = "fast"
    prores_profile: Optional[str] = None
    scale: float = 1.0
    input_props: Dict[str, Any] = field(default_factory=dict)
    muted: bool = False
    image_sequence: bool = False
    image_format: str = "png"
    image_quality: int = 80
    concurrency: int = 1
    frontend_url: str = "http://localhost:3000"
    allow_remote: bool = False

    @property
    def needs_metadata(self) -> bool:
        return any(
            value is None for value in (self.width, self.height, self.fps, self.duration_in_frames)
        )

    @property
    def last_frame(self) -> int:
        if self.end_frame is not None:
            return self.end_frame
        return int(self.duration_in_frames or 1) - 1

    @property
    def total_frames(self) -> int:
        return self.last_frame - self.start_frame + 1

    @property
    def output_width(self) -> int:
        return int(round(int(self.width or 0) * self.scale))

    @property
    def output_height(self) -> int:
        return int(round(int(self.height or 0) * self.scale))

    def with_metadata(self, metadata: CompositionMetadata) -> "RenderRequest":
        """Fill unset dimensions/timing from the composition's metadata."""
        return replace(
            self,
            width=self.width if self.width is not None else metadata.width,
            height=self.height if self.height is not None else metadata.height,
            fps=self.fps if self.fps is not None else metadata.fps,
            duration_in_frames=(
                self.duration_in_frames
                if self.duration_in_frames is not None
                else metadata.duration_in_frames
            ),
        )

    def with_overrides(self, **overrides: Any) -> "RenderRequest":
        return replace(self, **overrides)


@dataclass(frozen=True)
class Segment:
    """Contiguous frame range ``[start, end]`` owned by one parallel worker."""

    index: int
    start: int
    end: int

    @property
    def frame_count(self) -> int:
        return self.end - self.start + 1


@dataclass
class RenderResult:
    output_path: Path
    total_frames: int
    elapsed_seconds: float
    codec: str
    image_sequence: bool = False


@dataclass
class StillResult:
    output_path: Path
    frame: int
    elapsed_seconds: float


@dataclass
class BatchJob:
    index: int
    props: Dict[str, Any]
    overrides: Dict[str, Any]
    filename: str
    output_path: Path


@dataclass
class BatchOutcome:
    index: int
    filename: str
    output_path: Optional[Path] = None
    error: Optional[BaseException] = None
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and self.output_path is not None


@dataclass
class BatchSummary:
    total: int
    succeeded: int
    failed: int
    elapsed_seconds: float
    output_dir: Path
    outcomes: List[BatchOutcome] = field(default_factory=list)

    @property
    def failures(self) -> List[BatchOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]
