"""Entry point shared by the CLI and the HTTP server."""
from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from config_loader import AppConfig, RenderSettings
from logging_utils import get_logger

from .batch import BatchCoordinator, OutcomeCallback
from .browser_source import playwright_source_factory
from .codec_registry import get_extension, list_codecs
from .concat import concat_streamcopy
from .encoder import EncoderFactory, EncoderSession
from .errors import ValidationError
from .frame_source import FrameSource, FrameSourceFactory, SessionConfig, SyntheticFrameSource
from .job import render_still
from .models import BatchSummary, RenderRequest, RenderResult, StillResult
from .parallel import ConcatFn, ParallelRenderCoordinator
from .progress import ProgressCallback
from .validation import validate_frontend_url

logger = get_logger(__name__)

SOURCE_KINDS = ("browser", "synthetic")


def _synthetic_factory(config: SessionConfig) -> FrameSource:
    return SyntheticFrameSource(config)


def make_source_factory(kind: str) -> FrameSourceFactory:
    if kind == "browser":
        return playwright_source_factory
    if kind == "synthetic":
        return _synthetic_factory
    raise ValidationError(f"Unknown frame source {kind!r}; expected one of {', '.join(SOURCE_KINDS)}")


def _timestamp() -> int:
    return int(time.time() * 1000)


class RenderService:
    def __init__(
        self,
        config: AppConfig,
        *,
        source_factory: Optional[FrameSourceFactory] = None,
        encoder_factory: Optional[EncoderFactory] = None,
        concat_fn: ConcatFn = concat_streamcopy,
    ) -> None:
        self.config = config
        self.source_factory = source_factory or make_source_factory(config.render.source)
        self.encoder_factory = encoder_factory or EncoderSession
        self.concat_fn = concat_fn

    @property
    def settings(self) -> RenderSettings:
        return self.config.render

    @property
    def output_dir(self) -> Path:
        return self.config.output_dir

    def new_request(self, composition_id: str, **fields: Any) -> RenderRequest:
        """Build a request with configured defaults for anything not given."""
        values: Dict[str, Any] = {
            "frontend_url": self.settings.frontend_url,
            "allow_remote": self.settings.allow_remote,
            "codec": self.settings.codec,
            "crf": self.settings.crf,
        }
        values.update({k: v for k, v in fields.items() if v is not None})
        return RenderRequest(composition_id=composition_id, **values)

    def default_output(self, request: RenderRequest) -> Path:
        if request.image_sequence:
            return self.output_dir / f"{request.composition_id}-{_timestamp()}"
        return self.output_dir / f"{request.composition_id}-{_timestamp()}.{get_extension(str(request.codec).strip().lower())}"

    def render(
        self,
        request: RenderRequest,
        output_path: Optional[Path] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RenderResult:
        coordinator = ParallelRenderCoordinator(
            source_factory=self.source_factory,
            encoder_factory=self.encoder_factory,
            concat_fn=self.concat_fn,
            settings=self.settings,
            on_progress=on_progress,
        )
        return coordinator.render(request, Path(output_path) if output_path else self.default_output(request))

    def still(self, request: RenderRequest, frame: int = 0, output_path: Optional[Path] = None) -> StillResult:
        if output_path is None:
            ext = "jpg" if request.image_format in ("jpeg", "jpg") else "png"
            output_path = self.output_dir / f"{request.composition_id}-frame{frame}-{_timestamp()}.{ext}"
        return render_still(
            request,
            frame,
            Path(output_path),
            source_factory=self.source_factory,
            settings=self.settings,
        )

    def batch(
        self,
        request: RenderRequest,
        rows: Sequence[Mapping[str, Any]],
        *,
        output_dir: Optional[Path] = None,
        output_pattern: Optional[str] = None,
        fail_fast: bool = False,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> BatchSummary:
        coordinator = BatchCoordinator(
            source_factory=self.source_factory,
            encoder_factory=self.encoder_factory,
            settings=self.settings,
            on_outcome=on_outcome,
        )
        return coordinator.run(
            request,
            rows,
            Path(output_dir) if output_dir else self.output_dir,
            output_pattern=output_pattern,
            fail_fast=fail_fast,
        )

    def codecs(self) -> List[Dict[str, Any]]:
        return list_codecs()

    def compositions(self) -> List[Dict[str, Any]]:
        """List the compositions registered by the configured front end."""
        session = SessionConfig(
            composition_id="",
            frontend_url=validate_frontend_url(self.settings.frontend_url, self.settings.allow_remote),
        )
        session.apply_settings(self.settings)
        source = self.source_factory(session)
        try:
            compositions = source.list_compositions()
        finally:
            source.close()
        logger.info("Found %d composition(s) at %s", len(compositions), session.frontend_url)
        return compositions


ServiceFactory = Callable[[AppConfig], RenderService]
