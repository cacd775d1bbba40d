"""HTTP surface for the render pipeline (FastAPI)."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field

from config_loader import AppConfig
from logging_utils import get_logger
from render_pipeline.errors import (
    CompositionNotFoundError,
    RenderConnectionError,
    RenderError,
    RenderTimeoutError,
    ValidationError,
)
from render_pipeline.service import RenderService, ServiceFactory

logger = get_logger(__name__)


class RenderBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    composition_id: str = Field(alias="compositionId", min_length=1)
    width: int = 1920
    height: int = 1080
    fps: float = 30
    duration_in_frames: int = Field(300, alias="durationInFrames")
    start_frame: int = Field(0, alias="startFrame")
    end_frame: Optional[int] = Field(None, alias="endFrame")
    codec: str = "h264"
    crf: Optional[int] = None
    bitrate: Optional[str] = None
    preset: str = "fast"
    prores_profile: Optional[str] = Field(None, alias="proresProfile")
    scale: float = 1
    input_props: Dict[str, Any] = Field(default_factory=dict, alias="inputProps")
    muted: bool = False
    image_sequence: bool = Field(False, alias="imageSequence")
    image_format: str = Field("png", alias="imageFormat")
    image_quality: int = Field(80, alias="imageQuality")
    parallel: bool = False
    concurrency: int = 4
    frontend_url: Optional[str] = Field(None, alias="frontendUrl")


class StillBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    composition_id: str = Field(alias="compositionId", min_length=1)
    frame: int = 0
    width: int = 1920
    height: int = 1080
    format: str = "png"
    quality: int = 80
    scale: float = 1
    input_props: Dict[str, Any] = Field(default_factory=dict, alias="inputProps")
    frontend_url: Optional[str] = Field(None, alias="frontendUrl")


def status_for(exc: BaseException) -> int:
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, CompositionNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, RenderConnectionError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, RenderTimeoutError):
        return status.HTTP_504_GATEWAY_TIMEOUT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(config: AppConfig, *, service_factory: ServiceFactory = RenderService) -> FastAPI:
    service = service_factory(config)
    output_dir = config.output_dir
    output_dir.mkdir(parents=True, exist_ok=True)
    base_url = (config.render.public_url or f"http://localhost:{config.render.port}").rstrip("/")

    app = FastAPI(title="framely render server")
    app.mount("/outputs", StaticFiles(directory=str(output_dir)), name="outputs")

    def download_url(path: Path) -> str:
        try:
            relative = path.resolve().relative_to(output_dir.resolve())
        except ValueError:
            return str(path)
        return f"{base_url}/outputs/{relative.as_posix()}"

    @app.exception_handler(RenderError)
    async def render_error_handler(request: Request, exc: RenderError) -> JSONResponse:
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
            for err in exc.errors()
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": problems or "Invalid request", "type": "ValidationError", "context": {}},
        )

    @app.post("/api/render")
    def render(body: RenderBody) -> Dict[str, Any]:
        request = service.new_request(
            body.composition_id,
            width=body.width,
            height=body.height,
            fps=body.fps,
            duration_in_frames=body.duration_in_frames,
            start_frame=body.start_frame,
            end_frame=body.end_frame,
            codec=body.codec,
            crf=body.crf,
            bitrate=body.bitrate,
            preset=body.preset,
            prores_profile=body.prores_profile,
            scale=body.scale,
            input_props=body.input_props,
            muted=body.muted,
            image_sequence=body.image_sequence,
            image_format=body.image_format,
            image_quality=body.image_quality,
            concurrency=body.concurrency if body.parallel else 1,
            frontend_url=body.frontend_url,
        )
        logger.info(
            "Render request: %s %sx%s @ %sfps, codec %s%s",
            body.composition_id,
            body.width,
            body.height,
            body.fps,
            body.codec,
            f", parallel x{body.concurrency}" if body.parallel else "",
        )
        result = service.render(request)
        return {
            "outputPath": str(result.output_path),
            "downloadUrl": (
                f"Directory: {result.output_path}" if result.image_sequence else download_url(result.output_path)
            ),
            "durationMs": int(result.elapsed_seconds * 1000),
            "codec": result.codec,
            "totalFrames": result.total_frames,
        }

    @app.post("/api/still")
    def still(body: StillBody) -> Dict[str, Any]:
        request = service.new_request(
            body.composition_id,
            width=body.width,
            height=body.height,
            scale=body.scale,
            input_props=body.input_props,
            image_format=body.format,
            image_quality=body.quality,
            frontend_url=body.frontend_url,
        )
        result = service.still(request, body.frame)
        return {
            "outputPath": str(result.output_path),
            "downloadUrl": download_url(result.output_path),
            "durationMs": int(result.elapsed_seconds * 1000),
        }

    @app.get("/api/codecs")
    def codecs() -> Dict[str, Any]:
        return {"codecs": service.codecs()}

    @app.get("/api/compositions")
    def compositions() -> Dict[str, Any]:
        return {"compositions": service.compositions()}

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    return app
