"""Parameter validation for every pipeline entry point.

Each validator is pure: it takes a raw value (CLI string, JSON number, ...),
returns the coerced value, or raises ``ValidationError`` naming the
constraint that failed.
"""
from __future__ import annotations

import math
from dataclasses import replace
from typing import Any, Optional, Union
from urllib.parse import urlparse

from .codec_registry import CodecProfile, get_codec
from .errors import ValidationError
from .models import RenderRequest

MAX_DIMENSION = 7680
MAX_FPS = 120
MAX_SCALE = 10
MAX_CONCURRENCY = 64
DEFAULT_CRF_RANGE = (0, 51)
LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0", "::1"})
IMAGE_FORMATS = {"png": "png", "jpeg": "jpeg", "jpg": "jpeg"}

Number = Union[int, float]


def _to_number(value: Any, label: str, *, integer: bool) -> Number:
    kind = "an integer" if integer else "a number"
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{label} must be {kind}, got {value!r}")
    if isinstance(value, str):
        text = value.strip()
        try:
            number: Number = int(text) if integer else float(text)
        except ValueError:
            if integer:
                try:
                    as_float = float(text)
                except ValueError:
                    raise ValidationError(f"{label} must be {kind}, got {value!r}") from None
                if not as_float.is_integer():
                    raise ValidationError(f"{label} must be {kind}, got {value!r}") from None
                number = int(as_float)
            else:
                raise ValidationError(f"{label} must be {kind}, got {value!r}") from None
    elif isinstance(value, (int, float)):
        number = value
    else:
        raise ValidationError(f"{label} must be {kind}, got {type(value).__name__}")

    if isinstance(number, float) and not math.isfinite(number):
        raise ValidationError(f"{label} must be {kind}, got {value!r}")
    if integer:
        if isinstance(number, float):
            if not number.is_integer():
                raise ValidationError(f"{label} must be {kind}, got {value!r}")
            number = int(number)
    return number


def validate_crf(value: Any, codec: Optional[str] = "h264") -> int:
    """Validate a CRF quality factor against the codec's range.

    h264/h265 (and callers that pass no codec) accept exactly [0, 51].
    Codecs without CRF support pass the coerced value through unchecked.
    """
    crf = int(_to_number(value, "CRF", integer=True))
    low, high = DEFAULT_CRF_RANGE
    if codec is not None:
        profile = get_codec(codec)
        if not profile.supports_crf:
            return crf
        if profile.crf_range is not None:
            low, high = profile.crf_range
    if crf < low or crf > high:
        raise ValidationError(f"CRF must be between {low} and {high}, got {crf}")
    return crf


def validate_port(value: Any) -> int:
    port = int(_to_number(value, "Port", integer=True))
    if port < 1024 or port > 65535:
        raise ValidationError(f"Port must be between 1024 and 65535, got {port}")
    return port


def validate_dimension(value: Any, name: str = "dimension") -> int:
    size = int(_to_number(value, name, integer=True))
    if size <= 0:
        raise ValidationError(f"{name} must be a positive integer, got {size}")
    if size > MAX_DIMENSION:
        raise ValidationError(f"{name} exceeds maximum of {MAX_DIMENSION}, got {size}")
    return size


def validate_fps(value: Any) -> Number:
    fps = _to_number(value, "FPS", integer=False)
    if fps <= 0 or fps > MAX_FPS:
        raise ValidationError(f"FPS must be greater than 0 and at most {MAX_FPS}, got {fps:g}")
    return int(fps) if float(fps).is_integer() else float(fps)


def validate_image_quality(value: Any) -> int:
    quality = int(_to_number(value, "Quality", integer=True))
    if quality < 0 or quality > 100:
        raise ValidationError(f"Quality must be between 0 and 100, got {quality}")
    return quality


def validate_scale(value: Any) -> float:
    scale = float(_to_number(value, "Scale", integer=False))
    if scale <= 0 or scale > MAX_SCALE:
        raise ValidationError(f"Scale must be greater than 0 and at most {MAX_SCALE}, got {scale:g}")
    return scale


def validate_concurrency(value: Any) -> int:
    workers = int(_to_number(value, "Concurrency", integer=True))
    if workers < 1 or workers > MAX_CONCURRENCY:
        raise ValidationError(f"Concurrency must be between 1 and {MAX_CONCURRENCY}, got {workers}")
    return workers


def validate_image_format(value: Any) -> str:
    key = str(value or "").strip().lower()
    if key not in IMAGE_FORMATS:
        raise ValidationError(f"Image format must be one of png, jpeg, got {value!r}")
    return IMAGE_FORMATS[key]


def validate_codec(value: Any) -> CodecProfile:
    return get_codec(str(value).strip().lower() if isinstance(value, str) else value)


def validate_frontend_url(url: Any, allow_remote: bool = False) -> str:
    text = str(url or "").strip()
    try:
        parsed = urlparse(text)
        hostname = parsed.hostname
    except ValueError:
        raise ValidationError(f"Invalid frontend URL: {url!r}") from None
    if not parsed.scheme or not hostname:
        raise ValidationError(f"Invalid frontend URL: {url!r}")
    if parsed.scheme not in ("http", "https"):
        raise ValidationError(f"Frontend URL must use http or https, got {parsed.scheme}:")
    if not allow_remote and hostname not in LOCAL_HOSTS:
        raise ValidationError(
            f"Frontend URL must be local (localhost, 127.0.0.1, 0.0.0.0, ::1); got {hostname}. "
            "Allow remote URLs explicitly to render from them."
        )
    return text


def validate_frame_range(start_frame: Any, end_frame: Any, duration_in_frames: Any) -> tuple[int, int]:
    start = int(_to_number(start_frame, "Start frame", integer=True))
    end = int(_to_number(end_frame, "End frame", integer=True))
    duration = int(_to_number(duration_in_frames, "Duration", integer=True))
    if duration <= 0:
        raise ValidationError(f"Duration must be a positive number of frames, got {duration}")
    if start < 0:
        raise ValidationError(f"Start frame must be >= 0, got {start}")
    if end >= duration:
        raise ValidationError(f"End frame must be < {duration}, got {end}")
    if start > end:
        raise ValidationError(f"Start frame ({start}) must be <= end frame ({end})")
    return start, end


def validate_request(request: RenderRequest) -> RenderRequest:
    """Validate and coerce every field of ``request``.

    Fields left as ``None`` (metadata not resolved yet) are skipped; the frame
    range is only checked once the duration is known. Call again after
    ``RenderRequest.with_metadata`` and before acquiring any render session or
    encoder.
    """
    if not str(request.composition_id or "").strip():
        raise ValidationError("compositionId is required")
    profile = validate_codec(request.codec)
    changes: dict[str, Any] = {"codec": profile.id}

    if request.crf is not None:
        changes["crf"] = validate_crf(request.crf, profile.id)
    if request.width is not None:
        changes["width"] = validate_dimension(request.width, "width")
    if request.height is not None:
        changes["height"] = validate_dimension(request.height, "height")
    if request.fps is not None:
        changes["fps"] = validate_fps(request.fps)
    changes["scale"] = validate_scale(request.scale)
    changes["image_format"] = validate_image_format(request.image_format)
    changes["image_quality"] = validate_image_quality(request.image_quality)
    changes["concurrency"] = validate_concurrency(request.concurrency)
    changes["frontend_url"] = validate_frontend_url(request.frontend_url, request.allow_remote)
    if not isinstance(request.input_props, dict):
        raise ValidationError(
            f"inputProps must be an object, got {type(request.input_props).__name__}"
        )

    if request.duration_in_frames is not None:
        end = request.end_frame
        if end is None:
            end = int(_to_number(request.duration_in_frames, "Duration", integer=True)) - 1
        start, end = validate_frame_range(request.start_frame, end, request.duration_in_frames)
        changes["duration_in_frames"] = int(request.duration_in_frames)
        changes["start_frame"] = start
        changes["end_frame"] = end
    else:
        changes["start_frame"] = int(_to_number(request.start_frame, "Start frame", integer=True))
        if changes["start_frame"] < 0:
            raise ValidationError(f"Start frame must be >= 0, got {changes['start_frame']}")

    validated = replace(request, **changes)
    if (validated.width is not None and validated.output_width > MAX_DIMENSION) or (
        validated.height is not None and validated.output_height > MAX_DIMENSION
    ):
        raise ValidationError(
            f"Scaled output {validated.output_width}x{validated.output_height} exceeds maximum of {MAX_DIMENSION}"
        )
    return validated
