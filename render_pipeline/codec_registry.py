"""Static registry of the codecs the encoder session knows how to drive.

Each profile carries a pure argument builder; ``get_args`` is total over the
registry and returns the same list for the same inputs.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import UnknownCodecError


@dataclass(frozen=True)
class EncodeOptions:
    crf: Optional[int] = None
    bitrate: Optional[str] = None
    preset: str = "fast"
    profile: Optional[str] = None
    fps: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    alpha: bool = False
    loop: int = 0


@dataclass(frozen=True)
class AudioOptions:
    codec: str = "aac"
    bitrate: str = "320k"
    sample_rate: int = 48000
    channels: int = 2


@dataclass(frozen=True)
class CodecProfile:
    id: str
    name: str
    encoder: str
    extension: str
    pixel_format: str
    supports_crf: bool
    supports_audio: bool
    build_args: Callable[["CodecProfile", EncodeOptions], List[str]] = field(repr=False, compare=False)
    supports_alpha: bool = False
    uses_palette: bool = False
    default_crf: Optional[int] = None
    crf_range: Optional[Tuple[int, int]] = None

    @property
    def description(self) -> str:
        bits = [f"{self.name} ({self.encoder}) in .{self.extension}"]
        if self.supports_crf and self.crf_range:
            bits.append(f"CRF {self.crf_range[0]}-{self.crf_range[1]}, default {self.default_crf}")
        if self.supports_alpha:
            bits.append("alpha")
        if not self.supports_audio:
            bits.append("no audio")
        return ", ".join(bits)

    def args(self, options: Optional[EncodeOptions] = None) -> List[str]:
        return self.build_args(self, options or EncodeOptions())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "encoder": self.encoder,
            "extension": self.extension,
            "pixelFormat": self.pixel_format,
            "description": self.description,
            "supportsCrf": self.supports_crf,
            "supportsAudio": self.supports_audio,
            "supportsAlpha": self.supports_alpha,
            "defaultCrf": self.default_crf,
            "crfRange": list(self.crf_range) if self.crf_range else None,
        }


PRORES_PROFILES: Mapping[str, Tuple[int, str]] = MappingProxyType(
    {
        "proxy": (0, "Proxy"),
        "lt": (1, "LT"),
        "standard": (2, "Standard"),
        "hq": (3, "HQ"),
        "4444": (4, "4444"),
        "4444xq": (5, "4444 XQ"),
    }
)
DEFAULT_PRORES_PROFILE = "hq"

GIF_DEFAULT_FPS = 15


def _crf_value(profile: CodecProfile, options: EncodeOptions) -> str:
    return str(options.crf if options.crf is not None else profile.default_crf)


def _x26x_args(profile: CodecProfile, options: EncodeOptions) -> List[str]:
    args = ["-c:v", profile.encoder, "-pix_fmt", profile.pixel_format, "-preset", options.preset]
    if options.bitrate:
        args += ["-b:v", options.bitrate]
    else:
        args += ["-crf", _crf_value(profile, options)]
    if profile.id == "h265":
        args += ["-tag:v", "hvc1"]
    else:
        args += ["-movflags", "+faststart"]
    return args


def _vp8_args(profile: CodecProfile, options: EncodeOptions) -> List[str]:
    return [
        "-c:v", profile.encoder,
        "-pix_fmt", profile.pixel_format,
        "-crf", _crf_value(profile, options),
        "-b:v", options.bitrate or "5M",
        "-deadline", "good",
        "-cpu-used", "2",
    ]


def _vp9_args(profile: CodecProfile, options: EncodeOptions) -> List[str]:
    return [
        "-c:v", profile.encoder,
        "-pix_fmt", profile.pixel_format,
        "-crf", _crf_value(profile, options),
        "-b:v", "0",
        "-deadline", "good",
        "-cpu-used", "2",
        "-row-mt", "1",
    ]


def _prores_args(profile: CodecProfile, options: EncodeOptions) -> List[str]:
    # Unrecognised profile names fall back to HQ.
    level, _ = PRORES_PROFILES.get(str(options.profile or "").lower(), PRORES_PROFILES[DEFAULT_PRORES_PROFILE])
    return [
        "-c:v", profile.encoder,
        "-profile:v", str(level),
        "-pix_fmt", "yuva444p10le" if options.alpha else "yuv422p10le",
        "-vendor", "apl0",
    ]


def _gif_args(profile: CodecProfile, options: EncodeOptions) -> List[str]:
    fps = options.fps or GIF_DEFAULT_FPS
    fps_text = str(int(fps)) if float(fps).is_integer() else f"{fps:g}"
    width = options.width or -1
    height = options.height or -1
    graph = (
        f"fps={fps_text},scale={width}:{height}:flags=lanczos,split[s0][s1];"
        "[s0]palettegen=max_colors=256[p];[s1][p]paletteuse=dither=sierra2_4a"
    )
    return ["-filter_complex", graph, "-loop", str(options.loop)]


_REGISTRY: Mapping[str, CodecProfile] = MappingProxyType(
    {
        "h264": CodecProfile(
            id="h264", name="H.264 / AVC", encoder="libx264", extension="mp4",
            pixel_format="yuv420p", supports_crf=True, supports_audio=True,
            default_crf=18, crf_range=(0, 51), build_args=_x26x_args,
        ),
        "h265": CodecProfile(
            id="h265", name="H.265 / HEVC", encoder="libx265", extension="mp4",
            pixel_format="yuv420p", supports_crf=True, supports_audio=True,
            default_crf=23, crf_range=(0, 51), build_args=_x26x_args,
        ),
        "vp8": CodecProfile(
            id="vp8", name="VP8", encoder="libvpx", extension="webm",
            pixel_format="yuv420p", supports_crf=True, supports_audio=True,
            default_crf=10, crf_range=(4, 63), build_args=_vp8_args,
        ),
        "vp9": CodecProfile(
            id="vp9", name="VP9", encoder="libvpx-vp9", extension="webm",
            pixel_format="yuv420p", supports_crf=True, supports_audio=True,
            default_crf=31, crf_range=(0, 63), build_args=_vp9_args,
        ),
        "prores": CodecProfile(
            id="prores", name="Apple ProRes", encoder="prores_ks", extension="mov",
            pixel_format="yuva444p10le", supports_crf=False, supports_audio=True,
            supports_alpha=True, build_args=_prores_args,
        ),
        "gif": CodecProfile(
            id="gif", name="GIF", encoder="gif", extension="gif",
            pixel_format="rgb8", supports_crf=False, supports_audio=False,
            uses_palette=True, build_args=_gif_args,
        ),
    }
)


def codec_ids() -> List[str]:
    return list(_REGISTRY)


def get_codec(codec_id: str) -> CodecProfile:
    try:
        return _REGISTRY[codec_id]
    except (KeyError, TypeError):
        raise UnknownCodecError(
            f"Unknown codec: {codec_id!r}. Available codecs: {', '.join(_REGISTRY)}"
        ) from None


def get_args(codec_id: str, options: Optional[EncodeOptions] = None) -> List[str]:
    """Return the ffmpeg video encoding arguments for ``codec_id``."""
    return get_codec(codec_id).args(options)


def get_audio_args(options: Optional[AudioOptions] = None) -> List[str]:
    opts = options or AudioOptions()
    return [
        "-c:a", opts.codec,
        "-b:a", opts.bitrate,
        "-ar", str(opts.sample_rate),
        "-ac", str(opts.channels),
    ]


def get_extension(codec_id: str) -> str:
    return get_codec(codec_id).extension


def list_codecs() -> List[Dict[str, Any]]:
    return [profile.to_dict() for profile in _REGISTRY.values()]


def clamp_crf(codec_id: str, crf: int) -> Tuple[bool, int]:
    """Return ``(valid, clamped)`` for ``crf`` against the codec's range."""
    profile = get_codec(codec_id)
    if not profile.supports_crf or profile.crf_range is None:
        return False, crf
    low, high = profile.crf_range
    return low <= crf <= high, max(low, min(high, crf))
