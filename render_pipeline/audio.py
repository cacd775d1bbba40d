"""Audio collection, mixing and muxing for rendered videos.

Compositions register their audio tracks on the render surface. For a frame
range ``[start, end]`` every track is trimmed to the part that overlaps the
range, time-stretched for its playback rate, delayed to its position and
mixed into one AAC file that the encoder (or the mux step) takes as a
second input.
"""
from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urljoin, urlparse

import requests

from logging_utils import get_logger

from .codec_registry import AudioOptions, get_audio_args
from .errors import RenderError
from .runner import run_ffmpeg

logger = get_logger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 60
CHUNK_SIZE = 1 << 16


@dataclass
class AudioTrack:
    src: str
    start_frame: int = 0
    end_frame: Optional[int] = None
    volume: float = 1.0
    playback_rate: float = 1.0
    loop: bool = False

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AudioTrack":
        end = payload.get("endFrame")
        return cls(
            src=str(payload["src"]),
            start_frame=int(payload.get("startFrame") or 0),
            end_frame=int(end) if end is not None else None,
            volume=float(payload["volume"] if payload.get("volume") is not None else 1),
            playback_rate=float(payload.get("playbackRate") or 1),
            loop=bool(payload.get("loop", False)),
        )


def atempo_chain(rate: float) -> List[str]:
    """Express ``rate`` as ``atempo`` filters, each within ffmpeg's 0.5-2.0 range."""
    if rate <= 0:
        raise RenderError(f"Audio playback rate must be positive, got {rate}")
    filters: List[str] = []
    while rate > 2.0:
        filters.append(f"atempo={2.0:g}")
        rate /= 2.0
    while rate < 0.5:
        filters.append(f"atempo={0.5:g}")
        rate /= 0.5
    if rate != 1.0:
        filters.append(f"atempo={rate:g}")
    return filters


def download_audio(
    src: str,
    dest_dir: Path,
    index: int,
    *,
    base_url: Optional[str] = None,
) -> Path:
    """Fetch (http/https) or copy (local path) one track into ``dest_dir``."""
    dest_dir.mkdir(parents=True, exist_ok=True)
    url = src
    if base_url and not urlparse(src).scheme and not Path(src).exists():
        url = urljoin(base_url.rstrip("/") + "/", src.lstrip("/"))
    suffix = Path(urlparse(url).path).suffix or ".mp3"
    local_path = dest_dir / f"audio-{index}{suffix}"

    if url.startswith(("http://", "https://")):
        logger.debug("Downloading audio %s", url)
        try:
            with requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT_SECONDS) as resp:
                resp.raise_for_status()
                with local_path.open("wb") as fh:
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        fh.write(chunk)
        except requests.RequestException as exc:
            raise RenderError(f"Failed to download audio: {src} ({exc})") from exc
        return local_path

    source = Path(src)
    if not source.exists():
        raise RenderError(f"Audio file not found: {src}")
    shutil.copyfile(source, local_path)
    return local_path


def _track_filter(
    index: int,
    track: AudioTrack,
    *,
    fps: float,
    start_frame: int,
    end_frame: int,
) -> Optional[str]:
    track_end = track.end_frame if track.end_frame is not None else end_frame + 1
    first = max(start_frame, track.start_frame)
    last = min(end_frame + 1, track_end)
    if last <= first:
        return None
    offset = (first - track.start_frame) / fps * track.playback_rate
    length = (last - first) / fps * track.playback_rate
    delay_ms = round((first - start_frame) / fps * 1000)

    chain = [f"atrim=start={offset:.6f}:end={offset + length:.6f}", "asetpts=PTS-STARTPTS"]
    chain += atempo_chain(track.playback_rate)
    chain.append(f"adelay={delay_ms}|{delay_ms}")
    chain.append(f"volume={track.volume:g}")
    return f"[{index}:a]{','.join(chain)}[a{index}]"


def prepare_audio(
    tracks: Iterable[Dict[str, Any]],
    *,
    fps: float,
    start_frame: int,
    end_frame: int,
    work_dir: Path,
    base_url: Optional[str] = None,
    options: Optional[AudioOptions] = None,
    ffmpeg_path: str = "ffmpeg",
) -> Optional[Path]:
    """Mix the tracks audible in ``[start_frame, end_frame]`` into one file.

    Returns ``None`` when nothing is audible in the range.
    """
    parsed = [AudioTrack.from_dict(t) for t in tracks]
    inputs: List[str] = []
    parts: List[str] = []
    for track in parsed:
        part = _track_filter(
            len(parts), track, fps=fps, start_frame=start_frame, end_frame=end_frame
        )
        if part is None:
            continue
        local = download_audio(track.src, work_dir, len(parts), base_url=base_url)
        if track.loop:
            inputs += ["-stream_loop", "-1"]
        inputs += ["-i", str(local)]
        parts.append(part)
    if not parts:
        logger.debug("No audio audible in frames %d-%d", start_frame, end_frame)
        return None

    count = len(parts)
    labels = "".join(f"[a{i}]" for i in range(count))
    if count == 1:
        parts.append(f"{labels}apad[out]")
    else:
        parts.append(f"{labels}amix=inputs={count}:duration=longest,apad[out]")
    duration = (end_frame - start_frame + 1) / fps

    output = work_dir / "audio-mix.m4a"
    args = inputs + [
        "-filter_complex", ";".join(parts),
        "-map", "[out]",
        "-t", f"{duration:.6f}",
        *get_audio_args(options),
        "-y", str(output),
    ]
    logger.info("Mixing %d audio track(s) for frames %d-%d", count, start_frame, end_frame)
    run_ffmpeg(args, ffmpeg_path=ffmpeg_path)
    return output


def mux_audio(
    video_path: Path,
    audio_path: Path,
    output_path: Path,
    *,
    options: Optional[AudioOptions] = None,
    ffmpeg_path: str = "ffmpeg",
) -> Path:
    """Attach ``audio_path`` to ``video_path`` without re-encoding the video."""
    args = [
        "-i", str(video_path),
        "-i", str(audio_path),
        "-c:v", "copy",
        *get_audio_args(options),
        "-map", "0:v:0",
        "-map", "1:a:0",
        "-shortest",
        "-y", str(output_path),
    ]
    run_ffmpeg(args, ffmpeg_path=ffmpeg_path)
    return output_path
