"""Configuration loader for the render pipeline."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from render_pipeline.codec_registry import AudioOptions

try:
    import yaml  # type: ignore
except ModuleNotFoundError as exc:  # pragma: no cover - import guard
    raise RuntimeError(
        "PyYAML is required. Please install it with `pip install pyyaml`."
    ) from exc

DEFAULT_CONFIG_FILE = "config.yaml"


@dataclass
class RenderSettings:
    """Typed view of the ``render``/``browser``/``server`` sections."""

    ffmpeg_path: str = "ffmpeg"
    frontend_url: str = "http://localhost:3000"
    allow_remote: bool = False
    source: str = "browser"
    capture_timeout_seconds: float = 30.0
    delay_retries: int = 2
    settle_seconds: float = 0.016
    headless: bool = True
    browser_executable: Optional[str] = None
    concurrency: int = 4
    codec: str = "h264"
    crf: Optional[int] = None
    audio: AudioOptions = field(default_factory=AudioOptions)
    host: str = "127.0.0.1"
    port: int = 4000
    public_url: Optional[str] = None
    temp_dir: Optional[Path] = None

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "RenderSettings":
        render = raw.get("render", {}) or {}
        browser = raw.get("browser", {}) or {}
        server = raw.get("server", {}) or {}
        audio = render.get("audio", {}) or {}
        defaults = cls()
        return cls(
            ffmpeg_path=str(render.get("ffmpeg_path") or defaults.ffmpeg_path),
            frontend_url=str(render.get("frontend_url") or defaults.frontend_url),
            allow_remote=bool(render.get("allow_remote", defaults.allow_remote)),
            source=str(render.get("source") or defaults.source),
            capture_timeout_seconds=float(browser.get("timeout_seconds", defaults.capture_timeout_seconds)),
            delay_retries=int(browser.get("delay_retries", defaults.delay_retries)),
            settle_seconds=float(browser.get("settle_ms", defaults.settle_seconds * 1000)) / 1000,
            headless=bool(browser.get("headless", defaults.headless)),
            browser_executable=browser.get("executable_path") or None,
            concurrency=int(render.get("concurrency", defaults.concurrency)),
            codec=str(render.get("codec") or defaults.codec),
            crf=render.get("crf"),
            audio=AudioOptions(
                codec=str(audio.get("codec", "aac")),
                bitrate=str(audio.get("bitrate", "320k")),
                sample_rate=int(audio.get("sample_rate", 48000)),
                channels=int(audio.get("channels", 2)),
            ),
            host=str(server.get("host") or defaults.host),
            port=int(server.get("port", defaults.port)),
            public_url=server.get("public_url") or None,
        )


@dataclass
class AppConfig:
    """Wrapper around raw configuration with resolved paths."""

    raw: Dict[str, Any]
    config_path: Optional[Path]
    project_root: Path
    output_dir: Path
    temp_dir: Path
    log_file: Optional[Path]
    render: RenderSettings

    @property
    def logging_level(self) -> str:
        level = (
            self.raw.get("logging", {}).get("level")
            or self.raw.get("logging", {}).get("LEVEL")
            or "INFO"
        )
        return str(level).upper()

    def to_debug_dict(self) -> Dict[str, Any]:
        return {
            "config_path": str(self.config_path) if self.config_path else None,
            "output_dir": str(self.output_dir),
            "temp_dir": str(self.temp_dir),
            "log_file": str(self.log_file) if self.log_file else None,
            "frontend_url": self.render.frontend_url,
            "ffmpeg_path": self.render.ffmpeg_path,
            "source": self.render.source,
        }

    def dumps(self) -> str:
        """Return a JSON string for diagnostics."""
        return json.dumps(self.to_debug_dict(), ensure_ascii=False, indent=2)


def _apply_env(raw: Dict[str, Any], environ: Mapping[str, str]) -> None:
    render = raw.setdefault("render", {})
    if environ.get("FRAMELY_FRONTEND_URL"):
        render["frontend_url"] = environ["FRAMELY_FRONTEND_URL"]
    if environ.get("FRAMELY_FFMPEG"):
        render["ffmpeg_path"] = environ["FRAMELY_FFMPEG"]
    if environ.get("FRAMELY_OUTPUT_DIR"):
        raw.setdefault("output", {})["directory"] = environ["FRAMELY_OUTPUT_DIR"]
    if environ.get("PORT"):
        raw.setdefault("server", {})["port"] = environ["PORT"]


def load_config(
    path: Path | str | None = None,
    project_root: Path | None = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Load YAML config, apply environment overrides and resolve directories.

    Without ``path`` the default ``config.yaml`` is read when present and
    built-in defaults are used otherwise. An explicit path must exist.
    """
    if path is None:
        candidate = (project_root or Path.cwd()) / DEFAULT_CONFIG_FILE
        config_path: Optional[Path] = candidate.resolve() if candidate.exists() else None
    else:
        config_path = Path(path).expanduser().resolve()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

    raw: Dict[str, Any] = {}
    if config_path is not None:
        with config_path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    _apply_env(raw, os.environ if environ is None else environ)

    if project_root:
        root = project_root.resolve()
    elif config_path is not None:
        root = config_path.parent
    else:
        root = Path.cwd()

    output_dir = (root / raw.get("output", {}).get("directory", "outputs")).resolve()
    temp_dir = (root / raw.get("output", {}).get("temp_directory", "temp")).resolve()
    log_file_name = raw.get("logging", {}).get("file")
    log_file = (root / log_file_name).resolve() if log_file_name else None
    render = RenderSettings.from_raw(raw)
    render.temp_dir = temp_dir

    return AppConfig(
        raw=raw,
        config_path=config_path,
        project_root=root,
        output_dir=output_dir,
        temp_dir=temp_dir,
        log_file=log_file,
        render=render,
    )
