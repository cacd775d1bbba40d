from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from render_pipeline import audio
from render_pipeline.audio import AudioTrack, atempo_chain, prepare_audio
from render_pipeline.errors import RenderError


def test_atempo_chain_stays_within_filter_limits() -> None:
    assert atempo_chain(1.0) == []
    assert atempo_chain(1.5) == ["atempo=1.5"]
    assert atempo_chain(4.0) == ["atempo=2", "atempo=2"]
    assert atempo_chain(3.0) == ["atempo=2", "atempo=1.5"]
    assert atempo_chain(0.25) == ["atempo=0.5", "atempo=0.5"]
    with pytest.raises(RenderError):
        atempo_chain(0)


def test_track_from_dict_defaults() -> None:
    track = AudioTrack.from_dict({"src": "/a.mp3", "volume": 0})
    assert track.volume == 0
    assert track.playback_rate == 1
    assert track.end_frame is None


def test_prepare_audio_mixes_overlapping_tracks(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    music = tmp_path / "music.mp3"
    music.write_bytes(b"id3")
    voice = tmp_path / "voice.wav"
    voice.write_bytes(b"riff")
    calls = []
    monkeypatch.setattr(audio, "run_ffmpeg", lambda args, **kwargs: calls.append(list(args)))

    tracks = [
        {"src": str(music), "startFrame": 0, "volume": 0.5, "loop": True},
        {"src": str(voice), "startFrame": 60, "endFrame": 90, "playbackRate": 2},
        {"src": str(tmp_path / "late.mp3"), "startFrame": 500},
    ]
    result = prepare_audio(tracks, fps=30, start_frame=30, end_frame=89, work_dir=tmp_path / "work")

    assert result == tmp_path / "work" / "audio-mix.m4a"
    args = calls[0]
    assert args.count("-i") == 2
    assert args[args.index("-stream_loop") + 1] == "-1"
    graph = args[args.index("-filter_complex") + 1]
    assert "[0:a]atrim=start=1.000000:end=3.000000" in graph
    assert "volume=0.5" in graph
    assert "[1:a]atrim=start=0.000000:end=2.000000" in graph
    assert "atempo=2" in graph
    assert "adelay=1000|1000" in graph
    assert "amix=inputs=2" in graph
    assert args[args.index("-t") + 1] == "2.000000"


def test_prepare_audio_returns_none_when_silent(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(audio, "run_ffmpeg", lambda args, **kwargs: pytest.fail("ffmpeg should not run"))
    tracks = [{"src": "/never/downloaded.mp3", "startFrame": 100, "endFrame": 120}]
    assert prepare_audio(tracks, fps=30, start_frame=0, end_frame=50, work_dir=tmp_path) is None
    assert prepare_audio([], fps=30, start_frame=0, end_frame=50, work_dir=tmp_path) is None


def test_missing_local_audio_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(audio, "run_ffmpeg", lambda args, **kwargs: None)
    with pytest.raises(RenderError, match="Audio file not found"):
        prepare_audio([{"src": str(tmp_path / "gone.mp3")}], fps=30, start_frame=0, end_frame=10, work_dir=tmp_path)
