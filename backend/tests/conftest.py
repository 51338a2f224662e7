"""Shared test fixtures for the video converter."""
import asyncio
import os
import stat
from pathlib import Path
from typing import Optional

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from video_converter import config as app_config  # noqa: E402
from video_converter import db, jobs  # noqa: E402
from video_converter.errors import ConversionCancelled  # noqa: E402


def probe_metadata(duration: Optional[float] = 65.0, video: bool = True, audio: bool = True) -> dict:
    """ffprobe-shaped metadata for a typical h264/aac file."""
    streams = []
    if video:
        streams.append({"index": 0, "codec_type": "video", "codec_name": "h264", "width": 1280, "height": 720})
    if audio:
        streams.append({"index": 1, "codec_type": "audio", "codec_name": "aac"})
    fmt = {"format_name": "mov,mp4,m4a,3gp,3g2,mj2", "size": "2048"}
    if duration is not None:
        fmt["duration"] = f"{duration:.6f}"
    return {"format": fmt, "streams": streams}


class FakeTranscoder:
    """In-process stand-in for ffmpeg/ffprobe that records how it was called."""

    def __init__(
        self,
        metadata: Optional[dict] = None,
        result: bool = True,
        progress=(0.0, 25.0, 50.0, 75.0, 100.0),
        error: Optional[BaseException] = None,
        hold: Optional[asyncio.Event] = None,
        analyze_hold: Optional[asyncio.Event] = None,
    ):
        self.metadata = probe_metadata() if metadata is None else metadata
        self.result = result
        self.progress = progress
        self.error = error
        self.hold = hold
        self.analyze_hold = analyze_hold
        self.analyze_finished = False
        self.analyze_calls: list[Path] = []
        self.transcode_calls: list[dict] = []

    async def analyze(self, path):
        self.analyze_calls.append(Path(path))
        if self.analyze_hold is not None:
            await self.analyze_hold.wait()
        self.analyze_finished = True
        return self.metadata

    async def transcode(
        self,
        input_path,
        output_path,
        video_codec,
        audio_codec,
        video_bitrate,
        audio_bitrate,
        overwrite=True,
        *,
        duration=None,
        on_progress=None,
        cancel_event=None,
    ):
        self.transcode_calls.append({
            "input_path": Path(input_path),
            "output_path": Path(output_path),
            "video_codec": video_codec,
            "audio_codec": audio_codec,
            "video_bitrate": video_bitrate,
            "audio_bitrate": audio_bitrate,
            "overwrite": overwrite,
            "duration": duration,
        })
        if self.error is not None:
            raise self.error
        for percent in self.progress:
            if on_progress is not None:
                on_progress(percent)
            await asyncio.sleep(0)
        if self.hold is not None:
            while not self.hold.is_set():
                if cancel_event is not None and cancel_event.is_set():
                    raise ConversionCancelled("Conversion cancelled")
                await asyncio.sleep(0.01)
        Path(output_path).write_bytes(b"converted:" + Path(input_path).read_bytes())
        return self.result


@pytest.fixture(autouse=True)
def memory_db(monkeypatch):
    """Fresh in-memory database for every test."""
    monkeypatch.setattr(app_config, "DATABASE_URL", "sqlite:///:memory:")
    db.reset_engine()
    db.init_db()
    yield
    db.reset_engine()


@pytest.fixture(autouse=True)
def clear_jobs():
    jobs.clear_jobs()
    yield
    jobs.clear_jobs()


@pytest.fixture
def upload_dir(tmp_path, monkeypatch) -> Path:
    path = tmp_path / "uploads"
    monkeypatch.setattr(app_config, "UPLOAD_DIR", path)
    return path


@pytest.fixture
def fake_transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def sample_video(tmp_path) -> Path:
    path = tmp_path / "sample.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x01" * 64)
    return path


@pytest.fixture
def make_script(tmp_path):
    """Write an executable /bin/sh script and return its path."""

    def _make(name: str, body: str) -> str:
        path = tmp_path / name
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make
