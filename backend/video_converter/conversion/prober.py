"""Duration and stream detection on top of the transcoder's analysis mode."""
import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

from video_converter.conversion.models import MediaInfo
from video_converter.conversion.transcoder import Transcoder
from video_converter.errors import InputNotFound

logger = logging.getLogger("converter.prober")


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _is_picture(stream: dict) -> bool:
    # Cover art is exposed by ffprobe as a single-frame video stream
    return bool((stream.get("disposition") or {}).get("attached_pic"))


def parse_media_info(metadata: dict) -> MediaInfo:
    """Build MediaInfo from ffprobe JSON output."""
    fmt = metadata.get("format") or {}
    streams = metadata.get("streams") or []

    seconds = _to_float(fmt.get("duration"))
    if seconds is None:
        stream_durations = [d for d in (_to_float(s.get("duration")) for s in streams) if d is not None]
        seconds = max(stream_durations) if stream_durations else 0.0
    seconds = max(0.0, seconds)

    video = next(
        (s for s in streams if s.get("codec_type") == "video" and not _is_picture(s)),
        None,
    )
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

    return MediaInfo(
        duration=timedelta(seconds=seconds),
        has_video=video is not None,
        format_name=fmt.get("format_name"),
        video_codec=video.get("codec_name") if video else None,
        audio_codec=audio.get("codec_name") if audio else None,
        width=_to_int(video.get("width")) if video else None,
        height=_to_int(video.get("height")) if video else None,
        size=_to_int(fmt.get("size")),
    )


class MediaProber:
    def __init__(self, transcoder: Transcoder):
        self.transcoder = transcoder

    async def probe(self, path: Path) -> MediaInfo:
        """Read stream metadata. Does not judge whether a video stream is required."""
        path = Path(path)
        if not path.is_file():
            raise InputNotFound(f"Input file not found: {path}")
        metadata = await self.transcoder.analyze(path)
        info = parse_media_info(metadata)
        logger.debug(
            "Probed %s: duration=%.2fs video=%s (%s) audio=%s",
            path.name, info.duration.total_seconds(), info.has_video, info.video_codec, info.audio_codec,
        )
        return info
