"""Output format policy: which containers we produce and with which codecs."""
from typing import Optional

from video_converter.conversion.models import CodecPair
from video_converter.errors import UnsupportedFormat

# Output container -> codec pair. Single source of truth for conversion parameters.
FORMAT_CODECS: dict[str, CodecPair] = {
    "mp4": CodecPair("h264", "aac"),
    "webm": CodecPair("vp9", "vorbis"),
    "avi": CodecPair("mpeg4", "mp3"),
    "mov": CodecPair("h264", "aac"),
    "mkv": CodecPair("h264", "aac"),
}
SUPPORTED_OUTPUT_FORMATS = tuple(FORMAT_CODECS)

# Upload acceptance is a different list from what we can produce; keep them apart.
ALLOWED_UPLOAD_EXTENSIONS = (".mp4", ".avi", ".mov", ".mkv", ".wmv")

VIDEO_BITRATE = 2_000_000
AUDIO_BITRATE = 128_000

MAX_UPLOAD_SIZE_BYTES = 500 * 1024 * 1024


def normalize_format(fmt: Optional[str]) -> str:
    """'.MP4' -> 'mp4'. None and blanks give ''."""
    if not fmt:
        return ""
    return fmt.strip().lower().lstrip(".")


def is_supported(fmt: Optional[str]) -> bool:
    return normalize_format(fmt) in FORMAT_CODECS


def codecs_for(fmt: Optional[str]) -> CodecPair:
    pair = FORMAT_CODECS.get(normalize_format(fmt))
    if pair is None:
        raise UnsupportedFormat(
            f"Output format '{fmt}' is not supported. "
            f"Supported formats: {', '.join(SUPPORTED_OUTPUT_FORMATS)}"
        )
    return pair
