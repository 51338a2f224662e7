"""Conversion data models."""
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Optional


class TaskStatus(str, Enum):
    PENDING = "pending"
    CONVERTING = "converting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CodecPair:
    video_codec: str
    audio_codec: str


@dataclass(frozen=True)
class MediaInfo:
    """Stream metadata read from a probe. Recomputed on every call."""

    duration: timedelta
    has_video: bool
    format_name: Optional[str] = None
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    size: Optional[int] = None


@dataclass(frozen=True)
class ConversionResult:
    output_path: Path
    duration: timedelta
    output_format: str
    codecs: CodecPair
    # False when ffmpeg exited non-zero without raising (soft failure)
    succeeded: bool = True


@dataclass(frozen=True)
class StoredUpload:
    file_name: str
    original_name: str
    size: int
    content_type: Optional[str]
    path: Path


class ConversionTask:
    """In-memory state of a background conversion for progress polling."""

    def __init__(self, task_id: str, file_name: str, output_format: str):
        self.task_id = task_id
        self.file_name = file_name
        self.output_format = output_format
        self.status = TaskStatus.PENDING
        self.progress: float = 0.0
        self.error: Optional[str] = None
        self.converted_file: Optional[str] = None
        self.duration_seconds: Optional[float] = None
        self.succeeded: Optional[bool] = None

    @property
    def finished(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)
