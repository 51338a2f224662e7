from .models import CodecPair, ConversionResult, ConversionTask, MediaInfo, StoredUpload, TaskStatus
from .service import ConversionService

__all__ = [
    "CodecPair",
    "ConversionResult",
    "ConversionService",
    "ConversionTask",
    "MediaInfo",
    "StoredUpload",
    "TaskStatus",
]
