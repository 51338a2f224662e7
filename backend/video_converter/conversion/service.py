"""Video conversion service: validation, probing, codec selection and transcoder invocation."""
import asyncio
import logging
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

from video_converter import config as app_config
from video_converter.conversion import formats
from video_converter.conversion.models import ConversionResult, MediaInfo
from video_converter.conversion.prober import MediaProber
from video_converter.conversion.transcoder import FFmpegTranscoder, Transcoder, raise_if_cancelled, wait_or_cancel
from video_converter.errors import (
    AlreadyDisposed,
    ConversionCancelled,
    InputNotFound,
    NoVideoStream,
    TranscoderFailure,
    UnsupportedFormat,
)

logger = logging.getLogger("converter.service")


class ConversionService:
    """Converts one video per call. Calls are independent; each runs its own transcoder process.

    The service must be closed when no longer needed (or used as a context
    manager); after that every operation raises AlreadyDisposed.

    strict: when True, a transcode that finishes with a non-success result
    raises TranscoderFailure. When False the output path is still returned and
    ConversionResult.succeeded is False, so a returned path alone does not
    prove the file is playable.
    """

    def __init__(
        self,
        transcoder: Optional[Transcoder] = None,
        prober: Optional[MediaProber] = None,
        strict: Optional[bool] = None,
    ):
        self._transcoder = transcoder or FFmpegTranscoder(
            app_config.FFMPEG_BINARY, app_config.FFPROBE_BINARY, app_config.PROBE_TIMEOUT
        )
        self._prober = prober or MediaProber(self._transcoder)
        self.strict = app_config.STRICT_TRANSCODE if strict is None else strict
        self._disposed = False
        logger.info("ConversionService initialized (strict=%s)", self.strict)

    @property
    def closed(self) -> bool:
        return self._disposed

    @property
    def supported_formats(self) -> tuple[str, ...]:
        return formats.SUPPORTED_OUTPUT_FORMATS

    @staticmethod
    def is_format_supported(fmt: Optional[str]) -> bool:
        return formats.is_supported(fmt)

    def _check_open(self) -> None:
        if self._disposed:
            raise AlreadyDisposed("ConversionService has been closed")

    async def probe(self, path: Path) -> MediaInfo:
        self._check_open()
        try:
            return await self._prober.probe(Path(path))
        except InputNotFound:
            logger.warning("Probe requested for non-existent file: %s", path)
            raise
        except Exception as e:
            logger.exception("Error probing %s: %s", path, e)
            raise

    async def get_duration(self, path: Path) -> timedelta:
        info = await self.probe(path)
        logger.info("Retrieved video duration for %s: %s", Path(path).name, info.duration)
        return info.duration

    async def convert(
        self,
        input_path: Path,
        output_format: str,
        on_progress: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ConversionResult:
        """Convert input_path to output_format next to the input file.

        The output path is the input path with its extension replaced; an
        existing file there is overwritten. cancel_event is checked before
        probing and races both the probe and the transcode.

        Raises:
            AlreadyDisposed, InputNotFound, UnsupportedFormat, NoVideoStream,
            ConversionCancelled, TranscoderFailure (and anything else the
            transcoder raises, unchanged).
        """
        self._check_open()
        input_path = Path(input_path)
        if not input_path.is_file():
            logger.warning("Conversion requested for non-existent file: %s", input_path)
            raise InputNotFound(f"Input file not found: {input_path}")

        fmt = formats.normalize_format(output_format)
        try:
            codecs = formats.codecs_for(fmt)
        except UnsupportedFormat:
            logger.warning("Invalid output format attempted: %s", output_format)
            raise

        output_path = input_path.with_suffix(f".{fmt}")
        logger.info("Starting video conversion %s -> %s", input_path.name, output_path.name)

        try:
            raise_if_cancelled(cancel_event)
            info = await wait_or_cancel(self._prober.probe(input_path), cancel_event)
            if not info.has_video:
                logger.warning("No video stream found in %s", input_path.name)
                raise NoVideoStream("No video stream found in the input file")
            logger.info("Video duration for %s: %s", input_path.name, info.duration)

            raise_if_cancelled(cancel_event)

            succeeded = await self._transcoder.transcode(
                input_path,
                output_path,
                codecs.video_codec,
                codecs.audio_codec,
                formats.VIDEO_BITRATE,
                formats.AUDIO_BITRATE,
                True,
                duration=info.duration.total_seconds(),
                on_progress=on_progress,
                cancel_event=cancel_event,
            )
        except NoVideoStream:
            raise
        except ConversionCancelled:
            logger.info("Video conversion of %s cancelled", input_path.name)
            raise
        except Exception as e:
            logger.exception("Error during video conversion of %s: %s", input_path, e)
            raise

        if succeeded:
            logger.info("Video conversion completed successfully: %s", output_path.name)
        else:
            logger.warning("Video conversion was not completed successfully: %s", output_path.name)
            if self.strict:
                raise TranscoderFailure(f"Transcoder reported failure converting {input_path.name} to {fmt}")

        return ConversionResult(
            output_path=output_path,
            duration=info.duration,
            output_format=fmt,
            codecs=codecs,
            succeeded=succeeded,
        )

    def close(self) -> None:
        if not self._disposed:
            self._disposed = True
            logger.info("ConversionService closed")

    def __enter__(self) -> "ConversionService":
        self._check_open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    async def __aenter__(self) -> "ConversionService":
        self._check_open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


# Singleton
_conversion_service: Optional[ConversionService] = None


def get_conversion_service() -> ConversionService:
    global _conversion_service
    if _conversion_service is None or _conversion_service.closed:
        _conversion_service = ConversionService()
    return _conversion_service


def close_conversion_service() -> None:
    global _conversion_service
    if _conversion_service is not None:
        _conversion_service.close()
        _conversion_service = None
