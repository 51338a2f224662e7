"""Errors raised by the upload gate, prober and conversion service."""


class ConverterError(Exception):
    """Base class for all converter errors."""


class ValidationError(ConverterError):
    """Input rejected before any external process ran. Message is safe to show to users."""


class InputNotFound(ValidationError, FileNotFoundError):
    pass


class UnsupportedFormat(ValidationError):
    pass


class NoVideoStream(ValidationError):
    pass


class EmptyFile(ValidationError):
    pass


class TooLarge(ValidationError):
    pass


class InvalidExtension(ValidationError):
    pass


class InvalidFileName(ValidationError):
    pass


class StorageFailure(ConverterError):
    """An accepted upload could not be written to the upload directory."""


class AlreadyDisposed(ConverterError):
    pass


class ConversionCancelled(ConverterError):
    pass


class TranscoderFailure(ConverterError):
    """ffmpeg/ffprobe could not be run or produced unusable output."""
