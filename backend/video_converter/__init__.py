"""Video upload and conversion service built around ffmpeg."""

__version__ = "1.0.0"
