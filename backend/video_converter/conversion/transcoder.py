"""ffmpeg/ffprobe transcoder running as asyncio subprocesses, with progress and cancellation."""
import asyncio
import json
import logging
from collections import deque
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, TypeVar

from video_converter.errors import ConversionCancelled, TranscoderFailure

logger = logging.getLogger("converter.transcoder")

ProgressCallback = Callable[[float], None]

# Logical codec name -> ffmpeg encoder
ENCODERS = {
    "h264": "libx264",
    "vp9": "libvpx-vp9",
    "mpeg4": "mpeg4",
    "aac": "aac",
    "vorbis": "libvorbis",
    "mp3": "libmp3lame",
}

STDERR_TAIL_LINES = 20
# ffmpeg echoes input metadata to stderr; tags can make single lines very long
MAX_LINE_BYTES = 64 * 1024
READ_CHUNK_BYTES = 64 * 1024

T = TypeVar("T")


class Transcoder(Protocol):
    """What the conversion service needs from an external transcoding engine."""

    async def analyze(self, path: Path) -> dict:
        """Return container/stream metadata in ffprobe JSON shape ({"format": ..., "streams": [...]}).

        Raises:
            TranscoderFailure: If the file cannot be analyzed.
        """
        ...

    async def transcode(
        self,
        input_path: Path,
        output_path: Path,
        video_codec: str,
        audio_codec: str,
        video_bitrate: int,
        audio_bitrate: int,
        overwrite: bool = True,
        *,
        duration: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        """Transcode input_path to output_path. Returns False if the engine reported failure.

        Raises:
            ConversionCancelled: If cancel_event was set before the engine finished.
            TranscoderFailure: If the engine could not be started.
        """
        ...


def parse_progress_line(line: str) -> Optional[float]:
    """Output time in seconds from one line of `ffmpeg -progress` output, or None."""
    key, sep, value = line.strip().partition("=")
    if not sep:
        return None
    # ffmpeg reports out_time_ms in microseconds as well
    if key.strip() not in ("out_time_us", "out_time_ms"):
        return None
    try:
        return int(value.strip()) / 1_000_000
    except ValueError:
        return None


class ProgressReporter:
    """Turns output timestamps into 0-100 percentages that never go backwards."""

    def __init__(self, duration: Optional[float], callback: Optional[ProgressCallback]):
        self.duration = duration
        self.callback = callback
        self.last: Optional[float] = None

    def _emit(self, percent: float) -> None:
        percent = max(0.0, min(100.0, percent))
        if self.last is not None and percent < self.last:
            return
        self.last = percent
        self.callback(percent)

    def update(self, out_time: float) -> None:
        if self.callback is None or not self.duration or self.duration <= 0:
            return
        self._emit(out_time / self.duration * 100.0)

    def finish(self) -> None:
        if self.callback is not None:
            self._emit(100.0)


async def _reap(process: asyncio.subprocess.Process) -> None:
    """Kill the child if it is still running and wait for it."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()


def raise_if_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise ConversionCancelled("Conversion cancelled")


async def wait_or_cancel(work: Awaitable[T], cancel_event: Optional[asyncio.Event]) -> T:
    """Await work, or cancel it and raise ConversionCancelled once cancel_event is set."""
    work = asyncio.ensure_future(work)
    if cancel_event is None:
        return await work
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()
    if work not in done:
        work.cancel()
        await asyncio.wait({work})
        raise ConversionCancelled("Conversion cancelled")
    return work.result()


async def iter_lines(stream: asyncio.StreamReader, max_line: int = MAX_LINE_BYTES) -> AsyncIterator[bytes]:
    """Yield newline-separated lines from stream. Lines longer than max_line are dropped."""
    buffer = b""
    skipping = False
    while chunk := await stream.read(READ_CHUNK_BYTES):
        buffer += chunk
        *lines, buffer = buffer.split(b"\n")
        for line in lines:
            if skipping:
                # tail of a line already dropped
                skipping = False
                continue
            if len(line) > max_line:
                continue
            yield line
        if len(buffer) > max_line:
            buffer = b""
            skipping = True
    if buffer and not skipping:
        yield buffer


class FFmpegTranscoder:
    """Transcoder backed by the ffmpeg and ffprobe command line tools."""

    def __init__(self, ffmpeg_binary: str = "ffmpeg", ffprobe_binary: str = "ffprobe", probe_timeout: float = 30.0):
        self.ffmpeg_binary = ffmpeg_binary
        self.ffprobe_binary = ffprobe_binary
        self.probe_timeout = probe_timeout

    @staticmethod
    def encoder(codec: str) -> str:
        return ENCODERS.get(codec, codec)

    def build_command(
        self,
        input_path: Path,
        output_path: Path,
        video_codec: str,
        audio_codec: str,
        video_bitrate: int,
        audio_bitrate: int,
        overwrite: bool = True,
    ) -> list[str]:
        return [
            self.ffmpeg_binary, "-hide_banner", "-nostdin",
            "-y" if overwrite else "-n",
            "-i", str(input_path),
            "-c:v", self.encoder(video_codec), "-b:v", str(video_bitrate),
            "-c:a", self.encoder(audio_codec), "-b:a", str(audio_bitrate),
            "-progress", "pipe:1", "-nostats",
            str(output_path),
        ]

    @staticmethod
    async def _spawn(cmd: list[str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            logger.error("%s not found. Install ffmpeg for video conversion.", cmd[0])
            raise TranscoderFailure(f"{cmd[0]} not installed") from e
        except OSError as e:
            raise TranscoderFailure(f"Could not start {cmd[0]}: {e}") from e

    async def analyze(self, path: Path) -> dict:
        cmd = [
            self.ffprobe_binary,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        process = await self._spawn(cmd)
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.probe_timeout)
        except asyncio.TimeoutError as e:
            raise TranscoderFailure(f"ffprobe timed out after {self.probe_timeout:g}s on {path}") from e
        finally:
            await _reap(process)
        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise TranscoderFailure(f"ffprobe failed on {path} (exit {process.returncode}): {message}")
        try:
            return json.loads(stdout.decode("utf-8", errors="replace") or "{}")
        except json.JSONDecodeError as e:
            raise TranscoderFailure(f"ffprobe returned invalid JSON for {path}") from e

    @staticmethod
    async def _read_progress(stream: asyncio.StreamReader, reporter: ProgressReporter) -> None:
        async for raw in iter_lines(stream):
            line = raw.decode("utf-8", errors="replace")
            if line.startswith("progress=end"):
                reporter.finish()
                continue
            out_time = parse_progress_line(line)
            if out_time is not None:
                reporter.update(out_time)

    @staticmethod
    async def _drain(stream: asyncio.StreamReader, tail: deque) -> None:
        async for raw in iter_lines(stream):
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                tail.append(line)

    async def transcode(
        self,
        input_path: Path,
        output_path: Path,
        video_codec: str,
        audio_codec: str,
        video_bitrate: int,
        audio_bitrate: int,
        overwrite: bool = True,
        *,
        duration: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        raise_if_cancelled(cancel_event)
        cmd = self.build_command(
            input_path, output_path, video_codec, audio_codec, video_bitrate, audio_bitrate, overwrite
        )
        logger.debug("Running %s", " ".join(cmd))
        reporter = ProgressReporter(duration, on_progress)
        stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        process = await self._spawn(cmd)
        readers = [
            asyncio.ensure_future(self._read_progress(process.stdout, reporter)),
            asyncio.ensure_future(self._drain(process.stderr, stderr_tail)),
        ]
        try:
            await wait_or_cancel(asyncio.gather(*readers), cancel_event)
            returncode = await process.wait()
        finally:
            for reader in readers:
                reader.cancel()
            await _reap(process)
        if returncode != 0:
            logger.warning(
                "ffmpeg exited with code %s for %s: %s",
                returncode, input_path, " | ".join(stderr_tail) or "no output",
            )
            return False
        return True
