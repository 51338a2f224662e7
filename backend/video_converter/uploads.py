"""Upload gate: validates incoming video files and stores them under generated names."""
import contextlib
import inspect
import logging
import os
import uuid
from pathlib import Path
from typing import Optional

from video_converter.conversion.formats import ALLOWED_UPLOAD_EXTENSIONS, MAX_UPLOAD_SIZE_BYTES
from video_converter.conversion.models import StoredUpload
from video_converter.errors import EmptyFile, InvalidExtension, InvalidFileName, StorageFailure, TooLarge

logger = logging.getLogger("converter.uploads")

CHUNK_SIZE = 1024 * 1024


async def _read_chunk(stream, size: int) -> bytes:
    # Starlette UploadFile.read is a coroutine, plain file objects are not
    chunk = stream.read(size)
    if inspect.isawaitable(chunk):
        chunk = await chunk
    return chunk


class UploadGate:
    def __init__(self, upload_dir: Path, size_limit: int = MAX_UPLOAD_SIZE_BYTES):
        self.upload_dir = Path(upload_dir)
        self.size_limit = size_limit

    def path_for(self, file_name: str) -> Path:
        """Path of a stored upload. Rejects anything that is not a bare file name."""
        if not file_name or Path(file_name).name != file_name or file_name in (".", ".."):
            raise InvalidFileName(f"Invalid file name: {file_name!r}")
        return self.upload_dir / file_name

    def _validate(self, stream, declared_name: str, declared_size: Optional[int], size_limit: int) -> str:
        if stream is None or declared_size == 0:
            logger.warning("Upload attempt with no file")
            raise EmptyFile("No file was uploaded.")
        if declared_size is not None and declared_size > size_limit:
            logger.warning(
                "File size %s exceeds maximum allowed size of %s", declared_size, size_limit
            )
            raise TooLarge(f"File size exceeds maximum allowed size of {size_limit // (1024 * 1024)}MB")

        logger.info("Starting file upload. File: %s, Size: %s", declared_name, declared_size)
        ext = Path(declared_name or "").suffix.lower()
        if ext not in ALLOWED_UPLOAD_EXTENSIONS:
            logger.warning("Invalid file type attempted: %s", ext or "<none>")
            raise InvalidExtension(
                f"Invalid file type. Allowed types: {', '.join(ALLOWED_UPLOAD_EXTENSIONS)}"
            )
        return ext

    async def accept(
        self,
        stream,
        declared_name: str,
        declared_size: Optional[int],
        content_type: Optional[str] = None,
        size_limit: Optional[int] = None,
    ) -> StoredUpload:
        """Validate and store an upload.

        The stream is copied to a hidden temporary file in the upload
        directory and renamed into place once fully written, so a stored name
        never points at a partial file.

        Raises:
            EmptyFile, TooLarge, InvalidExtension: validation failures.
            StorageFailure: the file could not be written.
        """
        limit = self.size_limit if size_limit is None else size_limit
        ext = self._validate(stream, declared_name, declared_size, limit)

        file_name = f"{uuid.uuid4()}{ext}"
        dest = self.upload_dir / file_name
        tmp = self.upload_dir / f".{file_name}.part"
        stored = False
        try:
            if not self.upload_dir.exists():
                logger.info("Creating uploads directory at %s", self.upload_dir)
            self.upload_dir.mkdir(parents=True, exist_ok=True)
            logger.info("Saving file to %s", dest)
            total = 0
            with open(tmp, "wb") as f:
                while chunk := await _read_chunk(stream, CHUNK_SIZE):
                    total += len(chunk)
                    if total > limit:
                        logger.warning("Upload %s exceeded %s bytes while copying", declared_name, limit)
                        raise TooLarge(f"File size exceeds maximum allowed size of {limit // (1024 * 1024)}MB")
                    f.write(chunk)
            if total == 0:
                logger.warning("Upload attempt with empty file: %s", declared_name)
                raise EmptyFile("No file was uploaded.")
            os.replace(tmp, dest)
            stored = True
        except OSError as e:
            logger.exception("Error uploading file %s to %s: %s", declared_name, dest, e)
            raise StorageFailure(f"Could not store {declared_name}") from e
        finally:
            if not stored:
                # The directory itself may be unusable; keep the original error
                with contextlib.suppress(OSError):
                    tmp.unlink()

        logger.info(
            "File uploaded successfully. Original: %s, Saved as: %s, Size: %s",
            declared_name, file_name, total,
        )
        return StoredUpload(
            file_name=file_name,
            original_name=declared_name,
            size=total,
            content_type=content_type,
            path=dest,
        )
