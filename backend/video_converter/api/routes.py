"""API routes for video upload and conversion."""
import logging
import time
import uuid
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import FileResponse
from pydantic import BaseModel

from video_converter import config as app_config
from video_converter.conversion.formats import (
    ALLOWED_UPLOAD_EXTENSIONS,
    MAX_UPLOAD_SIZE_BYTES,
    SUPPORTED_OUTPUT_FORMATS,
    is_supported,
    normalize_format,
)
from video_converter.conversion.models import ConversionTask
from video_converter.conversion.service import ConversionService, get_conversion_service
from video_converter.db import get_session_activities, get_session_stats, record_activity
from video_converter.errors import (
    AlreadyDisposed,
    ConverterError,
    InputNotFound,
    StorageFailure,
    TooLarge,
    ValidationError,
)
from video_converter.jobs import GENERIC_FAILURE, cancel_job, create_job, get_job, run_job
from video_converter.uploads import UploadGate

logger = logging.getLogger("converter.api")
router = APIRouter(prefix="/api/video", tags=["video"])


class ConvertRequest(BaseModel):
    fileName: Optional[str] = None
    outputFormat: Optional[str] = None


def get_or_create_session_id(request: Request) -> str:
    """Use X-Session-ID header or generate and attach to request for response header."""
    sid = (request.headers.get("X-Session-ID") or "").strip()
    if sid:
        return sid
    sid = str(uuid.uuid4())
    request.state.session_id = sid
    return sid


def get_upload_gate() -> UploadGate:
    return UploadGate(app_config.UPLOAD_DIR)


def _http_error(e: ConverterError) -> HTTPException:
    """Validation errors keep their message; anything else gets a generic one."""
    if isinstance(e, InputNotFound):
        return HTTPException(404, "File not found")
    if isinstance(e, TooLarge):
        return HTTPException(413, str(e))
    if isinstance(e, ValidationError):
        return HTTPException(400, str(e))
    if isinstance(e, AlreadyDisposed):
        return HTTPException(503, "Conversion service unavailable")
    return HTTPException(500, GENERIC_FAILURE)


def _resolve_convert_request(body: ConvertRequest, gate: UploadGate) -> tuple[Path, str]:
    if not body.fileName:
        logger.warning("Convert request with empty fileName")
        raise HTTPException(400, "File name is required")
    if not body.outputFormat:
        logger.warning("Convert request with empty outputFormat")
        raise HTTPException(400, "Output format is required")

    output_format = normalize_format(body.outputFormat)
    if not is_supported(output_format):
        logger.warning("Invalid output format attempted: %s", body.outputFormat)
        raise HTTPException(400, f"Invalid output format. Allowed formats: {', '.join(SUPPORTED_OUTPUT_FORMATS)}")

    try:
        input_path = gate.path_for(body.fileName)
    except ValidationError as e:
        logger.warning("Convert request with invalid fileName: %r", body.fileName)
        raise _http_error(e)
    if not input_path.is_file():
        logger.warning("Convert request for non-existent file: %s", input_path)
        raise HTTPException(404, "File not found")
    return input_path, output_format


def _task_to_dict(t: ConversionTask) -> dict:
    return {
        "taskId": t.task_id,
        "fileName": t.file_name,
        "outputFormat": t.output_format,
        "status": t.status.value,
        "progress": t.progress,
        "error": t.error,
        "convertedFile": t.converted_file,
        "duration": t.duration_seconds,
        "succeeded": t.succeeded,
    }


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/formats")
def get_formats():
    return {
        "output": list(SUPPORTED_OUTPUT_FORMATS),
        "upload": [ext.lstrip(".") for ext in ALLOWED_UPLOAD_EXTENSIONS],
    }


@router.get("/limits")
def get_limits():
    """Return upload limits for the client."""
    return {
        "max_upload_size_mb": MAX_UPLOAD_SIZE_BYTES // (1024 * 1024),
        "max_upload_size_bytes": MAX_UPLOAD_SIZE_BYTES,
    }


@router.post("/upload")
async def upload_video(
    file: Optional[UploadFile] = File(None),
    gate: UploadGate = Depends(get_upload_gate),
    session_id: str = Depends(get_or_create_session_id),
):
    """Validate and store a video. Returns the generated name to pass to /convert."""
    name = file.filename if file else None
    try:
        stored = await gate.accept(
            file,
            name or "",
            file.size if file else None,
            file.content_type if file else None,
        )
    except ValidationError as e:
        record_activity(session_id, "upload", name, "failed")
        raise _http_error(e)
    except StorageFailure:
        record_activity(session_id, "upload", name, "failed")
        raise HTTPException(500, "An error occurred while uploading the file.")

    record_activity(session_id, "upload", stored.original_name, "completed", input_bytes=stored.size)
    return {
        "fileName": stored.file_name,
        "originalName": stored.original_name,
        "fileSize": stored.size,
        "fileType": stored.content_type,
    }


@router.post("/convert")
async def convert_video(
    body: ConvertRequest,
    svc: ConversionService = Depends(get_conversion_service),
    gate: UploadGate = Depends(get_upload_gate),
    session_id: str = Depends(get_or_create_session_id),
):
    """Convert a stored upload and wait for the result."""
    input_path, output_format = _resolve_convert_request(body, gate)
    started = time.monotonic()

    def on_progress(percent: float) -> None:
        logger.debug("Conversion progress for %s: %.2f%%", input_path.name, percent)

    try:
        result = await svc.convert(input_path, output_format, on_progress)
    except ConverterError as e:
        record_activity(
            session_id, "convert", body.fileName, "failed",
            output_format=output_format, elapsed_seconds=time.monotonic() - started,
        )
        raise _http_error(e)
    except Exception as e:
        logger.exception("Error during video conversion: %s", e)
        record_activity(
            session_id, "convert", body.fileName, "failed",
            output_format=output_format, elapsed_seconds=time.monotonic() - started,
        )
        raise HTTPException(500, GENERIC_FAILURE)

    output_bytes = result.output_path.stat().st_size if result.output_path.is_file() else None
    record_activity(
        session_id, "convert", body.fileName, "completed",
        output_format=output_format,
        output_bytes=output_bytes,
        duration_seconds=result.duration.total_seconds(),
        elapsed_seconds=time.monotonic() - started,
    )
    logger.info("Video conversion completed. Output file: %s", result.output_path.name)
    return {
        "originalFile": body.fileName,
        "convertedFile": result.output_path.name,
        "duration": result.duration.total_seconds(),
    }


@router.post("/convert-async")
async def convert_video_async(
    body: ConvertRequest,
    background_tasks: BackgroundTasks,
    svc: ConversionService = Depends(get_conversion_service),
    gate: UploadGate = Depends(get_upload_gate),
    session_id: str = Depends(get_or_create_session_id),
):
    """Start a conversion in the background. Poll /task/{task_id} for progress."""
    input_path, output_format = _resolve_convert_request(body, gate)
    task = create_job(body.fileName, output_format, session_id=session_id)
    background_tasks.add_task(run_job, task, svc, input_path, session_id)
    return {"taskId": task.task_id, "status": task.status.value}


@router.get("/task/{task_id}")
def get_task_status(task_id: str):
    """Get conversion task status and progress."""
    task = get_job(task_id)
    if not task:
        raise HTTPException(404, "Task not found")
    return _task_to_dict(task)


@router.delete("/task/{task_id}")
def cancel_task(task_id: str):
    """Cancel a running conversion task."""
    if cancel_job(task_id):
        return {"ok": True, "taskId": task_id}
    if get_job(task_id) is None:
        raise HTTPException(404, "Task not found")
    raise HTTPException(409, "Task already finished")


@router.get("/download/{file_name}")
def download_converted(file_name: str, gate: UploadGate = Depends(get_upload_gate)):
    """Download a converted file by name."""
    try:
        path = gate.path_for(file_name)
    except ValidationError as e:
        raise _http_error(e)
    if not is_supported(path.suffix) or not path.is_file():
        raise HTTPException(404, "File not found")
    return FileResponse(path, filename=file_name)


@router.get("/session/stats")
def session_stats(session_id: str = Depends(get_or_create_session_id)):
    """Return aggregated stats for the current session."""
    return get_session_stats(session_id)


@router.get("/session/activities")
def session_activities(
    limit: int = Query(50, ge=1, le=200),
    session_id: str = Depends(get_or_create_session_id),
):
    """Return recent upload and conversion activities for the current session."""
    return {"activities": get_session_activities(session_id, limit=limit)}
