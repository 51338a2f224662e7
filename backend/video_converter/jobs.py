"""Background conversion jobs. Progress lives in memory; status is persisted to the database."""
import asyncio
import logging
import time
import uuid
from collections import deque
from pathlib import Path
from typing import Optional

from video_converter.conversion.models import ConversionTask, TaskStatus
from video_converter.conversion.service import ConversionService
from video_converter.db import get_job_from_db, record_activity, save_job, update_job_status
from video_converter.errors import ConversionCancelled, ValidationError

logger = logging.getLogger("converter.jobs")

GENERIC_FAILURE = "An error occurred during video conversion"

# Finished tasks kept in memory for polling; older ones are rebuilt from the database
MAX_FINISHED_JOBS = 500

_jobs: dict[str, ConversionTask] = {}
_cancel_events: dict[str, asyncio.Event] = {}
_finished: deque = deque()


def create_job(file_name: str, output_format: str, session_id: Optional[str] = None) -> ConversionTask:
    task = ConversionTask(task_id=str(uuid.uuid4()), file_name=file_name, output_format=output_format)
    _jobs[task.task_id] = task
    _cancel_events[task.task_id] = asyncio.Event()
    save_job(task.task_id, file_name, output_format, task.status.value, session_id=session_id)
    return task


def get_job(task_id: str) -> Optional[ConversionTask]:
    task = _jobs.get(task_id)
    if task is not None:
        return task
    row = get_job_from_db(task_id)
    if row is None:
        return None
    # Known only from the database (evicted or after restart): no live progress
    task = ConversionTask(task_id=row["task_id"], file_name=row["file_name"], output_format=row["output_format"])
    task.status = TaskStatus(row["status"])
    task.error = row["error"]
    task.converted_file = row["converted_file"]
    task.duration_seconds = row["duration_seconds"]
    if task.status == TaskStatus.COMPLETED:
        task.progress = 100.0
    return task


def cancel_job(task_id: str) -> bool:
    """Ask a pending or running job to stop. Returns False if it is unknown or already finished."""
    task = _jobs.get(task_id)
    event = _cancel_events.get(task_id)
    if task is None or event is None or task.finished:
        return False
    logger.info("Cancellation requested for task %s", task_id)
    event.set()
    return True


def clear_jobs() -> None:
    _jobs.clear()
    _cancel_events.clear()
    _finished.clear()


def _evict_finished() -> None:
    while len(_finished) > MAX_FINISHED_JOBS:
        task_id = _finished.popleft()
        _jobs.pop(task_id, None)


def _finish(task: ConversionTask, status: TaskStatus, error: Optional[str] = None) -> None:
    task.status = status
    task.error = error
    update_job_status(
        task.task_id,
        status.value,
        error=error,
        converted_file=task.converted_file,
        duration_seconds=task.duration_seconds,
    )
    _cancel_events.pop(task.task_id, None)
    _finished.append(task.task_id)
    _evict_finished()


async def run_job(
    task: ConversionTask,
    service: ConversionService,
    input_path: Path,
    session_id: Optional[str] = None,
) -> None:
    """Run a conversion for a job created with create_job. Never raises; the outcome is on the task."""
    cancel_event = _cancel_events.setdefault(task.task_id, asyncio.Event())
    task.status = TaskStatus.CONVERTING
    update_job_status(task.task_id, task.status.value)
    started = time.monotonic()

    def on_progress(percent: float) -> None:
        task.progress = percent

    output_bytes = None
    try:
        result = await service.convert(input_path, task.output_format, on_progress, cancel_event)
    except ConversionCancelled:
        _finish(task, TaskStatus.CANCELLED, "Conversion cancelled")
    except ValidationError as e:
        _finish(task, TaskStatus.FAILED, str(e))
    except Exception as e:
        logger.exception("Task %s failed: %s", task.task_id, e)
        _finish(task, TaskStatus.FAILED, GENERIC_FAILURE)
    else:
        task.converted_file = result.output_path.name
        task.duration_seconds = result.duration.total_seconds()
        task.succeeded = result.succeeded
        if result.output_path.is_file():
            output_bytes = result.output_path.stat().st_size
        task.progress = 100.0
        _finish(task, TaskStatus.COMPLETED)

    if session_id:
        record_activity(
            session_id,
            "convert",
            task.file_name,
            task.status.value,
            output_format=task.output_format,
            output_bytes=output_bytes,
            duration_seconds=task.duration_seconds,
            elapsed_seconds=time.monotonic() - started,
        )
