"""Batch upload API endpoints."""
import logging
import math
from typing import Optional

import redis
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.config import get_settings
from app.database import get_db
from app.dependencies import get_batch_services, get_current_user_id
from app.schemas.batch_task import ResourceItem
from app.schemas.batch_upload import (
    ActiveTask,
    ActiveTasksResponse,
    BatchLogListResponse,
    BatchLogResponse,
    BatchUploadRequest,
    BatchUploadResponse,
    ProcessSubtaskRequest,
    ProcessSubtaskResponse,
    RecoverRequest,
    RecoverResponse,
    TaskProgressResponse,
)
from app.services.batch_log_repository import (
    count_batch_logs,
    delete_all_batch_logs,
    find_batch_log,
    list_batch_logs,
)
from app.services.batch_services import BatchServices
from app.services.coordinator import TASK_ABORTED_HEADER
from app.services.exceptions import MainTaskNotFoundError, SubtaskNotFoundError

router = APIRouter(prefix="/api/admin/batch-upload", tags=["batch-upload"])

settings = get_settings()
logger = logging.getLogger(__name__)


@router.post("/submit", response_model=BatchUploadResponse, status_code=202)
def submit_batch_upload(
    request: BatchUploadRequest,
    user_id: str = Depends(get_current_user_id),
    services: BatchServices = Depends(get_batch_services),
):
    """
    Submit a list of resources for batch upload.

    The list is split into batches, queued in Redis and processed in the
    background. Poll the progress endpoint with the returned task_uuid.
    """
    if not request.resources:
        raise HTTPException(status_code=400, detail="Resource list must not be empty")
    if len(request.resources) > settings.max_resources_per_upload:
        raise HTTPException(
            status_code=400,
            detail=f"At most {settings.max_resources_per_upload} resources per upload",
        )
    if request.total_resources is not None and request.total_resources != len(request.resources):
        logger.warning(
            f"⚠️ Declared total_resources={request.total_resources} "
            f"but received {len(request.resources)} resources"
        )

    items = [ResourceItem(name=r.name, link=r.link) for r in request.resources]
    logger.info(f"📥 Batch upload of {len(items)} resources from user {user_id}")
    task = services.coordinator.submit(user_id, items)

    return BatchUploadResponse(
        task_uuid=task.uuid,
        total_count=task.total_resources,
        total_batches=task.total_batches,
        status=task.status.value,
    )


@router.post("/process-subtask", response_model=ProcessSubtaskResponse)
def process_subtask(
    request: ProcessSubtaskRequest,
    services: BatchServices = Depends(get_batch_services),
):
    """Process one subtask and trigger the next one. Called by the service itself."""
    logger.info(f"🔗 Process-subtask request for {request.subtask_uuid}")
    try:
        outcome = services.coordinator.handle_subtask_request(request.subtask_uuid)
    except (SubtaskNotFoundError, MainTaskNotFoundError) as e:
        services.coordinator.abort_task_for_subtask(request.subtask_uuid, str(e))
        raise HTTPException(
            status_code=404, detail=str(e), headers={TASK_ABORTED_HEADER: "true"}
        )
    except Exception as e:
        logger.error(f"❌ Subtask {request.subtask_uuid} failed: {e}", exc_info=True)
        services.coordinator.abort_task_for_subtask(request.subtask_uuid, str(e))
        raise HTTPException(
            status_code=500,
            detail="Subtask processing failed",
            headers={TASK_ABORTED_HEADER: "true"},
        )

    return ProcessSubtaskResponse(
        message="Subtask already handled" if outcome.skipped else "Subtask processed",
        batch_index=outcome.batch_index,
        success_count=outcome.success_count,
        failed_count=outcome.failed_count,
        skipped=outcome.skipped,
        processing_time=outcome.processing_time,
    )


@router.get("/progress/{task_uuid}", response_model=TaskProgressResponse)
def get_progress(
    task_uuid: str,
    user_id: str = Depends(get_current_user_id),
    services: BatchServices = Depends(get_batch_services),
    db: Session = Depends(get_db),
):
    """
    Get batch task progress.

    Reads the live Redis state while the task is cached and falls back to the
    batch log once it has expired from Redis.
    """
    task = services.store.get_main_task(task_uuid)
    if task is not None:
        if task.user_id != user_id:
            raise HTTPException(status_code=403, detail="Not allowed to view this task")
        progress = services.store.get_task_progress(task_uuid)
        return TaskProgressResponse(
            task_uuid=task.uuid,
            title=task.title,
            status=(progress.status if progress else task.status).value,
            total_resources=task.total_resources,
            total_batches=task.total_batches,
            completed_batches=progress.completed_batches if progress else task.completed_batches,
            remaining_batches=services.store.get_remaining_subtask_count(task_uuid),
            success_count=progress.success_count if progress else task.success_count,
            failed_count=progress.failed_count if progress else task.failed_count,
            progress_percentage=(
                progress.progress_percentage if progress else task.progress_percentage
            ),
            last_updated=progress.last_updated if progress else task.updated_at,
            source="redis",
        )

    log = find_batch_log(db, task_uuid)
    if log is None:
        raise HTTPException(status_code=404, detail="Task not found")
    if log.user_id != user_id:
        raise HTTPException(status_code=403, detail="Not allowed to view this task")

    finished = log.success_count + log.failed_count
    details = log.details or {}
    return TaskProgressResponse(
        task_uuid=log.uuid,
        title=log.title,
        status=log.status,
        total_resources=log.total_count,
        total_batches=details.get("total_batches"),
        completed_batches=details.get("completed_batches"),
        success_count=log.success_count,
        failed_count=log.failed_count,
        progress_percentage=(
            round(finished / log.total_count * 100) if log.total_count else 0
        ),
        last_updated=log.completed_at or log.updated_at,
        source="database",
    )


@router.get("/active", response_model=ActiveTasksResponse)
def get_active_tasks(
    user_id: str = Depends(get_current_user_id),
    services: BatchServices = Depends(get_batch_services),
):
    """The caller's most recent active batch tasks."""
    tasks = services.store.get_user_active_tasks(user_id, limit=20)
    return ActiveTasksResponse(
        tasks=[
            ActiveTask(
                uuid=t.uuid,
                title=t.title,
                status=t.status.value,
                total_resources=t.total_resources,
                total_batches=t.total_batches,
                completed_batches=t.completed_batches,
                success_count=t.success_count,
                failed_count=t.failed_count,
                progress_percentage=t.progress_percentage,
                created_at=t.created_at,
                updated_at=t.updated_at,
            )
            for t in tasks
        ],
        total=len(tasks),
    )


@router.post("/recover", response_model=RecoverResponse)
def recover_tasks(
    request: RecoverRequest,
    user_id: str = Depends(get_current_user_id),
    services: BatchServices = Depends(get_batch_services),
):
    """Recover one task by uuid, or sweep every stuck task when no uuid is given."""
    if request.task_uuid:
        if services.store.get_main_task(request.task_uuid) is None:
            raise HTTPException(status_code=404, detail="Task not found")
        logger.info(f"🔧 Manual recovery of task {request.task_uuid} by {user_id}")
        recovered = services.recovery.recover_task(request.task_uuid)
        return RecoverResponse(
            message="Task recovery executed" if recovered else "Task recovery skipped",
            task_uuid=request.task_uuid,
            recovered=[request.task_uuid] if recovered else [],
        )

    logger.info(f"🔧 Manual recovery sweep by {user_id}")
    recovered = services.recovery.check_and_recover_stuck_tasks()
    return RecoverResponse(
        message=f"Recovered {len(recovered)} stuck tasks",
        recovered=recovered,
    )


@router.get("/logs", response_model=BatchLogListResponse)
def get_batch_logs(
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(20, ge=1, le=100, description="Items per page"),
    type: Optional[str] = Query(None, description="Filter by log type"),
    status: Optional[str] = Query(None, description="Filter by status"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """List the caller's batch logs, newest first."""
    total = count_batch_logs(db, user_id, log_type=type, status=status)
    logs = list_batch_logs(db, user_id, page=page, limit=limit, log_type=type, status=status)
    pages = math.ceil(total / limit) if total > 0 else 1

    return BatchLogListResponse(
        logs=logs,
        total=total,
        page=page,
        limit=limit,
        pages=pages,
    )


@router.delete("/logs/clear")
def clear_batch_logs(
    user_id: str = Depends(get_current_user_id),
    services: BatchServices = Depends(get_batch_services),
    db: Session = Depends(get_db),
):
    """Delete every batch log and every batch key in Redis."""
    deleted_logs = delete_all_batch_logs(db)
    logger.info(f"🧹 {user_id} cleared {deleted_logs} batch logs")

    cleared_keys = 0
    try:
        cleared_keys = services.store.clear_all_batch_data()
    except redis.RedisError as e:
        logger.error(f"❌ Failed to clear batch data from Redis: {e}")

    return {
        "message": "Batch logs cleared",
        "deleted_logs": deleted_logs,
        "cleared_keys": cleared_keys,
    }


@router.get("/logs/{task_uuid}", response_model=BatchLogResponse)
def get_batch_log(
    task_uuid: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Get one batch log with its stored summary."""
    log = find_batch_log(db, task_uuid)
    if log is None:
        raise HTTPException(status_code=404, detail="Batch log not found")
    if log.user_id != user_id:
        raise HTTPException(status_code=403, detail="Not allowed to view this log")
    return log
