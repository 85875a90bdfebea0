"""Batch log persistence: the durable history of batch upload tasks."""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from app.models.batch_log import BatchLog
from app.schemas.batch_task import MainTask

logger = logging.getLogger(__name__)


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    # DateTime columns are timezone-naive UTC
    if value is None or value.tzinfo is None:
        return value
    return value.replace(tzinfo=None)


def create_batch_log(db: Session, task: MainTask, details: Optional[dict] = None) -> BatchLog:
    log = BatchLog(
        uuid=task.uuid,
        user_id=task.user_id,
        type="batch_upload",
        title=task.title,
        status=task.status.value,
        total_count=task.total_resources,
        success_count=0,
        failed_count=0,
        details=details,
        created_at=_naive(task.created_at),
    )
    db.add(log)
    db.commit()
    db.refresh(log)
    return log


def upsert_batch_summary(
    db: Session,
    task: MainTask,
    details: dict,
    completed_at: datetime,
    error_message: Optional[str] = None,
) -> BatchLog:
    """Write the final summary of a task, creating the log row if it is missing."""
    log = find_batch_log(db, task.uuid)
    if log is None:
        log = BatchLog(
            uuid=task.uuid,
            user_id=task.user_id,
            type="batch_upload",
            title=task.title,
            created_at=_naive(task.created_at),
        )
        db.add(log)
        logger.warning(f"⚠️ Batch log missing for task {task.uuid}, creating it at completion")

    log.status = task.status.value
    log.total_count = task.total_resources
    log.success_count = task.success_count
    log.failed_count = task.failed_count
    log.details = details
    log.error_message = error_message
    log.completed_at = _naive(completed_at)
    db.commit()
    db.refresh(log)
    return log


def mark_batch_log_failed(db: Session, task_uuid: str, error_message: str) -> Optional[BatchLog]:
    log = find_batch_log(db, task_uuid)
    if log is None:
        return None
    log.status = "failed"
    log.error_message = error_message
    db.commit()
    return log


def find_batch_log(db: Session, task_uuid: str) -> Optional[BatchLog]:
    return db.execute(select(BatchLog).where(BatchLog.uuid == task_uuid)).scalar_one_or_none()


def _log_filters(user_id: str, log_type: Optional[str], status: Optional[str]) -> list:
    filters = [BatchLog.user_id == user_id]
    if log_type:
        filters.append(BatchLog.type == log_type)
    if status:
        filters.append(BatchLog.status == status)
    return filters


def list_batch_logs(
    db: Session,
    user_id: str,
    page: int = 1,
    limit: int = 20,
    log_type: Optional[str] = None,
    status: Optional[str] = None,
) -> list[BatchLog]:
    """One page of a user's logs, newest first."""
    stmt = (
        select(BatchLog)
        .where(*_log_filters(user_id, log_type, status))
        .order_by(BatchLog.created_at.desc(), BatchLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


def count_batch_logs(
    db: Session,
    user_id: str,
    log_type: Optional[str] = None,
    status: Optional[str] = None,
) -> int:
    return db.execute(
        select(func.count(BatchLog.id)).where(*_log_filters(user_id, log_type, status))
    ).scalar_one()


def delete_all_batch_logs(db: Session) -> int:
    result = db.execute(delete(BatchLog))
    db.commit()
    return result.rowcount or 0
