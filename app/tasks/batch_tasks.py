"""Celery tasks for batch upload processing and recovery."""
import logging
from typing import Optional

from celery.signals import worker_process_init

from app.config import get_settings
from app.database import SessionLocal
from app.redis_client import create_redis_client
from app.services.batch_services import BatchServices, build_batch_services
from app.tasks.celery_app import celery_app

settings = get_settings()
logger = logging.getLogger(__name__)

_services: Optional[BatchServices] = None


def _build_services() -> BatchServices:
    return build_batch_services(
        settings,
        create_redis_client(settings),
        SessionLocal,
        enqueue_drain=lambda task_uuid: drain_batch_task.delay(task_uuid),
    )


@worker_process_init.connect
def init_worker_services(**kwargs):
    """Build one set of batch services per worker process."""
    global _services
    _services = _build_services()
    logger.info("🔧 Batch services ready in worker process")


def get_services() -> BatchServices:
    global _services
    if _services is None:
        _services = _build_services()
    return _services


@celery_app.task(bind=True)
def drain_batch_task(self, task_uuid: str) -> dict:
    """
    Process every queued subtask of a batch task in this worker.

    Args:
        self: Celery task instance
        task_uuid: Main task uuid

    Returns:
        Dict with the final task status and counts
    """
    logger.info(f"🚀 Draining batch task {task_uuid}")
    services = get_services()
    services.coordinator.drain(task_uuid)

    task = services.store.get_main_task(task_uuid)
    if task is None:
        logger.warning(f"⚠️ Task {task_uuid} vanished while draining")
        return {"task_uuid": task_uuid, "status": "unknown"}

    logger.info(
        f"🏁 Drain of {task_uuid} finished: status={task.status.value}, "
        f"{task.completed_batches}/{task.total_batches} batches"
    )
    return {
        "task_uuid": task_uuid,
        "status": task.status.value,
        "completed_batches": task.completed_batches,
        "success_count": task.success_count,
        "failed_count": task.failed_count,
    }


@celery_app.task
def recover_stuck_tasks() -> list[str]:
    """Periodic recovery sweep, scheduled by Celery beat."""
    recovered = get_services().recovery.check_and_recover_stuck_tasks()
    if recovered:
        logger.info(f"🔧 Recovered tasks: {', '.join(recovered)}")
    return recovered
