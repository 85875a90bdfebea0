"""Batch upload coordinator: task creation and subtask chaining."""
import logging
import uuid
from typing import Callable, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from app.config import Settings
from app.schemas.batch_task import (
    MainTask,
    ResourceItem,
    Subtask,
    SubtaskOutcome,
    SubtaskStatus,
    TaskStatus,
)
from app.services.background import schedule_after
from app.services.batch_log_repository import create_batch_log, mark_batch_log_failed
from app.services.batch_store import BatchTaskStore
from app.services.subtask_processor import SubtaskProcessor

logger = logging.getLogger(__name__)

PROCESS_SUBTASK_PATH = "/api/admin/batch-upload/process-subtask"
INTERNAL_USER_AGENT = "Internal-Service/1.0"
# Set on process-subtask error responses once the endpoint has failed the task itself
TASK_ABORTED_HEADER = "X-Batch-Task-Aborted"


def resolve_base_url(settings: Settings) -> str:
    """
    Base URL the service uses to call itself.

    Precedence: APP_URL, then VERCEL_URL, then VERCEL_PROJECT_PRODUCTION_URL,
    then the local development address.
    """
    if settings.app_url:
        base_url = settings.app_url.rstrip("/")
        source = "APP_URL"
    elif settings.vercel_url:
        base_url = f"https://{settings.vercel_url}"
        source = "VERCEL_URL"
    elif settings.vercel_project_production_url:
        base_url = f"https://{settings.vercel_project_production_url}"
        source = "VERCEL_PROJECT_PRODUCTION_URL"
    else:
        base_url = f"http://localhost:{settings.port}"
        source = "development default"

    logger.debug(f"🌐 Resolved base URL {base_url} from {source}")
    return base_url


def split_into_batches(items: list[ResourceItem], batch_size: int) -> list[list[ResourceItem]]:
    return [items[i : i + batch_size] for i in range(0, len(items), batch_size)]


class BatchCoordinator:
    """Creates batch tasks and keeps their subtasks moving until the queue is empty."""

    def __init__(
        self,
        store: BatchTaskStore,
        processor: SubtaskProcessor,
        settings: Settings,
        session_factory,
        transport: Optional[httpx.BaseTransport] = None,
        schedule: Callable = schedule_after,
        enqueue_drain: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.processor = processor
        self.settings = settings
        self.session_factory = session_factory
        self.transport = transport
        self._schedule = schedule
        self._enqueue_drain = enqueue_drain

    @property
    def base_url(self) -> str:
        return resolve_base_url(self.settings)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, user_id: str, items: list[ResourceItem]) -> MainTask:
        """Create the main task, its queued subtasks and the batch log, then start processing."""
        batches = split_into_batches(items, self.settings.batch_size)
        task = MainTask(
            uuid=str(uuid.uuid4()),
            user_id=user_id,
            title=f"Batch upload - {len(items)} resources",
            total_resources=len(items),
            total_batches=len(batches),
        )
        subtasks = [
            Subtask(
                uuid=str(uuid.uuid4()),
                parent_task_uuid=task.uuid,
                batch_index=index,
                resources=batch,
            )
            for index, batch in enumerate(batches)
        ]

        db = self.session_factory()
        try:
            create_batch_log(
                db,
                task,
                details={
                    "redis_managed": True,
                    "total_batches": task.total_batches,
                    "batch_size": self.settings.batch_size,
                },
            )
        finally:
            db.close()

        self.store.create_main_task(task)
        self.store.create_subtasks_and_queue(task.uuid, subtasks)
        logger.info(
            f"🚀 Batch task {task.uuid} submitted by {user_id}: "
            f"{task.total_resources} resources in {task.total_batches} batches"
        )

        self.start(task.uuid)
        return task

    def start(self, task_uuid: str) -> None:
        if self.settings.batch_dispatch_mode == "worker" and self._enqueue_drain is not None:
            logger.info(f"📨 Handing task {task_uuid} to the worker queue")
            self._enqueue_drain(task_uuid)
        else:
            self.trigger_next_subtask(task_uuid)

    # ------------------------------------------------------------------
    # Chaining
    # ------------------------------------------------------------------

    def trigger_next_subtask(self, task_uuid: str) -> Optional[Subtask]:
        """Pop the next subtask and schedule its dispatch after a short delay."""
        subtask = self.store.get_next_pending_subtask(task_uuid)
        if subtask is None:
            logger.info(f"📭 No pending subtasks left for task {task_uuid}")
            return None

        self._schedule(self.settings.subtask_trigger_delay, self._dispatch, subtask)
        return subtask

    def _dispatch(self, subtask: Subtask) -> None:
        """
        Hand the subtask to the process-subtask endpoint, or run it here if that fails.

        An error response carrying the aborted-task header means the endpoint
        already failed the task, so there is nothing left to fall back to.
        """
        url = f"{self.base_url}{PROCESS_SUBTASK_PATH}"
        try:
            with httpx.Client(
                timeout=self.settings.subtask_trigger_timeout, transport=self.transport
            ) as client:
                response = client.post(
                    url,
                    json={"subtask_uuid": subtask.uuid},
                    headers={"User-Agent": INTERNAL_USER_AGENT},
                )
                response.raise_for_status()
            logger.info(f"🔗 Subtask {subtask.uuid} handed off to {url}")
        except httpx.HTTPError as e:
            if isinstance(e, httpx.HTTPStatusError) and TASK_ABORTED_HEADER in e.response.headers:
                logger.error(
                    f"❌ Subtask {subtask.uuid} failed at {url} and its task was aborted, "
                    f"not retrying in-process"
                )
                return
            logger.warning(
                f"⚠️ Self-trigger for subtask {subtask.uuid} failed ({e}), processing in-process"
            )
            self.run_in_process(subtask)

    def run_in_process(self, subtask: Subtask) -> Optional[SubtaskOutcome]:
        """
        Process subtasks in this process until the queue runs dry.

        Starts with the given subtask and keeps popping the next one. Stops when
        a subtask is skipped, the task is finalized, or processing raises; in the
        last case the subtask is left failed for the recovery sweep to find.
        """
        current = subtask
        outcome = None
        while current is not None:
            try:
                outcome = self.processor.process(current.uuid)
            except Exception as e:
                logger.error(
                    f"❌ In-process execution of subtask {current.uuid} failed: {e}",
                    exc_info=True,
                )
                self.processor.fail_subtask(current.uuid, str(e))
                return outcome

            if outcome.skipped or outcome.task_completed:
                break
            current = self.store.get_next_pending_subtask(current.parent_task_uuid)
        return outcome

    def drain(self, task_uuid: str) -> Optional[SubtaskOutcome]:
        """Work-queue consumer loop used by long-lived workers."""
        subtask = self.store.get_next_pending_subtask(task_uuid)
        if subtask is None:
            logger.info(f"📭 Nothing to drain for task {task_uuid}")
            return None
        return self.run_in_process(subtask)

    # ------------------------------------------------------------------
    # Process-subtask endpoint
    # ------------------------------------------------------------------

    def handle_subtask_request(self, subtask_uuid: str) -> SubtaskOutcome:
        """Process a subtask handed over by HTTP and advance the chain."""
        outcome = self.processor.process(subtask_uuid)
        if not outcome.skipped and not outcome.task_completed:
            self.trigger_next_subtask(outcome.parent_task_uuid)
        return outcome

    def abort_task_for_subtask(self, subtask_uuid: str, error: str) -> None:
        """Mark a subtask and its main task failed after the endpoint could not process it."""
        subtask = self.store.update_subtask(
            subtask_uuid, status=SubtaskStatus.FAILED, error=error
        )
        if subtask is None:
            return

        task = self.store.update_main_task_progress(
            subtask.parent_task_uuid, status=TaskStatus.FAILED
        )
        if task is None:
            return

        self.store.remove_active_task(task.user_id, task.uuid)
        db = self.session_factory()
        try:
            mark_batch_log_failed(db, task.uuid, error)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Failed to mark batch log {task.uuid} failed: {e}", exc_info=True)
        finally:
            db.close()
