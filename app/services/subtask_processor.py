"""Resource batch processor: runs one subtask and finalizes its main task."""
import logging
import time
import uuid
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.config import Settings
from app.schemas.batch_task import (
    EnrichedResource,
    MainTask,
    ResourceItem,
    Subtask,
    SubtaskOutcome,
    SubtaskResult,
    SubtaskStatus,
    TaskStatus,
    utcnow,
)
from app.services.ai_client import ChatCompletionClient
from app.services.ai_enricher import default_enriched_resource, enrich_resource
from app.services.ai_review import review_resource
from app.services.background import run_detached
from app.services.batch_log_repository import upsert_batch_summary
from app.services.batch_store import BatchTaskStore
from app.services.exceptions import MainTaskNotFoundError, SubtaskNotFoundError
from app.services.resource_repository import (
    add_resource_tags,
    get_category_map,
    insert_resources,
    user_exists,
)

logger = logging.getLogger(__name__)

INSERT_FAILED_ERROR = "Database insert failed"

# Share of max_processing_time after which enrichment is skipped
ENRICHMENT_BUDGET_SHARE = 0.8


def final_task_status(task: MainTask) -> TaskStatus:
    """
    Terminal status for a finished task, derived from its item counts.

    ``completed`` only when no item failed; ``partial_completed`` when some
    items made it in; ``failed`` when none did.
    """
    if task.failed_count == 0:
        return TaskStatus.COMPLETED
    if task.success_count > 0:
        return TaskStatus.PARTIAL_COMPLETED
    return TaskStatus.FAILED


class SubtaskProcessor:
    """
    Processes a single subtask end to end.

    Steps: guard against re-delivery, validate the owner, enrich each item,
    insert all rows in one statement, hand tags and AI review to a detached
    worker, record the outcome, and finalize the main task after its last batch.
    """

    def __init__(
        self,
        store: BatchTaskStore,
        session_factory,
        settings: Settings,
        ai_client: Optional[ChatCompletionClient] = None,
        enrich: Callable = enrich_resource,
        spawn: Callable = run_detached,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.session_factory = session_factory
        self.settings = settings
        self.ai_client = ai_client
        self._enrich = enrich
        self._spawn = spawn
        self._clock = clock

    def process(self, subtask_uuid: str) -> SubtaskOutcome:
        """
        Run one subtask.

        Raises:
            SubtaskNotFoundError: the subtask record is gone
            MainTaskNotFoundError: the parent task record is gone
        """
        started = self._clock()

        subtask = self.store.get_subtask(subtask_uuid)
        if subtask is None:
            logger.error(f"❌ Subtask not found: {subtask_uuid}")
            raise SubtaskNotFoundError(subtask_uuid)

        task = self.store.get_main_task(subtask.parent_task_uuid)
        if task is None:
            logger.error(f"❌ Main task not found: {subtask.parent_task_uuid}")
            raise MainTaskNotFoundError(subtask.parent_task_uuid)

        if task.is_terminal:
            logger.info(
                f"⏭️ Task {task.uuid} already {task.status.value}, "
                f"not processing subtask {subtask.uuid}"
            )
        if task.is_terminal or self._already_handled(subtask):
            return SubtaskOutcome(
                subtask_uuid=subtask.uuid,
                parent_task_uuid=task.uuid,
                batch_index=subtask.batch_index,
                success_count=subtask.success_count,
                failed_count=subtask.failed_count,
                skipped=True,
                task_completed=task.is_terminal,
            )

        logger.info(
            f"⚙️ Processing subtask {subtask.uuid} "
            f"(batch {subtask.batch_index + 1}/{task.total_batches}) of task {task.uuid}"
        )
        self.store.update_subtask(
            subtask.uuid, status=SubtaskStatus.PROCESSING, started_at=utcnow()
        )
        if task.status == TaskStatus.PENDING:
            self.store.update_main_task_progress(task.uuid, status=TaskStatus.PROCESSING)

        results = self._run_batch(task, subtask, started)

        success_count = sum(1 for r in results if r.success)
        failed_count = len(results) - success_count
        status = (
            SubtaskStatus.FAILED
            if success_count == 0 and failed_count > 0
            else SubtaskStatus.COMPLETED
        )
        self.store.update_subtask(
            subtask.uuid,
            status=status,
            success_count=success_count,
            failed_count=failed_count,
            results=results,
            completed_at=utcnow(),
        )

        updated = self.store.record_batch_completion(task.uuid, success_count, failed_count)
        task_completed = False
        if updated is not None and updated.completed_batches >= updated.total_batches:
            self.complete_main_task(task.uuid)
            task_completed = True

        processing_time = round(self._clock() - started, 3)
        logger.info(
            f"✅ Subtask {subtask.uuid} done in {processing_time}s: "
            f"success={success_count}, failed={failed_count}"
        )
        return SubtaskOutcome(
            subtask_uuid=subtask.uuid,
            parent_task_uuid=task.uuid,
            batch_index=subtask.batch_index,
            success_count=success_count,
            failed_count=failed_count,
            task_completed=task_completed,
            processing_time=processing_time,
        )

    @property
    def in_flight_window(self) -> float:
        """
        Seconds a processing subtask is assumed to still be owned by its driver.

        Covers the self-call timeout, so a dispatcher whose request timed out
        never processes a subtask the endpoint is still working on.
        """
        return max(self.settings.max_processing_time, self.settings.subtask_trigger_timeout)

    def _already_handled(self, subtask: Subtask) -> bool:
        if subtask.completed_at is not None:
            logger.info(f"⏭️ Subtask {subtask.uuid} already completed, skipping")
            return True
        if subtask.status == SubtaskStatus.PROCESSING and subtask.started_at is not None:
            age = (utcnow() - subtask.started_at).total_seconds()
            if age < self.in_flight_window:
                logger.info(
                    f"⏭️ Subtask {subtask.uuid} is being processed elsewhere "
                    f"(started {age:.1f}s ago), skipping"
                )
                return True
        return False

    def _run_batch(self, task: MainTask, subtask: Subtask, started: float) -> list[SubtaskResult]:
        db = self.session_factory()
        try:
            if not user_exists(db, task.user_id):
                logger.warning(f"⚠️ User not found for task {task.uuid}: {task.user_id}")
                return [
                    SubtaskResult(name=item.name, success=False, error=f"User not found: {task.user_id}")
                    for item in subtask.resources
                ]

            category_map = get_category_map(db)
            prepared = []
            for item in subtask.resources:
                enriched = self._enrich_item(item, category_map, started)
                prepared.append((item, str(uuid.uuid4()), enriched))

            rows = [
                self._resource_row(resource_uuid, enriched, task.user_id)
                for _, resource_uuid, enriched in prepared
            ]
            try:
                inserted_ids = insert_resources(db, rows)
            except SQLAlchemyError as e:
                logger.error(
                    f"❌ Bulk insert failed for subtask {subtask.uuid}: {e}", exc_info=True
                )
                return [
                    SubtaskResult(name=item.name, success=False, error=INSERT_FAILED_ERROR)
                    for item, _, _ in prepared
                ]
        finally:
            db.close()

        results = []
        inserted = []
        for item, resource_uuid, enriched in prepared:
            resource_id = inserted_ids.get(resource_uuid)
            if resource_id is None:
                results.append(
                    SubtaskResult(name=item.name, success=False, error=INSERT_FAILED_ERROR)
                )
                continue
            results.append(SubtaskResult(name=item.name, success=True, uuid=resource_uuid))
            inserted.append((resource_id, enriched))

        if inserted:
            self._spawn(self._attach_tags_and_review, inserted)
        return results

    def _enrich_item(
        self, item: ResourceItem, category_map: dict[str, int], started: float
    ) -> EnrichedResource:
        elapsed = self._clock() - started
        if elapsed > self.settings.max_processing_time * ENRICHMENT_BUDGET_SHARE:
            logger.warning(
                f"⏱️ {elapsed:.1f}s spent, skipping AI enrichment for '{item.name}'"
            )
            return default_enriched_resource(item, category_map)

        try:
            return self._enrich(item, category_map, self.ai_client)
        except Exception as e:
            logger.warning(f"⚠️ Enrichment failed for '{item.name}', using defaults: {e}")
            return default_enriched_resource(item, category_map)

    @staticmethod
    def _resource_row(resource_uuid: str, enriched: EnrichedResource, author_id: str) -> dict:
        return {
            "uuid": resource_uuid,
            "title": enriched.title,
            "description": enriched.description,
            "content": "",
            "file_url": enriched.link,
            "category_id": enriched.category_id,
            "author_id": author_id,
            "status": "pending",
            "rating_avg": 0,
            "rating_count": 0,
            "view_count": 0,
            "access_count": 0,
            "is_featured": False,
            "is_free": True,
            "credits": 0,
            "top": False,
        }

    def _attach_tags_and_review(self, inserted: list[tuple[int, EnrichedResource]]) -> None:
        db = self.session_factory()
        try:
            for resource_id, enriched in inserted:
                try:
                    if enriched.tags:
                        add_resource_tags(db, resource_id, enriched.tags)
                    if self.settings.ai_review_enabled:
                        review_resource(
                            db,
                            resource_id,
                            enriched.title,
                            enriched.description,
                            enriched.link,
                            self.ai_client,
                            enabled=self.settings.ai_review_enabled,
                            auto_approve_threshold=self.settings.ai_auto_approve_threshold,
                        )
                except SQLAlchemyError as e:
                    db.rollback()
                    logger.error(
                        f"❌ Tag/review side effect failed for resource {resource_id}: {e}",
                        exc_info=True,
                    )
        finally:
            db.close()

    def fail_subtask(self, subtask_uuid: str, error: str) -> Optional[Subtask]:
        """Leave a subtask in the failed state after its processing raised."""
        logger.error(f"❌ Marking subtask {subtask_uuid} failed: {error}")
        return self.store.update_subtask(subtask_uuid, status=SubtaskStatus.FAILED, error=error)

    def complete_main_task(self, task_uuid: str) -> Optional[MainTask]:
        """
        Finalize a main task once all of its batches have been counted.

        Sets the terminal status, saves the per-subtask results, persists the
        summary to the batch log and drops the task from the user's active
        index. A task that is already terminal is returned untouched.
        """
        task = self.store.get_main_task(task_uuid)
        if task is None:
            logger.warning(f"⚠️ Cannot finalize missing task {task_uuid}")
            return None
        if task.is_terminal:
            logger.info(f"⏭️ Task {task_uuid} already finalized as {task.status.value}")
            return task

        subtasks = self.store.get_all_subtasks(task_uuid)
        failed_resources = []
        for subtask in subtasks:
            for item, result in zip(subtask.resources, subtask.results):
                if not result.success:
                    failed_resources.append(
                        {
                            "name": item.name,
                            "link": item.link,
                            "error": result.error,
                            "batch_index": subtask.batch_index,
                        }
                    )

        task = self.store.update_main_task_progress(
            task_uuid,
            status=final_task_status(task),
            completed_batches=task.total_batches,
        )
        if task is None:
            return None

        self.store.save_task_results(
            task_uuid,
            {
                "subtasks": [
                    {
                        "uuid": s.uuid,
                        "batch_index": s.batch_index,
                        "status": s.status.value,
                        "success_count": s.success_count,
                        "failed_count": s.failed_count,
                    }
                    for s in subtasks
                ],
                "failed_resources": failed_resources,
            },
        )

        success_rate = (
            round(task.success_count / task.total_resources * 100)
            if task.total_resources
            else 0
        )
        details = {
            "redis_managed": True,
            "total_batches": task.total_batches,
            "completed_batches": task.completed_batches,
            "batch_size": self.settings.batch_size,
            "execution_summary": {
                "total_resources": task.total_resources,
                "successful": task.success_count,
                "failed": task.failed_count,
                "success_rate": success_rate,
            },
            "failed_resources": failed_resources,
        }

        db = self.session_factory()
        try:
            upsert_batch_summary(db, task, details, completed_at=task.updated_at)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Failed to persist summary of task {task_uuid}: {e}", exc_info=True)
        finally:
            db.close()

        self.store.remove_active_task(task.user_id, task_uuid)
        logger.info(
            f"🏁 Task {task_uuid} finalized as {task.status.value}: "
            f"success={task.success_count}, failed={task.failed_count}, rate={success_rate}%"
        )
        return task
