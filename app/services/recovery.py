"""Recovery supervisor: finds stalled batch tasks and drives them forward again."""
import logging
import time
from typing import Callable

import redis

from app.config import Settings
from app.schemas.batch_task import TaskStatus, utcnow
from app.services.batch_store import BatchTaskStore
from app.services.coordinator import BatchCoordinator
from app.services.exceptions import BatchTaskError
from app.services.recovery_lock import RecoveryLock

logger = logging.getLogger(__name__)


class RecoverySupervisor:
    def __init__(
        self,
        store: BatchTaskStore,
        coordinator: BatchCoordinator,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
        now=utcnow,
    ):
        self.store = store
        self.coordinator = coordinator
        self.processor = coordinator.processor
        self.settings = settings
        self._sleep = sleep
        self._now = now

    def lock_for(self, task_uuid: str) -> RecoveryLock:
        return RecoveryLock(
            self.store.redis,
            task_uuid,
            ttl_seconds=self.settings.recovery_lock_ttl,
            attempts=self.settings.recovery_lock_attempts,
            backoff=self.settings.recovery_lock_backoff,
            sleep=self._sleep,
        )

    def recover_task(self, task_uuid: str) -> bool:
        """
        Re-drive one task under its recovery lock.

        Returns True when recovery work was done (a subtask was run or the task
        was finalized), False when the lock was busy, the task is gone or
        finished, or its state needs manual inspection.
        """
        lock = self.lock_for(task_uuid)
        if not lock.acquire():
            return False

        try:
            task = self.store.get_main_task(task_uuid)
            if task is None:
                logger.warning(f"⚠️ Task to recover not found: {task_uuid}")
                return False
            if task.is_terminal:
                logger.info(f"⏭️ Task {task_uuid} already {task.status.value}, nothing to recover")
                return False

            subtask = self.store.get_next_pending_subtask(task_uuid)
            if subtask is not None:
                logger.info(
                    f"🔧 Recovering task {task_uuid} from batch {subtask.batch_index}"
                )
                self.store.update_main_task_progress(task_uuid, status=TaskStatus.PROCESSING)
                self.coordinator.run_in_process(subtask)
                return True

            subtasks = self.store.get_all_subtasks(task_uuid)
            finished = [s for s in subtasks if s.completed_at is not None]
            if len(finished) >= task.total_batches:
                if task.completed_batches < task.total_batches:
                    self.store.update_main_task_progress(
                        task_uuid,
                        completed_batches=task.total_batches,
                        success_count=sum(s.success_count for s in finished),
                        failed_count=sum(s.failed_count for s in finished),
                    )
                logger.info(f"🔧 All batches of task {task_uuid} are done, finalizing")
                self.processor.complete_main_task(task_uuid)
                return True

            logger.warning(
                f"⚠️ Task {task_uuid} has no queued work but only {len(finished)}/"
                f"{task.total_batches} finished batches; needs manual inspection"
            )
            return False
        finally:
            lock.release()

    def check_and_recover_stuck_tasks(self) -> list[str]:
        """Scan every main task and recover the non-terminal ones idle past the timeout."""
        now = self._now()
        timeout = self.settings.task_recovery_timeout
        recovered = []
        checked = 0

        for task in self.store.iter_main_tasks():
            checked += 1
            if task.is_terminal:
                continue
            last_activity = task.updated_at or task.created_at
            idle = (now - last_activity).total_seconds()
            if idle < timeout:
                continue

            logger.warning(
                f"🕰️ Task {task.uuid} stuck in {task.status.value} for {idle:.0f}s, recovering"
            )
            try:
                if self.recover_task(task.uuid):
                    recovered.append(task.uuid)
            except (BatchTaskError, redis.RedisError) as e:
                logger.error(f"❌ Recovery of task {task.uuid} failed: {e}", exc_info=True)

        logger.info(f"🔍 Recovery sweep checked {checked} tasks, recovered {len(recovered)}")
        return recovered
