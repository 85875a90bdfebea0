"""Redis-backed store for batch upload tasks.

Holds main task and subtask records, the per-task work queue, the progress
snapshot and the per-user active task index. Every record is a JSON string
with a TTL; the queue is a list pushed on the left and popped on the right so
subtasks come out in ``batch_index`` order.
"""
import json
import logging
from typing import Any, Iterator, Optional

import redis

from app.schemas.batch_task import (
    MainTask,
    Subtask,
    TaskProgress,
    TaskStatus,
    TERMINAL_TASK_STATUSES,
    utcnow,
)

logger = logging.getLogger(__name__)

MAIN_TASK_PREFIX = "batch:main:"
SUBTASK_PREFIX = "batch:sub:"
QUEUE_PREFIX = "batch:queue:"
PROGRESS_PREFIX = "batch:progress:"
RESULTS_PREFIX = "batch:results:"
CHILDREN_PREFIX = "batch:children:"
USER_ACTIVE_PREFIX = "user:active:"

# Main task fields that stop changing once the task is terminal
COUNTER_FIELDS = ("completed_batches", "success_count", "failed_count")


def main_task_key(task_uuid: str) -> str:
    return f"{MAIN_TASK_PREFIX}{task_uuid}"


def subtask_key(subtask_uuid: str) -> str:
    return f"{SUBTASK_PREFIX}{subtask_uuid}"


def queue_key(task_uuid: str) -> str:
    return f"{QUEUE_PREFIX}{task_uuid}"


def progress_key(task_uuid: str) -> str:
    return f"{PROGRESS_PREFIX}{task_uuid}"


def results_key(task_uuid: str) -> str:
    return f"{RESULTS_PREFIX}{task_uuid}"


def children_key(task_uuid: str) -> str:
    return f"{CHILDREN_PREFIX}{task_uuid}"


def user_active_key(user_id: str) -> str:
    return f"{USER_ACTIVE_PREFIX}{user_id}"


class BatchTaskStore:
    """Task, subtask, queue and progress operations on a shared Redis."""

    def __init__(
        self,
        redis_client: redis.Redis,
        task_ttl: int = 7 * 24 * 3600,
        progress_ttl: int = 3 * 24 * 3600,
        max_user_active_tasks: int = 50,
    ):
        self.redis = redis_client
        self.task_ttl = task_ttl
        self.progress_ttl = progress_ttl
        self.max_user_active_tasks = max_user_active_tasks

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_main_task(self, task: MainTask) -> None:
        """Store the task, index it for its user and write a zeroed progress snapshot."""
        active_key = user_active_key(task.user_id)
        pipe = self.redis.pipeline(transaction=True)
        pipe.set(main_task_key(task.uuid), task.model_dump_json(), ex=self.task_ttl)
        pipe.zadd(active_key, {task.uuid: task.created_at.timestamp() * 1000})
        # Keep only the most recent N entries
        pipe.zremrangebyrank(active_key, 0, -(self.max_user_active_tasks + 1))
        pipe.set(
            progress_key(task.uuid),
            TaskProgress(
                total_batches=task.total_batches,
                completed_batches=0,
                success_count=0,
                failed_count=0,
                progress_percentage=0,
                status=task.status,
                last_updated=task.created_at,
            ).model_dump_json(),
            ex=self.progress_ttl,
        )
        pipe.execute()

        logger.info(
            f"📝 Main task created: uuid={task.uuid}, user={task.user_id}, "
            f"total_batches={task.total_batches}"
        )

    def create_subtasks_and_queue(self, task_uuid: str, subtasks: list[Subtask]) -> None:
        """Store subtasks and push their uuids onto the task's work queue."""
        qkey = queue_key(task_uuid)
        ckey = children_key(task_uuid)
        pipe = self.redis.pipeline(transaction=True)
        for subtask in sorted(subtasks, key=lambda s: s.batch_index):
            pipe.set(subtask_key(subtask.uuid), subtask.model_dump_json(), ex=self.task_ttl)
            pipe.lpush(qkey, subtask.uuid)
            pipe.sadd(ckey, subtask.uuid)
        pipe.expire(qkey, self.task_ttl)
        pipe.expire(ckey, self.task_ttl)
        pipe.execute()

        logger.info(f"📦 Queued {len(subtasks)} subtasks for task {task_uuid}")

    # ------------------------------------------------------------------
    # Work queue
    # ------------------------------------------------------------------

    def get_next_pending_subtask(self, task_uuid: str) -> Optional[Subtask]:
        """Pop the next subtask uuid off the queue and load its record.

        The pop is the hand-off: a uuid is returned to at most one caller.
        """
        subtask_uuid = self.redis.rpop(queue_key(task_uuid))
        if subtask_uuid is None:
            return None

        subtask = self.get_subtask(subtask_uuid)
        if subtask is None:
            logger.warning(
                f"⚠️ Queued subtask {subtask_uuid} of task {task_uuid} has no record"
            )
        return subtask

    def get_remaining_subtask_count(self, task_uuid: str) -> int:
        return self.redis.llen(queue_key(task_uuid))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_main_task(self, task_uuid: str) -> Optional[MainTask]:
        raw = self.redis.get(main_task_key(task_uuid))
        return MainTask.model_validate_json(raw) if raw else None

    def get_subtask(self, subtask_uuid: str) -> Optional[Subtask]:
        raw = self.redis.get(subtask_key(subtask_uuid))
        return Subtask.model_validate_json(raw) if raw else None

    def get_task_progress(self, task_uuid: str) -> Optional[TaskProgress]:
        raw = self.redis.get(progress_key(task_uuid))
        return TaskProgress.model_validate_json(raw) if raw else None

    def get_user_active_tasks(self, user_id: str, limit: int = 20) -> list[MainTask]:
        """Most recent active tasks of a user, newest first."""
        task_uuids = self.redis.zrevrange(user_active_key(user_id), 0, limit - 1)
        tasks = []
        for task_uuid in task_uuids:
            task = self.get_main_task(task_uuid)
            if task:
                tasks.append(task)
        return tasks

    def iter_main_tasks(self) -> Iterator[MainTask]:
        """Walk every main task with a cursor scan."""
        for key in self.redis.scan_iter(match=f"{MAIN_TASK_PREFIX}*", count=100):
            raw = self.redis.get(key)
            if raw:
                yield MainTask.model_validate_json(raw)

    def get_all_subtasks(self, task_uuid: str) -> list[Subtask]:
        """All subtasks of a task, ordered by batch index.

        Uses the per-task children index; tasks written without one fall back
        to scanning every subtask key.
        """
        subtask_uuids = self.redis.smembers(children_key(task_uuid))
        subtasks = []
        if subtask_uuids:
            for subtask_uuid in subtask_uuids:
                subtask = self.get_subtask(subtask_uuid)
                if subtask:
                    subtasks.append(subtask)
        else:
            for key in self.redis.scan_iter(match=f"{SUBTASK_PREFIX}*", count=100):
                raw = self.redis.get(key)
                if not raw:
                    continue
                subtask = Subtask.model_validate_json(raw)
                if subtask.parent_task_uuid == task_uuid:
                    subtasks.append(subtask)
        return sorted(subtasks, key=lambda s: s.batch_index)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_subtask(self, subtask_uuid: str, **updates: Any) -> Optional[Subtask]:
        """Read-merge-write a subtask. Missing subtasks are a warning, not an error."""
        key = subtask_key(subtask_uuid)

        def apply(pipe):
            raw = pipe.get(key)
            if not raw:
                return None
            current = Subtask.model_validate_json(raw)
            updated = current.model_copy(update={**updates, "updated_at": utcnow()})
            pipe.multi()
            pipe.set(key, updated.model_dump_json(), ex=self.task_ttl)
            return updated

        updated = self.redis.transaction(apply, key, value_from_callable=True)
        if updated is None:
            logger.warning(f"⚠️ Subtask to update not found: {subtask_uuid}")
        else:
            logger.debug(f"Subtask {subtask_uuid} updated: status={updated.status.value}")
        return updated

    def update_main_task_progress(self, task_uuid: str, **updates: Any) -> Optional[MainTask]:
        """Merge updates into the main task and refresh its progress snapshot.

        Missing tasks are logged and ignored.
        """
        return self._mutate_main_task(task_uuid, lambda task: _merge_task(task, updates))

    def record_batch_completion(
        self, task_uuid: str, success_count: int, failed_count: int
    ) -> Optional[MainTask]:
        """Count one finished batch and its item outcomes against the main task."""

        def increment(task: MainTask) -> MainTask:
            return _merge_task(
                task,
                {
                    "completed_batches": task.completed_batches + 1,
                    "success_count": task.success_count + success_count,
                    "failed_count": task.failed_count + failed_count,
                },
            )

        return self._mutate_main_task(task_uuid, increment)

    def _mutate_main_task(self, task_uuid: str, mutate) -> Optional[MainTask]:
        key = main_task_key(task_uuid)

        def apply(pipe):
            raw = pipe.get(key)
            if not raw:
                return None
            updated = mutate(MainTask.model_validate_json(raw))
            pipe.multi()
            pipe.set(key, updated.model_dump_json(), ex=self.task_ttl)
            pipe.set(
                progress_key(task_uuid),
                TaskProgress.from_task(updated).model_dump_json(),
                ex=self.progress_ttl,
            )
            return updated

        updated = self.redis.transaction(apply, key, value_from_callable=True)
        if updated is None:
            logger.warning(f"⚠️ Main task to update not found: {task_uuid}")
            return None

        logger.info(
            f"📊 Task {task_uuid} progress: {updated.completed_batches}/{updated.total_batches} "
            f"({updated.progress_percentage}%), status={updated.status.value}"
        )
        return updated

    def remove_active_task(self, user_id: str, task_uuid: str) -> None:
        self.redis.zrem(user_active_key(user_id), task_uuid)
        logger.info(f"🧹 Task {task_uuid} removed from active tasks of user {user_id}")

    def save_task_results(self, task_uuid: str, results: dict) -> None:
        self.redis.set(results_key(task_uuid), json.dumps(results), ex=self.task_ttl)

    def get_task_results(self, task_uuid: str) -> Optional[dict]:
        raw = self.redis.get(results_key(task_uuid))
        return json.loads(raw) if raw else None

    def clear_all_batch_data(self) -> int:
        """Delete every batch key. Returns the number of keys removed."""
        removed = 0
        for prefix in (
            MAIN_TASK_PREFIX,
            SUBTASK_PREFIX,
            QUEUE_PREFIX,
            PROGRESS_PREFIX,
            RESULTS_PREFIX,
            CHILDREN_PREFIX,
            USER_ACTIVE_PREFIX,
        ):
            keys = list(self.redis.scan_iter(match=f"{prefix}*", count=500))
            if keys:
                removed += self.redis.delete(*keys)
                logger.info(f"🧹 Cleared {len(keys)} keys matching {prefix}*")
        return removed


def _merge_task(task: MainTask, updates: dict) -> MainTask:
    """Apply updates without breaking the main task invariants.

    completed_batches never decreases nor passes total_batches, and a
    terminal status is never left. Once a task is terminal its counters
    are frozen.
    """
    updates = dict(updates)

    if task.is_terminal:
        frozen = [name for name in COUNTER_FIELDS if name in updates]
        for name in frozen:
            del updates[name]
        if frozen:
            logger.warning(
                f"⚠️ Ignoring counter update {frozen} for finished task {task.uuid} "
                f"({task.status.value})"
            )

    if "completed_batches" in updates:
        updates["completed_batches"] = min(
            task.total_batches,
            max(task.completed_batches, updates["completed_batches"]),
        )

    if "status" in updates:
        new_status = TaskStatus(updates["status"])
        if task.is_terminal and new_status != task.status:
            logger.warning(
                f"⚠️ Ignoring status change {task.status.value} -> {new_status.value} "
                f"for finished task {task.uuid}"
            )
            new_status = task.status
        updates["status"] = new_status

    updates["updated_at"] = utcnow()
    return task.model_copy(update=updates)


__all__ = [
    "BatchTaskStore",
    "TERMINAL_TASK_STATUSES",
    "main_task_key",
    "subtask_key",
    "queue_key",
    "progress_key",
    "results_key",
    "children_key",
    "user_active_key",
]
