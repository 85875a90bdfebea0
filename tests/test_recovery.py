"""Tests for the recovery lock and the recovery supervisor."""
from datetime import timedelta

import redis

from app.schemas.batch_task import SubtaskResult, SubtaskStatus, TaskStatus, utcnow
from app.services.recovery import RecoverySupervisor
from app.services.recovery_lock import RecoveryLock, recovery_lock_key


def no_sleep(seconds):
    pass


def test_lock_is_exclusive(redis_client):
    """A held lock cannot be taken twice."""
    first = RecoveryLock(redis_client, "task-1", sleep=no_sleep)
    second = RecoveryLock(redis_client, "task-1", sleep=no_sleep)

    assert first.acquire() is True
    assert second.acquire() is False
    assert first.release() is True
    assert second.acquire() is True
    second.release()


def test_lock_has_ttl(redis_client):
    """The lock expires on its own."""
    lock = RecoveryLock(redis_client, "task-1", ttl_seconds=120, sleep=no_sleep)
    lock.acquire()

    assert 0 < redis_client.pttl(recovery_lock_key("task-1")) <= 120_000
    lock.release()


def test_release_never_deletes_another_owners_lock(redis_client):
    """Releasing never removes a lock taken over by someone else."""
    lock = RecoveryLock(redis_client, "task-1", sleep=no_sleep)
    lock.acquire()
    # Our lease ran out and another process took the lock
    redis_client.set(recovery_lock_key("task-1"), "someone-else")

    assert lock.release() is False
    assert redis_client.get(recovery_lock_key("task-1")) == "someone-else"


def test_acquire_retries_with_backoff(redis_client):
    """Acquiring retries with growing waits."""
    sleeps = []
    redis_client.set(recovery_lock_key("task-1"), "holder")
    lock = RecoveryLock(redis_client, "task-1", attempts=3, backoff=0.2, sleep=sleeps.append)

    assert lock.acquire() is False
    assert sleeps == [0.2, 0.4]


def test_acquire_gives_up_when_redis_is_unreachable(redis_client, monkeypatch):
    """An unreachable Redis means the lock is not acquired."""
    lock = RecoveryLock(redis_client, "task-1", sleep=no_sleep)

    def unreachable(*args, **kwargs):
        raise redis.ConnectionError("down")

    monkeypatch.setattr(redis_client, "set", unreachable)

    assert lock.acquire() is False


def test_recover_task_skips_when_lock_is_held(recovery, store, redis_client, seeded, make_task):
    """A task under another recovery is left alone."""
    task, _ = make_task(["A", "B"])
    redis_client.set(recovery_lock_key(task.uuid), "other-recovery")

    assert recovery.recover_task(task.uuid) is False
    assert store.get_remaining_subtask_count(task.uuid) == 2
    assert store.get_main_task(task.uuid).completed_batches == 0
    assert redis_client.get(recovery_lock_key(task.uuid)) == "other-recovery"


def test_recover_task_drives_queued_subtasks(recovery, store, redis_client, seeded, make_task):
    """Queued subtasks are processed to the end."""
    task, _ = make_task(["A", "B", "C"])

    assert recovery.recover_task(task.uuid) is True

    final = store.get_main_task(task.uuid)
    assert final.status == TaskStatus.COMPLETED
    assert final.completed_batches == 3
    assert redis_client.exists(recovery_lock_key(task.uuid)) == 0


def test_recover_task_finalizes_when_all_subtasks_finished(recovery, store, seeded, make_task):
    """A task with every batch done is finalized."""
    task, subtasks = make_task(["A", "B"])
    for subtask in subtasks:
        store.get_next_pending_subtask(task.uuid)
        store.update_subtask(
            subtask.uuid,
            status=SubtaskStatus.COMPLETED,
            success_count=1,
            results=[SubtaskResult(name=subtask.resources[0].name, success=True, uuid="r")],
            completed_at=utcnow(),
        )

    assert recovery.recover_task(task.uuid) is True

    final = store.get_main_task(task.uuid)
    assert final.status == TaskStatus.COMPLETED
    assert final.completed_batches == 2
    assert final.success_count == 2


def test_recover_task_reports_unresolvable_state(recovery, store, seeded, make_task):
    """A task with lost work is reported, not recovered."""
    task, _ = make_task(["A", "B"])
    # Work was popped but never finished
    store.get_next_pending_subtask(task.uuid)
    store.get_next_pending_subtask(task.uuid)

    assert recovery.recover_task(task.uuid) is False
    assert store.get_main_task(task.uuid).status == TaskStatus.PENDING


def test_recover_missing_or_finished_task(recovery, store, make_task):
    """Missing and finished tasks are not recovered."""
    assert recovery.recover_task("missing") is False

    task, _ = make_task(["A"])
    store.update_main_task_progress(task.uuid, status=TaskStatus.COMPLETED)
    assert recovery.recover_task(task.uuid) is False


def test_sweep_only_recovers_stale_tasks(store, coordinator, settings, seeded, make_task):
    """The sweep only touches tasks idle past the timeout."""
    stale, _ = make_task(["A"])
    finished, _ = make_task(["B"])
    store.update_main_task_progress(finished.uuid, status=TaskStatus.COMPLETED)

    fresh_sweep = RecoverySupervisor(store, coordinator, settings, sleep=no_sleep)
    assert fresh_sweep.check_and_recover_stuck_tasks() == []

    later = RecoverySupervisor(
        store,
        coordinator,
        settings,
        sleep=no_sleep,
        now=lambda: utcnow() + timedelta(seconds=settings.task_recovery_timeout + 1),
    )
    assert later.check_and_recover_stuck_tasks() == [stale.uuid]
    assert store.get_main_task(stale.uuid).status == TaskStatus.COMPLETED
