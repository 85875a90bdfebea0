"""Tests for the Redis task store, work queue and progress tracker."""
from app.schemas.batch_task import MainTask, SubtaskStatus, TaskStatus, utcnow
from app.services.batch_store import (
    BatchTaskStore,
    children_key,
    main_task_key,
    progress_key,
    queue_key,
    user_active_key,
)


def test_create_main_task_writes_record_index_and_progress(store, redis_client, make_task):
    """Main task, active index entry and zeroed progress are written together."""
    task, _ = make_task(["A", "B"])

    assert store.get_main_task(task.uuid).total_batches == 2
    assert redis_client.zscore(user_active_key(task.user_id), task.uuid) is not None
    progress = store.get_task_progress(task.uuid)
    assert progress.completed_batches == 0
    assert progress.progress_percentage == 0
    assert progress.status == TaskStatus.PENDING
    assert redis_client.ttl(main_task_key(task.uuid)) > 0
    assert redis_client.ttl(progress_key(task.uuid)) > 0


def test_queue_is_fifo_by_batch_index(store, make_task):
    """Subtasks come off the queue in ascending batch_index order."""
    task, subtasks = make_task(["A", "B", "C"])

    popped = [store.get_next_pending_subtask(task.uuid) for _ in range(3)]

    assert [s.batch_index for s in popped] == [0, 1, 2]
    assert [s.resources[0].name for s in popped] == ["A", "B", "C"]
    assert store.get_next_pending_subtask(task.uuid) is None


def test_subtasks_are_queued_sorted_even_when_given_unsorted(store):
    """Enqueue order follows batch_index, not list order."""
    from app.schemas.batch_task import ResourceItem, Subtask

    subtasks = [
        Subtask(
            uuid=f"sub-{i}",
            parent_task_uuid="task-1",
            batch_index=i,
            resources=[ResourceItem(name=str(i), link="https://example.com")],
        )
        for i in (2, 0, 1)
    ]
    store.create_subtasks_and_queue("task-1", subtasks)

    assert [store.get_next_pending_subtask("task-1").batch_index for _ in range(3)] == [0, 1, 2]


def test_each_subtask_is_popped_at_most_once(redis_client, make_task):
    """Two consumers sharing the queue never receive the same subtask."""
    task, subtasks = make_task(["A", "B", "C", "D"])
    first = BatchTaskStore(redis_client)
    second = BatchTaskStore(redis_client)

    popped = []
    for consumer in (first, second, first, second, first, second):
        subtask = consumer.get_next_pending_subtask(task.uuid)
        if subtask:
            popped.append(subtask.uuid)

    assert sorted(popped) == sorted(s.uuid for s in subtasks)
    assert len(popped) == len(set(popped))


def test_queued_uuid_without_record_returns_none(store, redis_client, make_task):
    """A queue entry whose record expired is consumed and reported as no work."""
    task, subtasks = make_task(["A", "B"])
    redis_client.delete(f"batch:sub:{subtasks[0].uuid}")

    assert store.get_next_pending_subtask(task.uuid) is None
    assert store.get_remaining_subtask_count(task.uuid) == 1


def test_progress_percentage_follows_completed_batches(store, make_task):
    task, _ = make_task(["A", "B", "C"])

    percentages = []
    for _ in range(3):
        updated = store.record_batch_completion(task.uuid, success_count=1, failed_count=0)
        percentages.append(updated.progress_percentage)
        snapshot = store.get_task_progress(task.uuid)
        assert snapshot.progress_percentage == updated.progress_percentage
        assert snapshot.completed_batches == updated.completed_batches

    assert percentages == [33, 67, 100]
    assert store.get_main_task(task.uuid).success_count == 3


def test_completed_batches_never_decreases_or_exceeds_total(store, make_task):
    """completed_batches stays between its current value and the total."""
    task, _ = make_task(["A", "B"])
    store.record_batch_completion(task.uuid, 1, 0)
    store.record_batch_completion(task.uuid, 1, 0)

    updated = store.update_main_task_progress(task.uuid, completed_batches=1)
    assert updated.completed_batches == 2

    updated = store.record_batch_completion(task.uuid, 0, 0)
    assert updated.completed_batches == 2


def test_terminal_status_is_never_left(store, make_task):
    """A finished task keeps its terminal status."""
    task, _ = make_task(["A"])
    store.update_main_task_progress(task.uuid, status=TaskStatus.COMPLETED)

    updated = store.update_main_task_progress(task.uuid, status=TaskStatus.PROCESSING)

    assert updated.status == TaskStatus.COMPLETED


def test_counters_are_frozen_once_terminal(store, make_task):
    """Late batch completions do not touch a finished task."""
    task, _ = make_task(["A", "B"])
    store.update_main_task_progress(task.uuid, status=TaskStatus.FAILED)

    updated = store.record_batch_completion(task.uuid, success_count=1, failed_count=0)

    assert updated.status == TaskStatus.FAILED
    assert updated.completed_batches == 0
    assert updated.success_count == 0
    assert store.get_task_progress(task.uuid).completed_batches == 0


def test_updates_on_missing_records_are_noops(store):
    assert store.update_main_task_progress("missing", completed_batches=1) is None
    assert store.update_subtask("missing", status=SubtaskStatus.COMPLETED) is None
    assert store.get_main_task("missing") is None
    assert store.get_subtask("missing") is None
    assert store.get_task_progress("missing") is None


def test_update_subtask_merges_fields(store, make_task):
    """Subtask updates merge into the stored record."""
    _, subtasks = make_task(["A"])

    updated = store.update_subtask(
        subtasks[0].uuid, status=SubtaskStatus.PROCESSING, started_at=utcnow()
    )

    assert updated.status == SubtaskStatus.PROCESSING
    assert updated.started_at is not None
    assert store.get_subtask(subtasks[0].uuid).resources[0].name == "A"


def test_active_index_keeps_most_recent_entries(redis_client):
    """The active index is trimmed to the newest entries."""
    store = BatchTaskStore(redis_client, max_user_active_tasks=2)
    for i in range(3):
        task = MainTask(
            uuid=f"task-{i}",
            user_id="user-1",
            title="t",
            total_resources=1,
            total_batches=1,
        )
        task.created_at = task.created_at.replace(microsecond=0).replace(second=i)
        store.create_main_task(task)

    active = [t.uuid for t in store.get_user_active_tasks("user-1")]

    assert active == ["task-2", "task-1"]


def test_remove_active_task(store, make_task):
    """Removing a task drops it from the user's active index."""
    task, _ = make_task(["A"])

    store.remove_active_task(task.user_id, task.uuid)

    assert store.get_user_active_tasks(task.user_id) == []


def test_get_all_subtasks_uses_index_and_falls_back_to_scan(store, redis_client, make_task):
    """Subtasks are found through the index, or by scan without one."""
    task, subtasks = make_task(["A", "B", "C"])
    make_task(["other"])

    indexed = store.get_all_subtasks(task.uuid)
    redis_client.delete(children_key(task.uuid))
    scanned = store.get_all_subtasks(task.uuid)

    expected = [s.uuid for s in subtasks]
    assert [s.uuid for s in indexed] == expected
    assert [s.uuid for s in scanned] == expected


def test_task_results_round_trip(store):
    """Saved task results read back unchanged."""
    store.save_task_results("task-1", {"failed_resources": [{"name": "A"}]})

    assert store.get_task_results("task-1") == {"failed_resources": [{"name": "A"}]}
    assert store.get_task_results("task-2") is None


def test_clear_all_batch_data(store, redis_client, make_task):
    """Clearing removes every batch key."""
    task, _ = make_task(["A", "B"])
    redis_client.set("unrelated", "1")

    removed = store.clear_all_batch_data()

    assert removed > 0
    assert store.get_main_task(task.uuid) is None
    assert redis_client.exists(queue_key(task.uuid)) == 0
    assert redis_client.get("unrelated") == "1"
