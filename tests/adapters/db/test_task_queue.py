from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy import event

from salesync.adapters.db.facade import DB
from salesync.adapters.db.models import TaskStatus, create_task_id
from salesync.adapters.db.task_queue import TaskQueueStore


def test_create_tasks_is_idempotent_per_credential_date(db: DB) -> None:
    queue = TaskQueueStore(db)

    queue.create_tasks("K1", ["2024-01-01", "2024-01-02"])
    queue.create_tasks("K1", ["2024-01-02", "2024-01-02", "2024-01-03"])

    tasks = queue.get_pending_tasks()
    assert sorted(task.id for task in tasks) == [
        "K1|2024-01-01",
        "K1|2024-01-02",
        "K1|2024-01-03",
    ]
    assert {task.status for task in tasks} == {TaskStatus.TODO.value}


def test_create_tasks_deletes_previously_stored_records(db: DB, make_record) -> None:
    queue = TaskQueueStore(db)
    db.store_records(
        [
            make_record(date="2024-01-01"),
            make_record(date="2024-01-02"),
            make_record(api_key_id="K2", date="2024-01-01"),
        ]
    )

    queue.create_tasks("K1", ["2024-01-01"])

    assert db.existing_dates("K1") == {"2024-01-02"}
    assert db.existing_dates("K2") == {"2024-01-01"}


def test_create_tasks_rolls_back_everything_when_a_statement_fails(
    db: DB, make_record
) -> None:
    # setup
    queue = TaskQueueStore(db)
    db.store_records(
        [make_record(date="2024-01-01"), make_record(date="2024-01-02")]
    )
    sales_deletes = 0

    def fail_on_second_sales_delete(
        conn: Any, cursor: Any, statement: str, *args: Any
    ) -> None:
        nonlocal sales_deletes
        if statement.startswith("DELETE FROM sales"):
            sales_deletes += 1
            if sales_deletes == 2:
                raise RuntimeError("disk I/O error")

    event.listen(db._engine, "before_cursor_execute", fail_on_second_sales_delete)

    # act
    try:
        with pytest.raises(RuntimeError, match="disk I/O error"):
            queue.create_tasks("K1", ["2024-01-01", "2024-01-02"])
    finally:
        event.remove(
            db._engine, "before_cursor_execute", fail_on_second_sales_delete
        )

    # assert
    assert sales_deletes == 2
    assert db.existing_dates("K1") == {"2024-01-01", "2024-01-02"}
    assert queue.get_pending_tasks() == []


def test_create_tasks_resets_done_task_to_todo(db: DB) -> None:
    queue = TaskQueueStore(db)
    queue.create_tasks("K1", ["2024-01-01"])
    task_id = create_task_id("K1", "2024-01-01")
    queue.mark_done(task_id, error="boom")

    queue.create_tasks("K1", ["2024-01-01"])

    task = queue.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.TODO.value
    assert task.error is None
    assert task.completed_at is None


def test_status_transitions_are_idempotent(db: DB) -> None:
    queue = TaskQueueStore(db)
    queue.create_tasks("K1", ["2024-01-01"])
    task_id = create_task_id("K1", "2024-01-01")

    queue.mark_in_progress(task_id)
    queue.mark_in_progress(task_id)
    assert queue.get_task(task_id).status == TaskStatus.IN_PROGRESS.value

    queue.mark_done(task_id)
    queue.mark_done(task_id)
    task = queue.get_task(task_id)
    assert task.status == TaskStatus.DONE.value
    assert task.completed_at is not None

    # Unknown ids are ignored.
    queue.mark_in_progress("missing|2024-01-01")
    queue.mark_done("missing|2024-01-01")


def test_reset_in_progress_tasks_recovers_interrupted_work(db: DB) -> None:
    queue = TaskQueueStore(db)
    queue.create_tasks("K1", ["2024-01-01", "2024-01-02", "2024-01-03"])
    queue.mark_in_progress("K1|2024-01-01")
    queue.mark_in_progress("K1|2024-01-02")
    queue.mark_done("K1|2024-01-02")

    assert queue.reset_in_progress_tasks() == 1

    statuses = {task.id: task.status for task in queue.get_pending_tasks()}
    assert statuses == {
        "K1|2024-01-01": TaskStatus.TODO.value,
        "K1|2024-01-03": TaskStatus.TODO.value,
    }


def test_pending_counts_include_in_progress(db: DB) -> None:
    queue = TaskQueueStore(db)
    queue.create_tasks("K1", ["2024-01-01", "2024-01-02"])
    queue.create_tasks("K2", ["2024-01-01"])
    queue.mark_in_progress("K1|2024-01-01")
    queue.mark_done("K2|2024-01-01")

    assert queue.count_pending_tasks() == {"K1": 2}
    assert queue.count_all_pending_tasks() == 2
    assert [t.id for t in queue.get_pending_tasks_for_credential("K2")] == []


def test_requeue_failed_tasks_only_touches_errored_tasks(db: DB) -> None:
    queue = TaskQueueStore(db)
    queue.create_tasks("K1", ["2024-01-01", "2024-01-02"])
    queue.mark_done("K1|2024-01-01")
    queue.mark_done("K1|2024-01-02", error="HTTP 500")

    counts = queue.status_counts()
    assert (counts.pending, counts.completed, counts.failed) == (0, 1, 1)

    assert queue.requeue_failed_tasks() == 1
    assert queue.clear_completed_tasks() == 1

    pending = queue.get_pending_tasks()
    assert [task.id for task in pending] == ["K1|2024-01-02"]
    assert pending[0].error is None


def test_clear_all_removes_every_task(db: DB) -> None:
    queue = TaskQueueStore(db)
    queue.create_tasks("K1", ["2024-01-01"])
    queue.create_tasks("K2", ["2024-01-01", "2024-01-02"])
    queue.mark_done("K2|2024-01-01")

    assert queue.count_pending_tasks() == {"K1": 1, "K2": 1}
    assert queue.clear_all() == 3
    assert queue.count_all_pending_tasks() == 0
