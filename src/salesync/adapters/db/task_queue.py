"""Persistent queue of per-(credential, date) sync tasks.

Tasks survive process restarts; `reset_in_progress_tasks` is the crash
recovery hook and must run before a populate phase starts.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from salesync.adapters.db.facade import DB, delete_sales_for
from salesync.adapters.db.models import (
    PENDING_STATUSES,
    SyncTask,
    TaskStatus,
    TaskStatusCounts,
    create_task_id,
)


class TaskQueueStore:
    """Task queue operations backed by the `sync_tasks` table."""

    def __init__(self, db: DB) -> None:
        self._db = db

    def create_tasks(self, api_key_id: str, dates: Sequence[str]) -> int:
        """Create `todo` tasks for changed dates.

        Deletes previously stored sales for each (credential, date) and inserts
        or overwrites its task, all inside one transaction.

        Args:
            api_key_id: Credential the dates belong to
            dates: Changed date keys returned by discovery

        Returns:
            Number of tasks written
        """
        unique_dates = list(dict.fromkeys(dates))
        if not unique_dates:
            return 0

        now = datetime.now(UTC)
        with self._db.session() as session:  # type: Session
            for date in unique_dates:
                delete_sales_for(session, api_key_id, date)
                task_id = create_task_id(api_key_id, date)
                task = session.get(SyncTask, task_id)
                if task is None:
                    session.add(
                        SyncTask(
                            id=task_id,
                            api_key_id=api_key_id,
                            date=date,
                            status=TaskStatus.TODO.value,
                            created_at=now,
                        )
                    )
                else:
                    task.status = TaskStatus.TODO.value
                    task.created_at = now
                    task.completed_at = None
                    task.error = None
        return len(unique_dates)

    def get_pending_tasks(self) -> list[SyncTask]:
        """Return todo and in_progress tasks, in no particular order."""
        return self._select_tasks(SyncTask.status.in_(PENDING_STATUSES))

    def get_pending_tasks_for_credential(self, api_key_id: str) -> list[SyncTask]:
        return self._select_tasks(
            SyncTask.status.in_(PENDING_STATUSES),
            SyncTask.api_key_id == api_key_id,
        )

    def get_task(self, task_id: str) -> SyncTask | None:
        with self._db.session() as session:  # type: Session
            task = session.get(SyncTask, task_id)
            if task:
                session.expunge(task)
            return task

    def mark_in_progress(self, task_id: str) -> None:
        with self._db.session() as session:  # type: Session
            session.execute(
                update(SyncTask)
                .where(SyncTask.id == task_id)
                .values(status=TaskStatus.IN_PROGRESS.value)
            )

    def mark_done(self, task_id: str, *, error: str | None = None) -> None:
        """Mark a task done, recording the failure reason if there was one."""
        with self._db.session() as session:  # type: Session
            session.execute(
                update(SyncTask)
                .where(SyncTask.id == task_id)
                .values(
                    status=TaskStatus.DONE.value,
                    completed_at=datetime.now(UTC),
                    error=error,
                )
            )

    def reset_in_progress_tasks(self) -> int:
        """Revert tasks left in_progress by a crashed run back to todo."""
        with self._db.session() as session:  # type: Session
            result = session.execute(
                update(SyncTask)
                .where(SyncTask.status == TaskStatus.IN_PROGRESS.value)
                .values(status=TaskStatus.TODO.value)
            )
            return int(result.rowcount or 0)

    def requeue_failed_tasks(self) -> int:
        """Send tasks that finished with an error back to todo."""
        with self._db.session() as session:  # type: Session
            result = session.execute(
                update(SyncTask)
                .where(
                    SyncTask.status == TaskStatus.DONE.value,
                    SyncTask.error.is_not(None),
                )
                .values(status=TaskStatus.TODO.value, error=None, completed_at=None)
            )
            return int(result.rowcount or 0)

    def count_pending_tasks(self) -> dict[str, int]:
        """Count pending tasks grouped by credential."""
        with self._db.session() as session:  # type: Session
            rows = session.execute(
                select(SyncTask.api_key_id, func.count())
                .where(SyncTask.status.in_(PENDING_STATUSES))
                .group_by(SyncTask.api_key_id)
            ).all()
            return {api_key_id: int(count) for api_key_id, count in rows}

    def count_all_pending_tasks(self) -> int:
        with self._db.session() as session:  # type: Session
            count = session.execute(
                select(func.count())
                .select_from(SyncTask)
                .where(SyncTask.status.in_(PENDING_STATUSES))
            ).scalar_one()
            return int(count)

    def status_counts(self, api_key_id: str | None = None) -> TaskStatusCounts:
        """Summarize tasks as pending / completed / failed."""
        with self._db.session() as session:  # type: Session
            query = select(
                SyncTask.status, SyncTask.error.is_not(None), func.count()
            ).group_by(SyncTask.status, SyncTask.error.is_not(None))
            if api_key_id is not None:
                query = query.where(SyncTask.api_key_id == api_key_id)

            counts = TaskStatusCounts(pending=0, completed=0, failed=0)
            for status, has_error, count in session.execute(query).all():
                if status in PENDING_STATUSES:
                    counts.pending += int(count)
                elif has_error:
                    counts.failed += int(count)
                else:
                    counts.completed += int(count)
            return counts

    def clear_completed_tasks(self) -> int:
        with self._db.session() as session:  # type: Session
            result = session.execute(
                delete(SyncTask).where(SyncTask.status == TaskStatus.DONE.value)
            )
            return int(result.rowcount or 0)

    def clear_all(self) -> int:
        with self._db.session() as session:  # type: Session
            result = session.execute(delete(SyncTask))
            return int(result.rowcount or 0)

    def _select_tasks(self, *conditions: object) -> list[SyncTask]:
        with self._db.session() as session:  # type: Session
            tasks = list(session.scalars(select(SyncTask).where(*conditions)))
            for task in tasks:
                session.expunge(task)
            return tasks
