"""SQLModel-backed task store."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, delete, select

from task_tree.core.errors import StoreError
from task_tree.core.models import NewTask, Task, TaskStatus
from task_tree.core.ordering import sort_by_task_number
from task_tree.storage.alembic_runner import upgrade_head
from task_tree.storage.base import check_update_fields
from task_tree.storage.common import (
    build_sqlite_engine,
    connect_sqlite_with_policy,
    utc_now,
)
from task_tree.storage.sqlmodel_models import TaskDependencyRow, TaskRow

logger = logging.getLogger(__name__)
T = TypeVar("T")

_JSON_LIST_FIELDS = {"files": "files_json", "docs_references": "docs_references_json"}


class SQLiteTaskStore:
    """Facade that persists tasks using SQLModel and Alembic.

    One SQLModel ``Session`` is shared by everything running inside
    ``transaction()``; nested calls open savepoints on it, so an inner
    failure only rolls back its own work unless it propagates.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._session: Session | None = None

        # Keep low-level connection for tests and ad-hoc debugging queries.
        self._connection = connect_sqlite_with_policy(
            db_path=db_path,
            busy_timeout_ms=busy_timeout_ms,
        )

    def close(self) -> None:
        self._connection.close()
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Open the outer transaction, or a savepoint when one is already active."""

        try:
            if self._session is not None:
                with self._session.begin_nested():
                    yield self._session
                return

            session = Session(self.engine, expire_on_commit=False)
            self._session = session
            try:
                with session.begin():
                    yield session
            finally:
                self._session = None
                session.close()
        except SQLAlchemyError as error:
            raise StoreError(
                f"Task store operation failed: {error}",
                details={"error": repr(error), "db_path": str(self.db_path)},
            ) from error

    def run_in_transaction(self, fn: Callable[[], T]) -> T:
        with self.transaction():
            return fn()

    def get(self, task_number: str) -> Task | None:
        with self._session_scope() as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_number == task_number)).first()
            if row is None:
                return None
            return self._to_tasks(session, [row])[0]

    def get_by_id(self, task_id: int) -> Task | None:
        with self._session_scope() as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                return None
            return self._to_tasks(session, [row])[0]

    def insert(self, task: NewTask) -> int:
        now = _to_db_datetime(utc_now())
        with self._session_scope() as session:
            row = TaskRow(
                parent_id=task.parent_id,
                task_number=task.task_number,
                name=task.name,
                description=task.description,
                status=task.status.value,
                priority=task.priority,
                completion_percentage=task.completion_percentage,
                completion_notes=task.completion_notes,
                notes=task.notes,
                files_json=json.dumps(task.files, ensure_ascii=False),
                docs_references_json=json.dumps(task.docs_references, ensure_ascii=False),
                testing_strategy=task.testing_strategy,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            if row.id is None:
                raise StoreError(
                    "Failed to persist task",
                    details={"task_number": task.task_number},
                )
            return int(row.id)

    def update(self, task_number: str, changes: Mapping[str, Any]) -> None:
        check_update_fields(changes)
        with self._session_scope() as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_number == task_number)).first()
            if row is None:
                return
            for name, value in changes.items():
                if name in _JSON_LIST_FIELDS:
                    payload = json.dumps(list(value), ensure_ascii=False)
                    setattr(row, _JSON_LIST_FIELDS[name], payload)
                elif name == "status":
                    row.status = TaskStatus(value).value
                else:
                    setattr(row, name, value)
            row.updated_at = _to_db_datetime(utc_now())
            session.add(row)
            session.flush()

    def delete(self, task_number: str) -> bool:
        with self._session_scope() as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_number == task_number)).first()
            if row is None or row.id is None:
                return False

            doomed = {row.id}
            frontier = [row.id]
            while frontier:
                child_ids = session.exec(
                    select(TaskRow.id).where(col(TaskRow.parent_id).in_(frontier)),
                ).all()
                frontier = [child_id for child_id in child_ids if child_id not in doomed]
                doomed.update(frontier)

            session.exec(
                delete(TaskDependencyRow).where(
                    col(TaskDependencyRow.task_id).in_(doomed)
                    | col(TaskDependencyRow.depends_on_id).in_(doomed),
                ),
            )
            session.exec(delete(TaskRow).where(col(TaskRow.id).in_(doomed)))
            session.flush()
            logger.debug("Deleted task %s with %d row(s)", task_number, len(doomed))
            return True

    def list_all(self) -> list[Task]:
        with self._session_scope() as session:
            rows = session.exec(select(TaskRow).order_by(col(TaskRow.id))).all()
            return self._to_tasks(session, rows)

    def list_children(self, parent_id: int) -> list[Task]:
        with self._session_scope() as session:
            rows = session.exec(
                select(TaskRow).where(TaskRow.parent_id == parent_id).order_by(col(TaskRow.id)),
            ).all()
            return self._to_tasks(session, rows)

    def list_dependencies(self, task_id: int) -> list[Task]:
        with self._session_scope() as session:
            rows = session.exec(
                select(TaskRow)
                .join(TaskDependencyRow, col(TaskDependencyRow.depends_on_id) == col(TaskRow.id))
                .where(TaskDependencyRow.task_id == task_id)
                .order_by(col(TaskDependencyRow.id)),
            ).all()
            return self._to_tasks(session, rows)

    def list_dependents(self, task_id: int) -> list[Task]:
        with self._session_scope() as session:
            rows = session.exec(
                select(TaskRow)
                .join(TaskDependencyRow, col(TaskDependencyRow.task_id) == col(TaskRow.id))
                .where(TaskDependencyRow.depends_on_id == task_id)
                .order_by(col(TaskDependencyRow.id)),
            ).all()
            return self._to_tasks(session, rows)

    def list_dependency_edges(self) -> list[tuple[int, int]]:
        with self._session_scope() as session:
            rows = session.exec(
                select(TaskDependencyRow.task_id, TaskDependencyRow.depends_on_id).order_by(
                    col(TaskDependencyRow.id),
                ),
            ).all()
            return [(int(task_id), int(depends_on_id)) for task_id, depends_on_id in rows]

    def add_dependency(self, task_id: int, depends_on_id: int) -> None:
        with self._session_scope() as session:
            existing = session.exec(
                select(TaskDependencyRow).where(
                    TaskDependencyRow.task_id == task_id,
                    TaskDependencyRow.depends_on_id == depends_on_id,
                ),
            ).first()
            if existing is not None:
                return
            session.add(TaskDependencyRow(task_id=task_id, depends_on_id=depends_on_id))
            session.flush()

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        """Join the active transaction, or run in a short one of our own."""

        if self._session is not None:
            try:
                yield self._session
            except SQLAlchemyError as error:
                raise StoreError(
                    f"Task store operation failed: {error}",
                    details={"error": repr(error), "db_path": str(self.db_path)},
                ) from error
            return
        with self.transaction() as session:
            yield session

    def _to_tasks(self, session: Session, rows: Iterable[TaskRow]) -> list[Task]:
        rows = list(rows)
        task_ids = [row.id for row in rows if row.id is not None]
        dependencies: dict[int, list[str]] = {task_id: [] for task_id in task_ids}
        if task_ids:
            edges = session.exec(
                select(TaskDependencyRow.task_id, TaskRow.task_number)
                .join(TaskRow, col(TaskRow.id) == col(TaskDependencyRow.depends_on_id))
                .where(col(TaskDependencyRow.task_id).in_(task_ids)),
            ).all()
            for task_id, depends_on_number in edges:
                dependencies[int(task_id)].append(depends_on_number)
        return [_to_task(row, dependencies.get(int(row.id or 0), [])) for row in rows]


def _to_task(row: TaskRow, dependencies: list[str]) -> Task:
    if row.id is None:
        raise StoreError("Task row without id", details={"task_number": row.task_number})
    return Task(
        id=int(row.id),
        parent_id=int(row.parent_id) if row.parent_id is not None else None,
        task_number=row.task_number,
        name=row.name,
        description=row.description,
        status=TaskStatus(row.status),
        priority=int(row.priority),
        dependencies=sort_by_task_number(dependencies),
        completion_percentage=int(row.completion_percentage),
        completion_notes=row.completion_notes,
        notes=row.notes,
        files=_load_string_list(row.files_json),
        docs_references=_load_string_list(row.docs_references_json),
        testing_strategy=row.testing_strategy,
        created_at=_to_utc_aware_datetime(row.created_at),
        updated_at=_to_utc_aware_datetime(row.updated_at),
    )


def _load_string_list(payload: str | None) -> list[str]:
    if not payload:
        return []
    decoded = json.loads(payload)
    if not isinstance(decoded, list):
        return []
    return [str(item) for item in decoded]


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
