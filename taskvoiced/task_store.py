"""SQLite-backed persistent task list."""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Union

from .errors import PersistenceError

logger = logging.getLogger(__name__)

# Completed tasks stay visible for this long
RECENT_COMPLETION_WINDOW = timedelta(days=7)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    text TEXT NOT NULL,
    completed INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_completed ON tasks(completed);
"""

_COLUMNS = "id, text, completed, created_at, completed_at"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _casefold(value: Optional[str]) -> Optional[str]:
    # SQLite's LOWER() only folds ASCII
    return value.casefold() if value is not None else None


@dataclass(frozen=True)
class TaskRecord:
    """A persisted task. completed_at is set exactly when completed is true."""

    id: int
    text: str
    completed: bool
    created_at: str
    completed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TaskRecord":
        return cls(
            id=row["id"],
            text=row["text"],
            completed=bool(row["completed"]),
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )


class TaskStore:
    """Thread-safe task persistence on a single SQLite connection."""

    def __init__(self, db_path: Union[str, Path]):
        """Open (and if needed create) the task database.

        Args:
            db_path: Database file, or ":memory:".

        Raises:
            PersistenceError: If the database can't be opened.
        """
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.create_function("casefold", 1, _casefold, deterministic=True)
            with self._conn:
                self._conn.executescript(_SCHEMA_SQL)
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Failed to open task database {self.db_path}: {e}") from e
        logger.info(f"Task database ready at {self.db_path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _fetch_one(self, sql: str, params=()) -> Optional[TaskRecord]:
        row = self._conn.execute(sql, params).fetchone()
        return TaskRecord.from_row(row) if row else None

    def _get_locked(self, task_id: int) -> TaskRecord:
        record = self._fetch_one(f"SELECT {_COLUMNS} FROM tasks WHERE id = ?", (task_id,))
        if record is None:
            raise PersistenceError(f"Task {task_id} not found")
        return record

    def get(self, task_id: int) -> TaskRecord:
        try:
            with self._lock:
                return self._get_locked(task_id)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read task {task_id}: {e}") from e

    def list_active_or_recently_completed(self) -> List[TaskRecord]:
        """Open tasks plus tasks completed in the last week, open first, newest first."""
        cutoff = (datetime.now(timezone.utc) - RECENT_COMPLETION_WINDOW).isoformat(
            timespec="microseconds"
        )
        try:
            with self._lock:
                rows = self._conn.execute(
                    f"SELECT {_COLUMNS} FROM tasks "
                    "WHERE completed = 0 OR completed_at > ? "
                    "ORDER BY completed ASC, created_at DESC, id DESC",
                    (cutoff,),
                ).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to list tasks: {e}") from e
        return [TaskRecord.from_row(row) for row in rows]

    def insert(self, text: str) -> TaskRecord:
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute(
                    "INSERT INTO tasks (text, completed, created_at) VALUES (?, 0, ?)",
                    (text, _now()),
                )
                return self._get_locked(cursor.lastrowid)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to add task: {e}") from e

    def update_text(self, task_id: int, text: str) -> TaskRecord:
        try:
            with self._lock, self._conn:
                self._conn.execute("UPDATE tasks SET text = ? WHERE id = ?", (text, task_id))
                return self._get_locked(task_id)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to update task {task_id}: {e}") from e

    def set_completed(self, task_id: int, completed: bool) -> TaskRecord:
        """Set the completed flag, stamping or clearing completed_at with it."""
        completed_at = _now() if completed else None
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "UPDATE tasks SET completed = ?, completed_at = ? WHERE id = ?",
                    (int(completed), completed_at, task_id),
                )
                return self._get_locked(task_id)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to update task {task_id}: {e}") from e

    def delete(self, task_id: int) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to delete task {task_id}: {e}") from e

    def find_by_fuzzy_text(self, pattern: str, prefer_exact: bool) -> Optional[TaskRecord]:
        """Find one task whose text contains the pattern.

        With ``prefer_exact`` false the search is a case-sensitive substring
        match over open tasks, oldest first. With ``prefer_exact`` true it is
        case-insensitive over all tasks, ranking an exact full-text match
        first, then open before completed, then newest.
        """
        try:
            with self._lock:
                if not prefer_exact:
                    return self._fetch_one(
                        f"SELECT {_COLUMNS} FROM tasks "
                        "WHERE completed = 0 AND instr(text, ?) > 0 "
                        "ORDER BY id ASC LIMIT 1",
                        (pattern,),
                    )

                folded = pattern.casefold()
                return self._fetch_one(
                    f"SELECT {_COLUMNS} FROM tasks "
                    "WHERE instr(casefold(text), ?) > 0 "
                    "ORDER BY "
                    "CASE WHEN casefold(text) = ? THEN 0 ELSE 1 END, "
                    "completed ASC, created_at DESC, id DESC "
                    "LIMIT 1",
                    (folded, folded),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to search tasks: {e}") from e
