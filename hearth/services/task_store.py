"""
Task Storage Service for SQLite persistence.

Stores scheduled tasks, their run history and per-tenant preferences. The
database is the single source of truth for schedule state: the scheduler
re-reads it on every tick.
"""

from __future__ import annotations

import logging
import os
import random
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import aiosqlite

from hearth.models import ContextMode
from hearth.services.schedule import ScheduleType, to_iso

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "./data/tasks.db"

# Length of the result excerpt kept on the task and in run logs
RESULT_EXCERPT_CHARS = 200


class TaskStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


def new_task_id(now_ms: int | None = None) -> str:
    """Generate a task id of the form task-<epoch ms>-<6 base36 chars>."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choices(alphabet, k=6))
    return f"task-{now_ms}-{suffix}"


def excerpt(text: str | None) -> str | None:
    if text is None:
        return None
    return text[:RESULT_EXCERPT_CHARS]


@dataclass
class ScheduledTask:
    """A persisted single-shot prompt execution on a schedule."""

    id: str
    group_folder: str
    chat_jid: str
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    context_mode: ContextMode = ContextMode.ISOLATED
    status: TaskStatus = TaskStatus.ACTIVE
    next_run: str | None = None
    last_run: str | None = None
    last_result: str | None = None
    created_at: str = ""
    flagged_reason: str | None = None

    def to_snapshot(self) -> dict[str, Any]:
        """Shape exposed to sandboxes through the tasks snapshot."""
        return {
            "id": self.id,
            "groupFolder": self.group_folder,
            "prompt": self.prompt,
            "schedule_type": self.schedule_type.value,
            "schedule_value": self.schedule_value,
            "status": self.status.value,
            "next_run": self.next_run,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            **self.to_snapshot(),
            "chat_jid": self.chat_jid,
            "context_mode": self.context_mode.value,
            "last_run": self.last_run,
            "last_result": self.last_result,
            "created_at": self.created_at,
            "flagged_reason": self.flagged_reason,
        }


@dataclass
class TaskRunLog:
    """One execution record for a task."""

    task_id: str
    run_at: str
    duration_ms: int
    status: str
    result: str | None = None
    error: str | None = None
    id: int | None = None


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS scheduled_tasks (
    id TEXT PRIMARY KEY,
    group_folder TEXT NOT NULL,
    chat_jid TEXT NOT NULL,
    prompt TEXT NOT NULL,
    schedule_type TEXT NOT NULL,
    schedule_value TEXT NOT NULL,
    context_mode TEXT NOT NULL DEFAULT 'isolated',
    status TEXT NOT NULL DEFAULT 'active',
    next_run TEXT,
    last_run TEXT,
    last_result TEXT,
    created_at TEXT NOT NULL,
    flagged_reason TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_next_run ON scheduled_tasks(next_run);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON scheduled_tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_group ON scheduled_tasks(group_folder);

CREATE TABLE IF NOT EXISTS task_run_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    run_at TEXT NOT NULL,
    duration_ms INTEGER NOT NULL,
    status TEXT NOT NULL,
    result TEXT,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_run_logs_task ON task_run_logs(task_id, run_at);

CREATE TABLE IF NOT EXISTS preferences (
    group_folder TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (group_folder, key)
);
"""


def _row_to_task(row: aiosqlite.Row) -> ScheduledTask:
    return ScheduledTask(
        id=row["id"],
        group_folder=row["group_folder"],
        chat_jid=row["chat_jid"],
        prompt=row["prompt"],
        schedule_type=ScheduleType(row["schedule_type"]),
        schedule_value=row["schedule_value"],
        context_mode=ContextMode(row["context_mode"]),
        status=TaskStatus(row["status"]),
        next_run=row["next_run"],
        last_run=row["last_run"],
        last_result=row["last_result"],
        created_at=row["created_at"],
        flagged_reason=row["flagged_reason"],
    )


def _row_to_run_log(row: aiosqlite.Row) -> TaskRunLog:
    return TaskRunLog(
        id=row["id"],
        task_id=row["task_id"],
        run_at=row["run_at"],
        duration_ms=row["duration_ms"],
        status=row["status"],
        result=row["result"],
        error=row["error"],
    )


class TaskStore:
    """
    Service for storing and retrieving scheduled tasks.

    Uses SQLite via aiosqlite for async persistence.
    """

    def __init__(self, db_path: str | None = None):
        """
        Initialize the task store.

        Args:
            db_path: Path to SQLite database. Defaults to HEARTH_TASKS_DB or ./data/tasks.db
        """
        self._db_path = db_path or os.getenv("HEARTH_TASKS_DB", DEFAULT_DB_PATH)
        self._initialized = False

    @property
    def db_path(self) -> str:
        return self._db_path

    async def _ensure_initialized(self) -> None:
        """Initialize the database schema if needed."""
        if self._initialized:
            return

        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        async with aiosqlite.connect(self._db_path) as conn:
            await conn.executescript(_SCHEMA_SQL)
            await conn.commit()

        self._initialized = True
        logger.info("Initialized task storage schema at %s", self._db_path)

    async def create_task(self, task: ScheduledTask) -> ScheduledTask:
        """Insert a new task. created_at is filled in when empty."""
        await self._ensure_initialized()

        if not task.created_at:
            task.created_at = to_iso(datetime.now(timezone.utc))

        async with aiosqlite.connect(self._db_path) as conn:
            await conn.execute(
                """
                INSERT INTO scheduled_tasks (
                    id, group_folder, chat_jid, prompt, schedule_type,
                    schedule_value, context_mode, status, next_run, last_run,
                    last_result, created_at, flagged_reason
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.group_folder,
                    task.chat_jid,
                    task.prompt,
                    task.schedule_type.value,
                    task.schedule_value,
                    task.context_mode.value,
                    task.status.value,
                    task.next_run,
                    task.last_run,
                    task.last_result,
                    task.created_at,
                    task.flagged_reason,
                ),
            )
            await conn.commit()

        logger.info(
            "Created task %s for %s (%s %s)",
            task.id,
            task.group_folder,
            task.schedule_type.value,
            task.schedule_value,
        )
        return task

    async def get_task(self, task_id: str) -> ScheduledTask | None:
        await self._ensure_initialized()

        async with aiosqlite.connect(self._db_path) as conn:
            conn.row_factory = aiosqlite.Row
            cursor = await conn.execute(
                "SELECT * FROM scheduled_tasks WHERE id = ?",
                (task_id,),
            )
            row = await cursor.fetchone()
            return _row_to_task(row) if row else None

    async def list_tasks(self, group_folder: str | None = None) -> list[ScheduledTask]:
        """List tasks, optionally only those owned by one tenant."""
        await self._ensure_initialized()

        async with aiosqlite.connect(self._db_path) as conn:
            conn.row_factory = aiosqlite.Row
            if group_folder is None:
                cursor = await conn.execute(
                    "SELECT * FROM scheduled_tasks ORDER BY created_at ASC"
                )
            else:
                cursor = await conn.execute(
                    """
                    SELECT * FROM scheduled_tasks
                    WHERE group_folder = ?
                    ORDER BY created_at ASC
                    """,
                    (group_folder,),
                )
            rows = await cursor.fetchall()
            return [_row_to_task(row) for row in rows]

    async def get_due_tasks(
        self,
        now_iso: str | None = None,
        limit: int = 100,
    ) -> list[ScheduledTask]:
        """
        List active tasks whose next_run has passed.

        Args:
            now_iso: Current time in canonical ISO form (defaults to now UTC)
            limit: Max number of tasks to return

        Returns:
            Due tasks ordered by next_run ascending
        """
        await self._ensure_initialized()

        if now_iso is None:
            now_iso = to_iso(datetime.now(timezone.utc))

        async with aiosqlite.connect(self._db_path) as conn:
            conn.row_factory = aiosqlite.Row
            cursor = await conn.execute(
                """
                SELECT * FROM scheduled_tasks
                WHERE status = 'active'
                AND next_run IS NOT NULL
                AND next_run <= ?
                ORDER BY next_run ASC
                LIMIT ?
                """,
                (now_iso, max(1, int(limit))),
            )
            rows = await cursor.fetchall()
            return [_row_to_task(row) for row in rows]

    async def update_task(self, task_id: str, **updates: Any) -> ScheduledTask | None:
        """
        Update task fields.

        Args:
            task_id: The task identifier
            **updates: Fields to update. Valid fields:
                - status, next_run, last_run, last_result, flagged_reason

        Returns:
            The updated task if found, None otherwise
        """
        valid_fields = {
            "status",
            "next_run",
            "last_run",
            "last_result",
            "flagged_reason",
        }
        invalid_fields = set(updates.keys()) - valid_fields
        if invalid_fields:
            raise ValueError(f"Invalid fields for update: {invalid_fields}")

        if not updates:
            return await self.get_task(task_id)

        await self._ensure_initialized()

        values_by_field = {
            k: (v.value if isinstance(v, Enum) else v) for k, v in updates.items()
        }
        set_clause = ", ".join(f"{k} = ?" for k in values_by_field)
        values = list(values_by_field.values()) + [task_id]

        async with aiosqlite.connect(self._db_path) as conn:
            await conn.execute(
                f"UPDATE scheduled_tasks SET {set_clause} WHERE id = ?",
                values,
            )
            await conn.commit()

        updated = await self.get_task(task_id)
        if updated:
            logger.debug("Updated task %s: %s", task_id, list(updates.keys()))
        return updated

    async def update_after_run(
        self,
        task_id: str,
        *,
        next_run: str | None,
        last_run: str,
        last_result: str | None,
    ) -> ScheduledTask | None:
        """Record an execution; a task with no next run is completed."""
        updates: dict[str, Any] = {
            "next_run": next_run,
            "last_run": last_run,
            "last_result": excerpt(last_result),
        }
        if next_run is None:
            updates["status"] = TaskStatus.COMPLETED
        return await self.update_task(task_id, **updates)

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task and its run history. Returns False if it did not exist."""
        await self._ensure_initialized()

        async with aiosqlite.connect(self._db_path) as conn:
            await conn.execute("DELETE FROM task_run_logs WHERE task_id = ?", (task_id,))
            cursor = await conn.execute(
                "DELETE FROM scheduled_tasks WHERE id = ?",
                (task_id,),
            )
            await conn.commit()
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info("Deleted task %s", task_id)
        return deleted

    async def log_run(self, run_log: TaskRunLog) -> int:
        """Append a run record. Returns its row id."""
        await self._ensure_initialized()

        async with aiosqlite.connect(self._db_path) as conn:
            cursor = await conn.execute(
                """
                INSERT INTO task_run_logs (
                    task_id, run_at, duration_ms, status, result, error
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    run_log.task_id,
                    run_log.run_at,
                    run_log.duration_ms,
                    run_log.status,
                    excerpt(run_log.result),
                    run_log.error,
                ),
            )
            await conn.commit()
            return cursor.lastrowid or 0

    async def get_run_logs(self, task_id: str, limit: int = 50) -> list[TaskRunLog]:
        """Most recent run records first."""
        await self._ensure_initialized()

        async with aiosqlite.connect(self._db_path) as conn:
            conn.row_factory = aiosqlite.Row
            cursor = await conn.execute(
                """
                SELECT * FROM task_run_logs
                WHERE task_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (task_id, max(1, int(limit))),
            )
            rows = await cursor.fetchall()
            return [_row_to_run_log(row) for row in rows]

    # Preferences

    async def set_preference(self, group_folder: str, key: str, value: str) -> None:
        await self._ensure_initialized()

        async with aiosqlite.connect(self._db_path) as conn:
            await conn.execute(
                """
                INSERT INTO preferences (group_folder, key, value, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(group_folder, key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (group_folder, key, value, to_iso(datetime.now(timezone.utc))),
            )
            await conn.commit()
        logger.info("Set preference %s for %s", key, group_folder)

    async def get_preferences(self, group_folder: str) -> dict[str, str]:
        await self._ensure_initialized()

        async with aiosqlite.connect(self._db_path) as conn:
            cursor = await conn.execute(
                "SELECT key, value FROM preferences WHERE group_folder = ? ORDER BY key",
                (group_folder,),
            )
            rows = await cursor.fetchall()
            return {row[0]: row[1] for row in rows}
