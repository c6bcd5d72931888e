"""
Coach Assistant - SQLite stores.

The memory of the assistant: users, tasks, scheduled messages, task events,
conversation history, known facts and daily schedules persist in SQLite and
survive bot restarts. The stores are the single source of truth; nothing is
cached between scheduler ticks.

All instants are stored as ISO-8601 UTC strings ("YYYY-MM-DDTHH:MM:SS+00:00")
so that lexical comparison in SQL matches chronological order.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from coach.core.recurrence import normalize_pattern, validate_time_of_day
from coach.data.models import (
    REMINDER_TYPES,
    TASK_SLOT_TYPES,
    DailySchedule,
    HistoryMessage,
    KnownFact,
    ScheduledMessage,
    ScheduleItem,
    Subtask,
    Task,
    TaskEvent,
    User,
)

logger = logging.getLogger(__name__)


def to_utc_iso(dt: datetime) -> str:
    """Normalize an aware datetime to the storage format."""
    if dt.tzinfo is None:
        raise ValueError("Naive datetimes are not stored; attach a timezone first")
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def parse_utc_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _utcnow_iso() -> str:
    return to_utc_iso(datetime.now(timezone.utc))


class _SQLiteStore:
    """Shared connection handling for the stores below."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from coach.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        raise NotImplementedError

    @staticmethod
    def _existing_columns(conn: sqlite3.Connection, table: str) -> set[str]:
        return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserDB(_SQLiteStore):
    """SQLite-backed storage for coached users."""

    _UPDATABLE = {"display_name", "chat_id", "timezone", "preferred_model",
                  "morning_message_time", "active"}

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
                    display_name         TEXT    NOT NULL,
                    chat_id              INTEGER UNIQUE,
                    timezone             TEXT    NOT NULL DEFAULT 'UTC',
                    preferred_model      TEXT    NOT NULL DEFAULT '',
                    morning_message_time TEXT,
                    active               INTEGER NOT NULL DEFAULT 1,
                    created_at           TEXT    NOT NULL
                )
            """)
            # Migrate existing DBs: add new columns if missing
            existing_cols = self._existing_columns(conn, "users")
            if "morning_message_time" not in existing_cols:
                conn.execute("ALTER TABLE users ADD COLUMN morning_message_time TEXT")
        logger.debug("Users table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            display_name=row["display_name"],
            chat_id=row["chat_id"],
            timezone=row["timezone"],
            preferred_model=row["preferred_model"],
            morning_message_time=row["morning_message_time"],
            active=bool(row["active"]),
            created_at=row["created_at"],
        )

    def add_user(
        self,
        display_name: str,
        chat_id: int | None = None,
        timezone_name: str | None = None,
        preferred_model: str = "",
        morning_message_time: str | None = None,
    ) -> User:
        """Register a new user."""
        if timezone_name is None:
            from coach.config import settings
            timezone_name = settings.TIMEZONE
        morning_message_time = validate_time_of_day(morning_message_time)

        now = _utcnow_iso()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO users
                    (display_name, chat_id, timezone, preferred_model,
                     morning_message_time, active, created_at)
                VALUES (?, ?, ?, ?, ?, 1, ?)
                """,
                (display_name, chat_id, timezone_name, preferred_model,
                 morning_message_time, now),
            )
            user_id = cursor.lastrowid
        logger.info("User registered: #%d '%s'", user_id, display_name)
        return User(
            id=user_id,
            display_name=display_name,
            chat_id=chat_id,
            timezone=timezone_name,
            preferred_model=preferred_model,
            morning_message_time=morning_message_time,
            created_at=now,
        )

    def get_user(self, user_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_by_chat_id(self, chat_id: int) -> User | None:
        """Resolve an inbound chat address to a user."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE chat_id = ?", (chat_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_active_users(self) -> list[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE active = 1 ORDER BY id"
            ).fetchall()
        return [self._row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields: Any) -> User:
        """Update the given columns. Raises ValueError for unknown users or columns."""
        unknown = set(fields) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update user fields: {', '.join(sorted(unknown))}")
        if "morning_message_time" in fields:
            fields["morning_message_time"] = validate_time_of_day(fields["morning_message_time"])
        if "active" in fields:
            fields["active"] = int(bool(fields["active"]))

        if fields:
            assignments = ", ".join(f"{col} = ?" for col in fields)
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE users SET {assignments} WHERE id = ?",
                    (*fields.values(), user_id),
                )
                if cursor.rowcount == 0:
                    raise ValueError(f"User {user_id} not found")
            logger.info("User #%d updated: %s", user_id, ", ".join(fields))

        user = self.get_user(user_id)
        if user is None:
            raise ValueError(f"User {user_id} not found")
        return user


# ---------------------------------------------------------------------------
# Tasks and subtasks
# ---------------------------------------------------------------------------


class TaskDB(_SQLiteStore):
    """SQLite-backed storage for tasks and their subtasks.

    Deletion is soft: rows get a deleted_at stamp and disappear from reads.
    Times of day and recurrence patterns are validated on every write.
    """

    _TASK_UPDATABLE = {"title", "description", "task_type", "status", "scheduled_time",
                       "recurrence_pattern", "deadline", "metadata"}
    _SUBTASK_UPDATABLE = {"title", "description", "completed", "scheduled_time", "deadline"}

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id            INTEGER NOT NULL,
                    title              TEXT    NOT NULL,
                    description        TEXT    NOT NULL DEFAULT '',
                    task_type          TEXT    NOT NULL DEFAULT 'one_off',
                    status             TEXT    NOT NULL DEFAULT 'active',
                    scheduled_time     TEXT,
                    recurrence_pattern TEXT,
                    deadline           TEXT,
                    metadata           TEXT    NOT NULL DEFAULT '{}',
                    created_at         TEXT    NOT NULL,
                    deleted_at         TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS subtasks (
                    id             INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id        INTEGER NOT NULL REFERENCES tasks(id),
                    title          TEXT    NOT NULL,
                    description    TEXT    NOT NULL DEFAULT '',
                    completed      INTEGER NOT NULL DEFAULT 0,
                    scheduled_time TEXT,
                    deadline       TEXT,
                    deleted_at     TEXT
                )
            """)
            existing_cols = self._existing_columns(conn, "tasks")
            if "deadline" not in existing_cols:
                conn.execute("ALTER TABLE tasks ADD COLUMN deadline TEXT")
        logger.debug("Tasks tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"],
            task_type=row["task_type"],
            status=row["status"],
            scheduled_time=row["scheduled_time"],
            recurrence_pattern=row["recurrence_pattern"],
            deadline=row["deadline"],
            metadata=json.loads(row["metadata"] or "{}"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_subtask(row: sqlite3.Row) -> Subtask:
        return Subtask(
            id=row["id"],
            task_id=row["task_id"],
            title=row["title"],
            description=row["description"],
            completed=bool(row["completed"]),
            scheduled_time=row["scheduled_time"],
            deadline=row["deadline"],
        )

    def add_task(
        self,
        user_id: int,
        title: str,
        description: str = "",
        task_type: str = "one_off",
        scheduled_time: str | None = None,
        recurrence_pattern: str | None = None,
        deadline: str | None = None,
        metadata: dict[str, Any] | None = None,
        created_at: str | None = None,
    ) -> Task:
        """Insert a task. Raises RecurrenceError on a malformed time or pattern."""
        scheduled_time = validate_time_of_day(scheduled_time)
        recurrence_pattern = normalize_pattern(recurrence_pattern)
        if recurrence_pattern and task_type == "one_off":
            task_type = "recurring"
        created_at = created_at or _utcnow_iso()
        metadata = metadata or {}

        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO tasks
                    (user_id, title, description, task_type, status, scheduled_time,
                     recurrence_pattern, deadline, metadata, created_at)
                VALUES (?, ?, ?, ?, 'active', ?, ?, ?, ?, ?)
                """,
                (user_id, title, description, task_type, scheduled_time,
                 recurrence_pattern, deadline, json.dumps(metadata), created_at),
            )
            task_id = cursor.lastrowid

        logger.info("Task added: #%d '%s' for user %d", task_id, title, user_id)
        return Task(
            id=task_id,
            user_id=user_id,
            title=title,
            description=description,
            task_type=task_type,
            scheduled_time=scheduled_time,
            recurrence_pattern=recurrence_pattern,
            deadline=deadline,
            metadata=metadata,
            created_at=created_at,
        )

    def get_task(self, task_id: int, user_id: int | None = None) -> Task | None:
        """Fetch a live task, optionally scoped to its owner."""
        query = "SELECT * FROM tasks WHERE id = ? AND deleted_at IS NULL"
        params: list = [task_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        if row is None:
            return None
        task = self._row_to_task(row)
        task.subtasks = self.list_subtasks(task.id)
        return task

    def list_tasks(
        self, user_id: int, status: str | None = None, include_subtasks: bool = True,
    ) -> list[Task]:
        query = "SELECT * FROM tasks WHERE user_id = ? AND deleted_at IS NULL"
        params: list = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        tasks = [self._row_to_task(r) for r in rows]
        if include_subtasks:
            for task in tasks:
                task.subtasks = self.list_subtasks(task.id)
        return tasks

    def list_scheduled_tasks(self, user_id: int) -> list[Task]:
        """Active tasks carrying a time of day, the reminder scheduler's input."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM tasks
                WHERE user_id = ? AND status = 'active' AND deleted_at IS NULL
                  AND scheduled_time IS NOT NULL AND scheduled_time != ''
                ORDER BY scheduled_time, id
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def update_task(self, task_id: int, **fields: Any) -> Task:
        """Update the given task columns and return the fresh task.

        Raises:
            ValueError: unknown task or column.
            RecurrenceError: malformed time or recurrence pattern.
        """
        unknown = set(fields) - self._TASK_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")
        if "scheduled_time" in fields:
            fields["scheduled_time"] = validate_time_of_day(fields["scheduled_time"])
        if "recurrence_pattern" in fields:
            fields["recurrence_pattern"] = normalize_pattern(fields["recurrence_pattern"])
        if "metadata" in fields:
            fields["metadata"] = json.dumps(fields["metadata"] or {})

        if fields:
            assignments = ", ".join(f"{col} = ?" for col in fields)
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE tasks SET {assignments} WHERE id = ? AND deleted_at IS NULL",
                    (*fields.values(), task_id),
                )
                if cursor.rowcount == 0:
                    raise ValueError(f"Task {task_id} not found")
            logger.info("Task #%d updated: %s", task_id, ", ".join(fields))

        task = self.get_task(task_id)
        if task is None:
            raise ValueError(f"Task {task_id} not found")
        return task

    def delete_task(self, task_id: int) -> bool:
        """Soft-delete a task and its subtasks. Returns True if it existed."""
        now = _utcnow_iso()
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE tasks SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (now, task_id),
            )
            conn.execute(
                "UPDATE subtasks SET deleted_at = ? WHERE task_id = ? AND deleted_at IS NULL",
                (now, task_id),
            )
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Task #%d deleted", task_id)
        return deleted

    # -- Subtasks ------------------------------------------------------------

    def add_subtask(
        self,
        task_id: int,
        title: str,
        description: str = "",
        scheduled_time: str | None = None,
        deadline: str | None = None,
    ) -> Subtask:
        scheduled_time = validate_time_of_day(scheduled_time)
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO subtasks (task_id, title, description, completed,
                                      scheduled_time, deadline)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (task_id, title, description, scheduled_time, deadline),
            )
            subtask_id = cursor.lastrowid
        logger.info("Subtask added: #%d '%s' under task #%d", subtask_id, title, task_id)
        return Subtask(
            id=subtask_id,
            task_id=task_id,
            title=title,
            description=description,
            scheduled_time=scheduled_time,
            deadline=deadline,
        )

    def get_subtask(self, subtask_id: int) -> Subtask | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM subtasks WHERE id = ? AND deleted_at IS NULL", (subtask_id,)
            ).fetchone()
        return self._row_to_subtask(row) if row else None

    def list_subtasks(self, task_id: int) -> list[Subtask]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM subtasks WHERE task_id = ? AND deleted_at IS NULL ORDER BY id",
                (task_id,),
            ).fetchall()
        return [self._row_to_subtask(r) for r in rows]

    def list_user_subtasks(self, user_id: int) -> list[Subtask]:
        """All live subtasks under the user's live tasks."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT s.* FROM subtasks s
                JOIN tasks t ON t.id = s.task_id
                WHERE t.user_id = ? AND t.deleted_at IS NULL AND s.deleted_at IS NULL
                ORDER BY s.id
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_subtask(r) for r in rows]

    def update_subtask(self, subtask_id: int, **fields: Any) -> Subtask:
        unknown = set(fields) - self._SUBTASK_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update subtask fields: {', '.join(sorted(unknown))}")
        if "scheduled_time" in fields:
            fields["scheduled_time"] = validate_time_of_day(fields["scheduled_time"])
        if "completed" in fields:
            fields["completed"] = int(bool(fields["completed"]))

        if fields:
            assignments = ", ".join(f"{col} = ?" for col in fields)
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE subtasks SET {assignments} WHERE id = ? AND deleted_at IS NULL",
                    (*fields.values(), subtask_id),
                )
                if cursor.rowcount == 0:
                    raise ValueError(f"Subtask {subtask_id} not found")

        subtask = self.get_subtask(subtask_id)
        if subtask is None:
            raise ValueError(f"Subtask {subtask_id} not found")
        return subtask

    def delete_subtask(self, subtask_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE subtasks SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (_utcnow_iso(), subtask_id),
            )
        return cursor.rowcount > 0


# ---------------------------------------------------------------------------
# Scheduled messages
# ---------------------------------------------------------------------------


class ScheduledMessageDB(_SQLiteStore):
    """SQLite-backed queue of proactive messages.

    Task-linked reminder and follow-up rows carry a local_date, whoever
    created them. A UNIQUE index on (user, type, task, local_date) keeps at
    most one such row per day, so concurrent ticks cannot double-schedule:
    the losing INSERT conflicts and add() reports it as already scheduled.
    Clearing local_date releases a row's slot (reschedule, snooze).

    Status only moves out of 'pending', never back and never between the
    final states.
    """

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS scheduled_messages (
                    id            INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id       INTEGER NOT NULL,
                    message_type  TEXT    NOT NULL,
                    status        TEXT    NOT NULL DEFAULT 'pending',
                    scheduled_for TEXT    NOT NULL,
                    title         TEXT    NOT NULL DEFAULT '',
                    content       TEXT    NOT NULL DEFAULT '',
                    task_id       INTEGER,
                    local_date    TEXT,
                    metadata      TEXT    NOT NULL DEFAULT '{}',
                    sent_at       TEXT,
                    created_at    TEXT    NOT NULL
                )
            """)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS ux_scheduled_messages_daily
                ON scheduled_messages (user_id, message_type, IFNULL(task_id, 0), local_date)
                WHERE local_date IS NOT NULL
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS ix_scheduled_messages_due
                ON scheduled_messages (status, scheduled_for)
            """)
        logger.debug("Scheduled messages table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> ScheduledMessage:
        return ScheduledMessage(
            id=row["id"],
            user_id=row["user_id"],
            message_type=row["message_type"],
            scheduled_for=row["scheduled_for"],
            status=row["status"],
            title=row["title"],
            content=row["content"],
            task_id=row["task_id"],
            local_date=row["local_date"],
            metadata=json.loads(row["metadata"] or "{}"),
            sent_at=row["sent_at"],
            created_at=row["created_at"],
        )

    def add(
        self,
        user_id: int,
        message_type: str,
        scheduled_for: datetime,
        title: str = "",
        content: str = "",
        task_id: int | None = None,
        local_date: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ScheduledMessage | None:
        """Queue a pending message.

        Returns None when a row with the same (user, type, task, local_date)
        already exists, whatever its status.
        """
        scheduled_iso = to_utc_iso(scheduled_for)
        metadata = metadata or {}
        now = _utcnow_iso()
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO scheduled_messages
                        (user_id, message_type, status, scheduled_for, title, content,
                         task_id, local_date, metadata, created_at)
                    VALUES (?, ?, 'pending', ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, message_type, scheduled_iso, title, content,
                     task_id, local_date, json.dumps(metadata), now),
                )
                message_id = cursor.lastrowid
        except sqlite3.IntegrityError:
            logger.debug(
                "%s for user %d task %s on %s already scheduled",
                message_type, user_id, task_id, local_date,
            )
            return None

        logger.info(
            "Scheduled %s #%d for user %d at %s", message_type, message_id, user_id, scheduled_iso,
        )
        return ScheduledMessage(
            id=message_id,
            user_id=user_id,
            message_type=message_type,
            scheduled_for=scheduled_iso,
            title=title,
            content=content,
            task_id=task_id,
            local_date=local_date,
            metadata=metadata,
            created_at=now,
        )

    def get(self, message_id: int) -> ScheduledMessage | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM scheduled_messages WHERE id = ?", (message_id,)
            ).fetchone()
        return self._row_to_message(row) if row else None

    def list_due(self, now: datetime) -> list[ScheduledMessage]:
        """Pending rows whose time has come, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM scheduled_messages
                WHERE status = 'pending' AND scheduled_for <= ?
                ORDER BY scheduled_for, id
                """,
                (to_utc_iso(now),),
            ).fetchall()
        return [self._row_to_message(r) for r in rows]

    def list_for_user(
        self,
        user_id: int,
        status: str | None = None,
        task_id: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ScheduledMessage]:
        """Messages for a user, optionally filtered by status, task and [start, end)."""
        query = "SELECT * FROM scheduled_messages WHERE user_id = ?"
        params: list = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        if task_id is not None:
            query += " AND task_id = ?"
            params.append(task_id)
        if start is not None:
            query += " AND scheduled_for >= ?"
            params.append(to_utc_iso(start))
        if end is not None:
            query += " AND scheduled_for < ?"
            params.append(to_utc_iso(end))
        query += " ORDER BY scheduled_for, id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_message(r) for r in rows]

    def has_task_messages(
        self,
        user_id: int,
        task_id: int,
        message_types: tuple[str, ...],
        start: datetime,
        end: datetime,
    ) -> bool:
        """True if the task has a row of these types in [start, end), any status.

        Released rows (local_date cleared) do not count.
        """
        placeholders = ", ".join("?" for _ in message_types)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT 1 FROM scheduled_messages
                WHERE user_id = ? AND task_id = ? AND message_type IN ({placeholders})
                  AND scheduled_for >= ? AND scheduled_for < ?
                  AND local_date IS NOT NULL
                LIMIT 1
                """,
                (user_id, task_id, *message_types, to_utc_iso(start), to_utc_iso(end)),
            ).fetchone()
        return row is not None

    def slot_taken(
        self, user_id: int, message_type: str, task_id: int | None, local_date: str,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM scheduled_messages
                WHERE user_id = ? AND message_type = ? AND IFNULL(task_id, 0) = ?
                  AND local_date = ?
                """,
                (user_id, message_type, task_id or 0, local_date),
            ).fetchone()
        return row is not None

    def release_slot(self, message_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE scheduled_messages SET local_date = NULL WHERE id = ?", (message_id,),
            )

    def mark_sent(self, message_id: int, sent_at: datetime) -> bool:
        """pending → sent. Returns False if the row was no longer pending."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE scheduled_messages SET status = 'sent', sent_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (to_utc_iso(sent_at), message_id),
            )
        return cursor.rowcount > 0

    def set_status(self, message_id: int, status: str) -> bool:
        """pending → status. Returns False if the row was no longer pending."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE scheduled_messages SET status = ? WHERE id = ? AND status = 'pending'",
                (status, message_id),
            )
        return cursor.rowcount > 0

    def cancel(self, message_id: int, user_id: int | None = None) -> bool:
        """Cancel a pending message. Returns False if it was not pending."""
        query = "UPDATE scheduled_messages SET status = 'cancelled' WHERE id = ? AND status = 'pending'"
        params: list = [message_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        with self._connect() as conn:
            cursor = conn.execute(query, params)
        cancelled = cursor.rowcount > 0
        if cancelled:
            logger.info("Scheduled message #%d cancelled", message_id)
        return cancelled

    def cancel_pending_for_task(
        self,
        task_id: int,
        message_types: tuple[str, ...] = TASK_SLOT_TYPES,
        local_date: str | None = None,
    ) -> int:
        """Cancel pending messages of the given types for a task. Returns the count."""
        placeholders = ", ".join("?" for _ in message_types)
        query = (
            "UPDATE scheduled_messages SET status = 'cancelled' "
            f"WHERE task_id = ? AND status = 'pending' AND message_type IN ({placeholders})"
        )
        params: list = [task_id, *message_types]
        if local_date is not None:
            query += " AND local_date = ?"
            params.append(local_date)
        with self._connect() as conn:
            cursor = conn.execute(query, params)
        if cursor.rowcount:
            logger.info("Cancelled %d pending message(s) for task #%d", cursor.rowcount, task_id)
        return cursor.rowcount

    def release_task_day(self, task_id: int, local_date: str) -> int:
        """Free a task's reminder slots for a day after it was rescheduled.

        Pending rows are cancelled; all rows of the day lose their local_date
        so the scheduler can place reminders at the new time.
        """
        placeholders = ", ".join("?" for _ in REMINDER_TYPES)
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE scheduled_messages
                SET status = CASE WHEN status = 'pending' THEN 'cancelled' ELSE status END,
                    local_date = NULL
                WHERE task_id = ? AND local_date = ? AND message_type IN ({placeholders})
                """,
                (task_id, local_date, *REMINDER_TYPES),
            )
        return cursor.rowcount


# ---------------------------------------------------------------------------
# Task events
# ---------------------------------------------------------------------------


class TaskEventDB(_SQLiteStore):
    """Append-only log of completed / skipped_today occurrences."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_events (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id    INTEGER NOT NULL,
                    task_id    INTEGER NOT NULL,
                    event_type TEXT    NOT NULL,
                    event_date TEXT    NOT NULL,
                    notes      TEXT    NOT NULL DEFAULT '',
                    created_at TEXT    NOT NULL
                )
            """)
        logger.debug("Task events table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> TaskEvent:
        return TaskEvent(
            id=row["id"],
            user_id=row["user_id"],
            task_id=row["task_id"],
            event_type=row["event_type"],
            event_date=row["event_date"],
            created_at=row["created_at"],
            notes=row["notes"],
        )

    def add_event(
        self, user_id: int, task_id: int, event_type: str, event_date: str, notes: str = "",
    ) -> TaskEvent:
        now = _utcnow_iso()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO task_events (user_id, task_id, event_type, event_date, notes, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user_id, task_id, event_type, event_date, notes, now),
            )
            event_id = cursor.lastrowid
        logger.info("Task #%d %s on %s", task_id, event_type, event_date)
        return TaskEvent(
            id=event_id,
            user_id=user_id,
            task_id=task_id,
            event_type=event_type,
            event_date=event_date,
            created_at=now,
            notes=notes,
        )

    def has_event(self, task_id: int, event_type: str, event_date: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM task_events
                WHERE task_id = ? AND event_type = ? AND event_date = ?
                """,
                (task_id, event_type, event_date),
            ).fetchone()
        return row is not None

    def list_events(
        self, task_id: int, start_date: str | None = None, end_date: str | None = None,
    ) -> list[TaskEvent]:
        """Events of a task in [start_date, end_date] (inclusive local dates)."""
        query = "SELECT * FROM task_events WHERE task_id = ?"
        params: list = [task_id]
        if start_date is not None:
            query += " AND event_date >= ?"
            params.append(start_date)
        if end_date is not None:
            query += " AND event_date <= ?"
            params.append(end_date)
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(r) for r in rows]


# ---------------------------------------------------------------------------
# Conversation history and known facts
# ---------------------------------------------------------------------------


class MessageHistoryDB(_SQLiteStore):
    """Append-only conversation history, read most-recent-first."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS message_history (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id    INTEGER NOT NULL,
                    role       TEXT    NOT NULL,
                    content    TEXT    NOT NULL,
                    metadata   TEXT    NOT NULL DEFAULT '{}',
                    created_at TEXT    NOT NULL
                )
            """)
        logger.debug("Message history table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> HistoryMessage:
        return HistoryMessage(
            id=row["id"],
            user_id=row["user_id"],
            role=row["role"],
            content=row["content"],
            created_at=row["created_at"],
            metadata=json.loads(row["metadata"] or "{}"),
        )

    def add_message(
        self,
        user_id: int,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> HistoryMessage:
        created = to_utc_iso(created_at) if created_at else _utcnow_iso()
        metadata = metadata or {}
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO message_history (user_id, role, content, metadata, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, role, content, json.dumps(metadata), created),
            )
            message_id = cursor.lastrowid
        return HistoryMessage(
            id=message_id,
            user_id=user_id,
            role=role,
            content=content,
            created_at=created,
            metadata=metadata,
        )

    def recent(self, user_id: int, limit: int = 20) -> list[HistoryMessage]:
        """The latest `limit` messages, most recent first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM message_history WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [self._row_to_message(r) for r in rows]


class FactDB(_SQLiteStore):
    """Things the user told the assistant about themselves."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS known_facts (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id    INTEGER NOT NULL,
                    category   TEXT    NOT NULL DEFAULT 'general',
                    content    TEXT    NOT NULL,
                    created_at TEXT    NOT NULL
                )
            """)

    @staticmethod
    def _row_to_fact(row: sqlite3.Row) -> KnownFact:
        return KnownFact(
            id=row["id"],
            user_id=row["user_id"],
            category=row["category"],
            content=row["content"],
            created_at=row["created_at"],
        )

    def add_fact(self, user_id: int, content: str, category: str = "general") -> KnownFact:
        now = _utcnow_iso()
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO known_facts (user_id, category, content, created_at) VALUES (?, ?, ?, ?)",
                (user_id, category, content, now),
            )
            fact_id = cursor.lastrowid
        logger.info("Fact #%d stored for user %d (%s)", fact_id, user_id, category)
        return KnownFact(id=fact_id, user_id=user_id, category=category, content=content,
                         created_at=now)

    def list_facts(self, user_id: int, category: str | None = None) -> list[KnownFact]:
        query = "SELECT * FROM known_facts WHERE user_id = ?"
        params: list = [user_id]
        if category is not None:
            query += " AND category = ?"
            params.append(category)
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_fact(r) for r in rows]


# ---------------------------------------------------------------------------
# Daily schedules
# ---------------------------------------------------------------------------


class DailyScheduleDB(_SQLiteStore):
    """Day-scoped schedules and their timed items."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS daily_schedules (
                    id               INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id          INTEGER NOT NULL,
                    schedule_date    TEXT    NOT NULL,
                    status           TEXT    NOT NULL DEFAULT 'draft',
                    original_content TEXT    NOT NULL DEFAULT '',
                    notifications    TEXT    NOT NULL DEFAULT '[]',
                    confirmed_at     TEXT,
                    created_at       TEXT    NOT NULL
                )
            """)
            existing_cols = self._existing_columns(conn, "daily_schedules")
            if "notifications" not in existing_cols:
                conn.execute(
                    "ALTER TABLE daily_schedules ADD COLUMN notifications TEXT NOT NULL DEFAULT '[]'"
                )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schedule_items (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    schedule_id INTEGER NOT NULL REFERENCES daily_schedules(id),
                    title       TEXT    NOT NULL,
                    description TEXT    NOT NULL DEFAULT '',
                    start_time  TEXT    NOT NULL,
                    end_time    TEXT,
                    task_id     INTEGER,
                    subtask_id  INTEGER,
                    status      TEXT    NOT NULL DEFAULT 'pending'
                )
            """)

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> ScheduleItem:
        return ScheduleItem(
            id=row["id"],
            schedule_id=row["schedule_id"],
            title=row["title"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            description=row["description"],
            task_id=row["task_id"],
            subtask_id=row["subtask_id"],
            status=row["status"],
        )

    def create_schedule(
        self,
        user_id: int,
        schedule_date: str,
        original_content: str,
        items: list[dict[str, Any]],
        notifications: list[dict[str, Any]] | None = None,
    ) -> DailySchedule:
        """Insert a draft schedule with its items in one transaction."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO daily_schedules
                    (user_id, schedule_date, status, original_content, notifications, created_at)
                VALUES (?, ?, 'draft', ?, ?, ?)
                """,
                (user_id, schedule_date, original_content,
                 json.dumps(notifications or []), _utcnow_iso()),
            )
            schedule_id = cursor.lastrowid
            for item in items:
                conn.execute(
                    """
                    INSERT INTO schedule_items
                        (schedule_id, title, description, start_time, end_time, task_id, subtask_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (schedule_id, item["title"], item.get("description", ""),
                     item["start_time"], item.get("end_time"),
                     item.get("task_id"), item.get("subtask_id")),
                )
        logger.info("Draft schedule #%d created for user %d on %s", schedule_id, user_id, schedule_date)
        schedule = self.get_schedule(schedule_id)
        assert schedule is not None
        return schedule

    def get_schedule(self, schedule_id: int) -> DailySchedule | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM daily_schedules WHERE id = ?", (schedule_id,)
            ).fetchone()
            if row is None:
                return None
            item_rows = conn.execute(
                "SELECT * FROM schedule_items WHERE schedule_id = ? ORDER BY start_time, id",
                (schedule_id,),
            ).fetchall()
        return DailySchedule(
            id=row["id"],
            user_id=row["user_id"],
            schedule_date=row["schedule_date"],
            status=row["status"],
            original_content=row["original_content"],
            confirmed_at=row["confirmed_at"],
            items=[self._row_to_item(r) for r in item_rows],
            notifications=json.loads(row["notifications"] or "[]"),
        )

    def get_confirmed_for_date(self, user_id: int, schedule_date: str) -> DailySchedule | None:
        """Latest confirmed schedule of the day, if any."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id FROM daily_schedules
                WHERE user_id = ? AND schedule_date = ? AND status = 'confirmed'
                ORDER BY id DESC LIMIT 1
                """,
                (user_id, schedule_date),
            ).fetchone()
        return self.get_schedule(row["id"]) if row else None

    def mark_confirmed(self, schedule_id: int, confirmed_at: datetime) -> bool:
        """draft → confirmed. Returns False if the schedule was not a draft."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE daily_schedules SET status = 'confirmed', confirmed_at = ?
                WHERE id = ? AND status = 'draft'
                """,
                (to_utc_iso(confirmed_at), schedule_id),
            )
        return cursor.rowcount > 0
