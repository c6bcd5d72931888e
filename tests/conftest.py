"""Shared test fixtures and configuration.

Sets up fake environment variables so coach.config doesn't sys.exit(),
and provides common fixtures like temp-file stores and a fixed clock.
"""

import os

# Patch env vars BEFORE any coach imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("LLM_API_KEY", "fake-llm-key-for-tests")
os.environ.setdefault("LLM_PROVIDER", "openai")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "UTC")

from datetime import datetime, timezone

import pytest


class FixedClock:
    """A settable clock: call it to read, assign .now to move time."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path shared by all stores of a test."""
    return str(tmp_path / "test_coach.db")


@pytest.fixture
def clock():
    """Wednesday 2025-04-16 12:00 UTC."""
    return FixedClock(datetime(2025, 4, 16, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def user_db(tmp_db_path):
    from coach.data.db import UserDB
    return UserDB(db_path=tmp_db_path)


@pytest.fixture
def task_db(tmp_db_path):
    from coach.data.db import TaskDB
    return TaskDB(db_path=tmp_db_path)


@pytest.fixture
def message_db(tmp_db_path):
    from coach.data.db import ScheduledMessageDB
    return ScheduledMessageDB(db_path=tmp_db_path)


@pytest.fixture
def event_db(tmp_db_path):
    from coach.data.db import TaskEventDB
    return TaskEventDB(db_path=tmp_db_path)


@pytest.fixture
def fact_db(tmp_db_path):
    from coach.data.db import FactDB
    return FactDB(db_path=tmp_db_path)


@pytest.fixture
def history_db(tmp_db_path):
    from coach.data.db import MessageHistoryDB
    return MessageHistoryDB(db_path=tmp_db_path)


@pytest.fixture
def schedule_db(tmp_db_path):
    from coach.data.db import DailyScheduleDB
    return DailyScheduleDB(db_path=tmp_db_path)


@pytest.fixture
def user(user_db):
    """A registered user in UTC with a chat address."""
    return user_db.add_user(display_name="Dana", chat_id=12345, timezone_name="UTC")


@pytest.fixture
def registry(user_db, task_db, message_db, event_db, fact_db, schedule_db, clock):
    from coach.core.functions import FunctionRegistry
    return FunctionRegistry(
        user_db, task_db, message_db, event_db, fact_db, schedule_db, clock=clock,
    )
