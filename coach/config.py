"""
Coach Assistant - Centralized configuration.

Loads all settings from .env and validates required keys.
Every other module reads its knobs from the `settings` singleton below.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from coach/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # LLM: default provider for unknown model names (gemini, anthropic, openai, cohere)
    LLM_PROVIDER: str = "openai"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str

    # Per-provider keys, used when a user's preferred model lives elsewhere
    OPENAI_API_KEY: str = ""
    ANTHROPIC_API_KEY: str = ""
    GEMINI_API_KEY: str = ""
    COHERE_API_KEY: str = ""

    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 1024

    # SQLite
    DATABASE_PATH: str = "data/coach.db"

    # Security (empty list → any chat may talk to the bot)
    ALLOWED_USER_IDS: list[int] = []

    # Default timezone for newly registered users
    TIMEZONE: str = "UTC"

    # Conversation loop
    MAX_LOOP_ITERATIONS: int = 25
    HISTORY_LIMIT: int = 20

    # Reminder scheduler + sweeper tick
    TICK_SECONDS: int = 60

    # Outbound gateway
    MAX_MESSAGE_LENGTH: int = 1500

    # Inbound rate limit per chat
    RATE_LIMIT_MESSAGES: int = 10
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator(
        "LLM_MAX_TOKENS",
        "MAX_LOOP_ITERATIONS",
        "HISTORY_LIMIT",
        "TICK_SECONDS",
        "MAX_MESSAGE_LENGTH",
        "RATE_LIMIT_MESSAGES",
        "RATE_LIMIT_WINDOW_SECONDS",
        mode="before",
    )
    @classmethod
    def parse_positive_int(cls, v: str | int) -> int:
        value = int(v)
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    llm_api_key = os.getenv("LLM_API_KEY", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    if not llm_api_key or llm_api_key.startswith("your-"):
        print("ERROR: LLM_API_KEY is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        LLM_PROVIDER=os.getenv("LLM_PROVIDER", "openai"),
        LLM_MODEL=os.getenv("LLM_MODEL", ""),
        LLM_API_KEY=llm_api_key,
        OPENAI_API_KEY=os.getenv("OPENAI_API_KEY", ""),
        ANTHROPIC_API_KEY=os.getenv("ANTHROPIC_API_KEY", ""),
        GEMINI_API_KEY=os.getenv("GEMINI_API_KEY", ""),
        COHERE_API_KEY=os.getenv("COHERE_API_KEY", ""),
        LLM_TEMPERATURE=os.getenv("LLM_TEMPERATURE", "0.7"),
        LLM_MAX_TOKENS=os.getenv("LLM_MAX_TOKENS", "1024"),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/coach.db"),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        TIMEZONE=os.getenv("TIMEZONE", "UTC"),
        MAX_LOOP_ITERATIONS=os.getenv("MAX_LOOP_ITERATIONS", "25"),
        HISTORY_LIMIT=os.getenv("HISTORY_LIMIT", "20"),
        TICK_SECONDS=os.getenv("TICK_SECONDS", "60"),
        MAX_MESSAGE_LENGTH=os.getenv("MAX_MESSAGE_LENGTH", "1500"),
        RATE_LIMIT_MESSAGES=os.getenv("RATE_LIMIT_MESSAGES", "10"),
        RATE_LIMIT_WINDOW_SECONDS=os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"),
    )


# Singleton, imported by all other modules as:
#   from coach.config import settings
settings = _load_settings()
