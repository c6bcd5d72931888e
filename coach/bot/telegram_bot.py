"""
Coach Assistant - Telegram Bot.

Telegram is the chat channel: every inbound message is resolved to a user
and handed to the orchestration loop, and every proactive reminder leaves
through the TelegramNotifier. A repeating job drives the reminder
scheduler and the sweeper.

Security-first: when ALLOWED_USER_IDS is set, other chats are silently ignored.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from telegram import Update
from telegram.constants import ChatAction
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from coach.config import settings
from coach.core.interpreter import PROPOSED_SCHEDULE_MARKER
from coach.core.timeutil import format_local, get_zone
from coach.data.db import parse_utc_iso

if TYPE_CHECKING:
    from coach.core.orchestrator import Orchestrator
    from coach.core.ratelimit import RateLimiter
    from coach.core.reminders import ReminderScheduler
    from coach.core.sweeper import Sweeper
    from coach.data.db import ScheduledMessageDB, TaskDB, UserDB
    from coach.data.models import User
    from coach.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from chats outside the allow-list.

    Does NOT send any response to strangers. An empty allow-list admits everyone.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        allowed = settings.ALLOWED_USER_IDS
        if user is None or (allowed and user.id not in allowed):
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resolve_user(update: Update, context: ContextTypes.DEFAULT_TYPE) -> User:
    """Map the inbound chat to a user, registering it on first contact."""
    user_db: UserDB = context.bot_data["user_db"]
    chat_id = update.effective_chat.id
    user = user_db.get_by_chat_id(chat_id)
    if user is None:
        tg_user = update.effective_user
        name = (tg_user.first_name if tg_user else None) or "there"
        user = user_db.add_user(display_name=name, chat_id=chat_id)
    return user


def _display_text(reply: str) -> str:
    """Strip internal markers before showing a reply to the user."""
    lines = [line for line in reply.splitlines() if line.strip() != PROPOSED_SCHEDULE_MARKER]
    return "\n".join(lines).replace(PROPOSED_SCHEDULE_MARKER, "").strip() or reply


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start - register and greet."""
    user = _resolve_user(update, context)
    await update.message.reply_text(
        f"Hi {user.display_name}! I'm your personal coach.\n\n"
        "Tell me what you want to get done and when, and I'll keep track of it, "
        "remind you before it starts and check in afterwards.\n\n"
        f"Your timezone is set to {user.timezone}. Change it with /timezone <Area/City>.\n"
        "Type /help for the full command list."
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help - list available commands."""
    await update.message.reply_text(
        "Available commands:\n"
        "/tasks - List your active tasks\n"
        "/reminders - Show upcoming reminders\n"
        "/timezone <Area/City> - Set your timezone\n"
        "/morning <HH:MM|off> - Daily morning check-in time\n"
        "/model <name> - Choose the AI model (e.g. gpt-4o, claude-..., gemini-...)\n"
        "/help - Show this message\n\n"
        "Anything else you write goes straight to your coach."
    )


@authorized_only
async def cmd_tasks(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /tasks - list active tasks."""
    user = _resolve_user(update, context)
    task_db: TaskDB = context.bot_data["task_db"]
    tasks = task_db.list_tasks(user.id, status="active")
    if not tasks:
        await update.message.reply_text("No active tasks. Tell me what you'd like to work on!")
        return

    lines = ["Your active tasks:\n"]
    for task in tasks:
        line = f"#{task.id} {task.title}"
        if task.scheduled_time:
            line += f" at {task.scheduled_time}"
        if task.recurrence_pattern:
            line += f" ({task.recurrence_pattern})"
        lines.append(line)
    await update.message.reply_text("\n".join(lines))


@authorized_only
async def cmd_reminders(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /reminders - show pending scheduled messages."""
    user = _resolve_user(update, context)
    message_db: ScheduledMessageDB = context.bot_data["message_db"]
    pending = message_db.list_for_user(user.id, status="pending")
    if not pending:
        await update.message.reply_text("No upcoming reminders.")
        return

    tz = get_zone(user.timezone)
    lines = ["Upcoming reminders:\n"]
    for message in pending[:20]:
        when = format_local(parse_utc_iso(message.scheduled_for), tz)
        lines.append(f"#{message.id} {when} - {message.title or message.message_type}")
    await update.message.reply_text("\n".join(lines))


@authorized_only
async def cmd_timezone(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /timezone <Area/City>."""
    from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

    user = _resolve_user(update, context)
    if not context.args:
        await update.message.reply_text(
            f"Your timezone is {user.timezone}. Usage: /timezone Europe/London"
        )
        return

    name = context.args[0]
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        await update.message.reply_text(f"I don't know the timezone '{name}'. Try e.g. America/New_York.")
        return

    user_db: UserDB = context.bot_data["user_db"]
    user_db.update_user(user.id, timezone=name)
    await update.message.reply_text(f"Timezone set to {name}.")


@authorized_only
async def cmd_morning(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /morning <HH:MM|off>."""
    from coach.core.recurrence import RecurrenceError

    user = _resolve_user(update, context)
    user_db: UserDB = context.bot_data["user_db"]
    if not context.args:
        current = user.morning_message_time or "off"
        await update.message.reply_text(f"Morning check-in: {current}. Usage: /morning 07:30")
        return

    value = context.args[0].lower()
    try:
        user_db.update_user(user.id, morning_message_time=None if value == "off" else value)
    except RecurrenceError:
        await update.message.reply_text("Please use 24-hour HH:MM, e.g. /morning 07:30")
        return
    reply = "Morning check-in turned off." if value == "off" else f"Morning check-in set for {value}."
    await update.message.reply_text(reply)


@authorized_only
async def cmd_model(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /model <name> - set the preferred LLM model."""
    from coach.core.llm import select_provider

    user = _resolve_user(update, context)
    if not context.args:
        current = user.preferred_model or "default"
        await update.message.reply_text(f"Current model: {current}. Usage: /model gpt-4o")
        return

    model = context.args[0]
    provider, effective = select_provider(model, settings.LLM_PROVIDER.lower(), settings.LLM_MODEL)
    user_db: UserDB = context.bot_data["user_db"]
    user_db.update_user(user.id, preferred_model=model)
    await update.message.reply_text(f"Model set to {effective} ({provider}).")


# ---------------------------------------------------------------------------
# Message handlers
# ---------------------------------------------------------------------------


@authorized_only
async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle plain text messages - run the conversation loop and reply."""
    limiter: RateLimiter = context.bot_data["rate_limiter"]
    chat_id = update.effective_chat.id
    if not limiter.allow(chat_id):
        logger.info("Rate limit hit for chat %d", chat_id)
        await update.message.reply_text("You're sending messages quickly - give me a moment to catch up.")
        return

    user = _resolve_user(update, context)
    orchestrator: Orchestrator = context.bot_data["orchestrator"]
    notifier: NotificationPort = context.bot_data["notifier"]

    try:
        await context.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
    except Exception as exc:
        logger.debug("Typing indicator failed: %s", exc)  # Non-critical

    try:
        reply = await orchestrator.handle_user_turn(user.id, update.message.text)
    except Exception as exc:
        logger.error("Conversation error for user %d: %s", user.id, exc)
        await update.message.reply_text(
            "Sorry, something went wrong while handling your message. Please try again."
        )
        return

    await notifier.send_message(chat_id, _display_text(reply))


# ---------------------------------------------------------------------------
# Timer tick: reminder scheduler + sweeper
# ---------------------------------------------------------------------------


async def run_tick(context: ContextTypes.DEFAULT_TYPE) -> None:
    """One scheduling pass followed by one dispatch pass."""
    scheduler: ReminderScheduler = context.bot_data["scheduler"]
    sweeper: Sweeper = context.bot_data["sweeper"]

    try:
        scheduler.run_tick()
    except Exception as exc:
        logger.error("Reminder scheduler tick failed: %s", exc)

    try:
        await sweeper.process_pending_schedules()
    except Exception as exc:
        logger.error("Sweeper tick failed: %s", exc)


def _setup_ticks(app: Application) -> None:
    """Register the repeating scheduler/sweeper job."""
    app.job_queue.run_repeating(
        run_tick,
        interval=settings.TICK_SECONDS,
        first=5,
        name="reminder_tick",
    )
    logger.info("Reminder tick scheduled every %d seconds", settings.TICK_SECONDS)


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_services(notifier: NotificationPort, db_path: str | None = None) -> dict[str, Any]:
    """Wire stores and core services. Returned dict goes into bot_data."""
    from coach.core.functions import FunctionRegistry
    from coach.core.llm import get_gateway
    from coach.core.orchestrator import Orchestrator
    from coach.core.ratelimit import RateLimiter
    from coach.core.reminders import ReminderScheduler
    from coach.core.schedule_parser import ScheduleService
    from coach.core.sweeper import Sweeper
    from coach.data.db import (
        DailyScheduleDB,
        FactDB,
        MessageHistoryDB,
        ScheduledMessageDB,
        TaskDB,
        TaskEventDB,
        UserDB,
    )

    user_db = UserDB(db_path)
    task_db = TaskDB(db_path)
    message_db = ScheduledMessageDB(db_path)
    event_db = TaskEventDB(db_path)
    fact_db = FactDB(db_path)
    history_db = MessageHistoryDB(db_path)
    schedule_db = DailyScheduleDB(db_path)

    registry = FunctionRegistry(user_db, task_db, message_db, event_db, fact_db, schedule_db)
    orchestrator = Orchestrator(
        gateway=get_gateway(),
        registry=registry,
        user_db=user_db,
        task_db=task_db,
        fact_db=fact_db,
        history_db=history_db,
        schedule_service=ScheduleService(schedule_db, task_db, message_db),
    )
    return {
        "user_db": user_db,
        "task_db": task_db,
        "message_db": message_db,
        "orchestrator": orchestrator,
        "scheduler": ReminderScheduler(user_db, task_db, message_db, event_db),
        "sweeper": Sweeper(message_db, user_db, orchestrator, notifier),
        "notifier": notifier,
        "rate_limiter": RateLimiter(
            settings.RATE_LIMIT_MESSAGES, settings.RATE_LIMIT_WINDOW_SECONDS,
        ),
    }


def build_app(notifier: NotificationPort | None = None) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
    """
    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).concurrent_updates(True).build()

    if notifier is None:
        from coach.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    app.bot_data.update(build_services(notifier))

    # Commands
    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("tasks", cmd_tasks))
    app.add_handler(CommandHandler("reminders", cmd_reminders))
    app.add_handler(CommandHandler("timezone", cmd_timezone))
    app.add_handler(CommandHandler("morning", cmd_morning))
    app.add_handler(CommandHandler("model", cmd_model))

    # Text messages (non-command)
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))

    _setup_ticks(app)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting Coach Assistant bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
