"""
PlannerBot: Telegram Bot.

Telegram is the only user interface. Participants report availability with
/yes, /no, /prob or the /plan keyboard; the engine answers with a proposed
time when everyone can play, and saved games get a countdown of reminders
in the chat they were saved from.

Chats outside ALLOWED_CHAT_IDS (when set) are silently ignored.
"""

from __future__ import annotations

import html
import logging
from datetime import date, datetime, time, timedelta
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from telegram import Update, User
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
)

from src.bot.keyboards import SEP, plan_keyboard, save_keyboard, time_keyboard
from src.config import settings
from src.core.errors import IdentityMismatchError, PlannerError
from src.data.models import Availability

if TYPE_CHECKING:
    from telegram import InlineKeyboardMarkup

    from src.core.clock import LocalClock
    from src.core.planner import DayOverview, Match, PlanningEngine
    from src.data.models import PlannedSession
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

_NOT_YOUR_BUTTON = "Not your button!"


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores updates from chats not on the allow-list.

    An empty ALLOWED_CHAT_IDS serves every chat.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if settings.ALLOWED_CHAT_IDS and (chat is None or chat.id not in settings.ALLOWED_CHAT_IDS):
            cid = chat.id if chat else "unknown"
            logger.warning("Update from unauthorized chat_id=%s ignored", cid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _identity(user: User) -> tuple[str, str]:
    """(handle, display name) for a Telegram user."""
    handle = user.username or str(user.id)
    return handle, user.full_name or handle


def _parse_hhmm(text: str) -> time | None:
    try:
        return datetime.strptime(text.strip(), "%H:%M").time()
    except ValueError:
        return None


def _parse_save_args(text: str) -> datetime | None:
    """Parse "DD.MM.YYYY HH:MM" into a naive local datetime."""
    try:
        return datetime.strptime(" ".join(text.split()), "%d.%m.%Y %H:%M")
    except ValueError:
        return None


def _engine(context: ContextTypes.DEFAULT_TYPE) -> PlanningEngine:
    return context.bot_data["engine"]


def _format_sessions(engine: PlanningEngine, sessions: list[PlannedSession]) -> str:
    lines = []
    for s in sessions:
        local = engine.clock.to_local(s.starts_at)
        lines.append(f"- [{s.id}] {local.strftime('%d.%m.%Y (%a) %H:%M')}")
    return "\n".join(lines)


def _format_overview(
    overview: list[DayOverview], match: Match | None, clock: LocalClock,
) -> str:
    """The /get table: every active participant's answer per day."""
    lines: list[str] = []
    for day in overview:
        lines.append(f"<b>{day.day.strftime('%d %b (%a)')}</b>")
        for participant, response in day.entries:
            status = response.status if response else Availability.UNKNOWN
            suffix = ""
            if response and response.status is Availability.YES and response.earliest_time:
                suffix = f" (from {clock.to_local(response.earliest_time).strftime('%H:%M')})"
            lines.append(
                f"{html.escape(participant.display_name)}: <i>{status.sign}{suffix}</i>"
            )
        lines.append("")

    if match is None:
        nearest = "not found"
    else:
        nearest = match.day.strftime("%d %b (%a)")
        if match.common_time is not None:
            nearest += f" {match.common_time.strftime('%H:%M')}"
    lines.append(f"<b>Nearest suitable date</b>: {nearest}")
    return "\n".join(lines)


def _plan_markup(engine: PlanningEngine, handle: str) -> InlineKeyboardMarkup:
    today = engine.clock.today()
    days = engine.plan_range_days
    responses = engine.ledger.range_for(
        today, today + timedelta(days=days - 1), active_only=False,
    )
    statuses = {r.day: r.status for r in responses if r.handle == handle}
    return plan_keyboard(handle, today, days, statuses)


async def _propose(
    update: Update, context: ContextTypes.DEFAULT_TYPE, day: date, common_time: datetime,
) -> None:
    """Announce that everyone can play and offer a Save button."""
    await context.bot.send_message(
        chat_id=update.effective_chat.id,
        message_thread_id=update.effective_message.message_thread_id,
        text=f"Hooray! Everyone can play on {day.strftime('%d.%m.%Y')}! "
        f"Suitable time: <b>{common_time.strftime('%H:%M')}</b>",
        parse_mode="HTML",
        reply_markup=save_keyboard(day, common_time.time()),
    )


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


_USAGE = (
    "<b><u>Bot menu</u></b>:\n"
    "/yes hh:mm - I can play today from this time\n"
    "/no - I can't play today\n"
    "/prob - I might be able to play today\n"
    "/plan - Plan the next 8 days\n\n"
    "/pause - Pause taking part in games\n"
    "/unpause - Resume taking part in games\n\n"
    "/get - Show the plan and the nearest suitable date\n"
    "/save dd.mm.yyyy hh:mm - Save the next game\n"
    "/saved - List saved games\n"
    "/unsave number - Cancel a saved game"
)


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start and /help: usage."""
    await update.message.reply_text(_USAGE, parse_mode="HTML")


@authorized_only
async def cmd_yes(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /yes HH:MM: available today from that time."""
    engine = _engine(context)
    at = _parse_hhmm(" ".join(context.args or []))
    if at is None:
        await update.message.reply_text(
            "Tell me from what time you're free, e.g. /yes 19:30"
        )
        return

    handle, name = _identity(update.effective_user)
    today = engine.clock.today()
    try:
        common_time = engine.record_availability(
            handle, today, Availability.YES, at, display_name=name,
        )
    except PlannerError as exc:
        logger.error("/yes error: %s", exc)
        await update.message.reply_text("Couldn't record your answer. Please try again.")
        return

    await update.message.set_reaction("❤")
    if common_time is not None:
        await _propose(update, context, today, common_time)


@authorized_only
async def cmd_no(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /no: not available today; cancels today's saved game."""
    engine = _engine(context)
    handle, name = _identity(update.effective_user)
    today = engine.clock.today()

    had_session = engine.session_on(today) is not None
    engine.record_availability(handle, today, Availability.NO, display_name=name)

    if had_session:
        await update.message.reply_text("Today's game has been cancelled")
    await update.message.set_reaction("💩")


@authorized_only
async def cmd_prob(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /prob: maybe available today."""
    engine = _engine(context)
    handle, name = _identity(update.effective_user)
    today = engine.clock.today()

    common_time = engine.record_availability(
        handle, today, Availability.PROBABLY, display_name=name,
    )
    await update.message.set_reaction("😐")
    if common_time is not None:
        await _propose(update, context, today, common_time)


@authorized_only
async def cmd_get(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /get: the week's table and the nearest suitable date."""
    engine = _engine(context)
    try:
        overview = engine.overview()
        match = engine.find_nearest_match()
    except Exception as exc:
        logger.error("/get error: %s", exc)
        await update.message.reply_text("Couldn't load the plan. Please try again.")
        return

    await update.message.reply_text(_format_overview(overview, match, engine.clock), parse_mode="HTML")


@authorized_only
async def cmd_pause(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /pause: stop being counted for quorum."""
    handle, name = _identity(update.effective_user)
    _engine(context).set_active(handle, False, display_name=name)
    await update.message.set_reaction("😢")


@authorized_only
async def cmd_unpause(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /unpause: be counted for quorum again."""
    engine = _engine(context)
    handle, name = _identity(update.effective_user)
    engine.set_active(handle, True, display_name=name)
    await update.message.set_reaction("🎉")


@authorized_only
async def cmd_plan(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /plan: per-day availability keyboard for the sender."""
    engine = _engine(context)
    handle, name = _identity(update.effective_user)
    engine.roster.ensure(handle, name)
    await update.message.reply_text(
        "Mark the days you're free in the coming days:",
        reply_markup=_plan_markup(engine, handle),
    )


@authorized_only
async def cmd_save(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /save DD.MM.YYYY HH:MM: persist a game and schedule reminders."""
    args = " ".join(context.args or [])
    if not args:
        await update.message.reply_text(
            "Missing date/time.\n\nUsage example:\n/save 28.01.2026 18:30"
        )
        return

    starts_at = _parse_save_args(args)
    if starts_at is None:
        await update.message.reply_text(
            "Invalid date/time format.\n\nUsage example:\n/save 28.01.2026 18:30"
        )
        return

    await _save_game(update, context, starts_at)


async def _save_game(
    update: Update, context: ContextTypes.DEFAULT_TYPE, starts_at: datetime,
) -> None:
    engine = _engine(context)
    message = update.effective_message
    try:
        result, job_ids = engine.promote_and_schedule(
            starts_at, message.chat_id, message.message_thread_id,
        )
    except Exception as exc:
        logger.error("save error: %s", exc)
        await message.reply_text("Couldn't save the game. Please try again.")
        return

    if not result.created:
        await message.reply_text("⚔️ A game is already planned for that day!")
        return

    logger.info("Session #%d saved with %d reminder(s)", result.session.id, len(job_ids))
    upcoming = _format_sessions(engine, engine.upcoming_sessions())
    await message.reply_text(f"🏰 Game saved! Upcoming games:\n\n{upcoming}")


@authorized_only
async def cmd_saved(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /saved: list upcoming games."""
    engine = _engine(context)
    sessions = engine.upcoming_sessions()
    if not sessions:
        await update.message.reply_text("No saved games.")
        return
    await update.message.reply_text(f"Saved games:\n\n{_format_sessions(engine, sessions)}")


@authorized_only
async def cmd_unsave(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /unsave <id>: cancel a game and all its reminders."""
    args = context.args or []
    try:
        session_id = int(args[0])
    except (IndexError, ValueError):
        await update.message.reply_text(
            "Game number missing or not a number.\n\nUsage example:\n/unsave 1"
        )
        return

    if not _engine(context).cancel_session(session_id):
        await update.message.reply_text(f"Game {session_id} not found")
        return
    await update.message.reply_text("Game and all its reminders removed")


# ---------------------------------------------------------------------------
# Callback handlers
# ---------------------------------------------------------------------------


@authorized_only
async def handle_plan_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle plan keyboard presses: plan / ptime / pback / pdone."""
    query = update.callback_query
    engine = _engine(context)
    parts = query.data.split(SEP)
    action, issued_to = parts[0], parts[-1]
    handle, name = _identity(query.from_user)

    try:
        if action == "plan":
            day = date.fromisoformat(parts[2])
            new_status = Availability(parts[1]).cycle()
            engine.record_availability(
                handle, day, new_status, display_name=name, issued_to=issued_to,
            )
            await query.answer()
            if new_status is Availability.YES:
                await query.edit_message_text(
                    "Pick the time you're free from:",
                    reply_markup=time_keyboard(handle, day),
                )
            else:
                await query.edit_message_reply_markup(_plan_markup(engine, handle))
            return

        if action == "ptime":
            day = date.fromisoformat(parts[1])
            engine.record_availability(
                handle, day, Availability.YES, _parse_hhmm(parts[2]),
                display_name=name, issued_to=issued_to,
            )
            await query.answer()
            await query.edit_message_text(
                "Mark the days you're free in the coming days:",
                reply_markup=_plan_markup(engine, handle),
            )
            return

        if issued_to != handle:
            raise IdentityMismatchError(issued_to, handle)
    except IdentityMismatchError as exc:
        logger.warning("%s", exc)
        await query.answer(_NOT_YOUR_BUTTON)
        return
    except PlannerError as exc:
        logger.error("plan callback error: %s", exc)
        await query.answer("Something went wrong. Please try again.")
        return

    await query.answer()
    if action == "pback":
        await query.edit_message_text(
            "Mark the days you're free in the coming days:",
            reply_markup=_plan_markup(engine, handle),
        )
    elif action == "pdone":
        matches = engine.finish_planning(handle)
        await query.delete_message()
        for match in matches:
            await _propose(update, context, match.day, match.common_time)


@authorized_only
async def handle_save_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle the Save button under a proposal."""
    query = update.callback_query
    await query.answer()
    _, day_raw, hhmm = query.data.split(SEP)
    starts_at = datetime.combine(date.fromisoformat(day_raw), _parse_hhmm(hhmm))
    await _save_game(update, context, starts_at)


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(
    engine: PlanningEngine | None = None,
    notifier: NotificationPort | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        engine: Planning engine. Defaults to one over settings.DATABASE_PATH.
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
    """
    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if engine is None:
        from src.core.planner import PlanningEngine
        engine = PlanningEngine()

    if notifier is None:
        from src.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    app.bot_data["engine"] = engine
    app.bot_data["notifier"] = notifier

    # Commands
    app.add_handler(CommandHandler(["start", "help"], cmd_start))
    app.add_handler(CommandHandler("yes", cmd_yes))
    app.add_handler(CommandHandler("no", cmd_no))
    app.add_handler(CommandHandler("prob", cmd_prob))
    app.add_handler(CommandHandler("get", cmd_get))
    app.add_handler(CommandHandler("pause", cmd_pause))
    app.add_handler(CommandHandler("unpause", cmd_unpause))
    app.add_handler(CommandHandler("plan", cmd_plan))
    app.add_handler(CommandHandler("save", cmd_save))
    app.add_handler(CommandHandler("saved", cmd_saved))
    app.add_handler(CommandHandler("unsave", cmd_unsave))
    app.add_handler(CallbackQueryHandler(handle_plan_callback, pattern=r"^(plan|ptime|pback|pdone);"))
    app.add_handler(CallbackQueryHandler(handle_save_callback, pattern=r"^save;"))

    _setup_reminder_dispatch(app, engine, notifier)
    _setup_weekly_reminder(app, engine, notifier)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def _setup_reminder_dispatch(
    app: Application,
    engine: PlanningEngine,
    notifier: NotificationPort,
) -> None:
    """Poll the durable reminder jobs on the JobQueue."""
    from src.core.scheduler import ReminderDispatcher

    dispatcher = ReminderDispatcher(
        engine.jobs, engine.sessions, engine.ledger, notifier, engine.clock,
    )
    app.bot_data["dispatcher"] = dispatcher

    async def _dispatch_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
        await dispatcher.dispatch_due()

    app.job_queue.run_repeating(
        _dispatch_callback,
        interval=settings.REMINDER_POLL_SECONDS,
        first=5,
        name="reminder_dispatch",
    )


def _setup_weekly_reminder(
    app: Application,
    engine: PlanningEngine,
    notifier: NotificationPort,
) -> None:
    """Register the weekly "please /plan" reminder, if a chat is configured."""
    from src.core.scheduler import send_weekly_voting_reminder

    chat_id = settings.WEEKLY_REMINDER_CHAT_ID
    if chat_id is None:
        return

    reminder_time = time(hour=settings.WEEKLY_REMINDER_HOUR, minute=0, tzinfo=engine.clock.tz)

    async def _weekly_job_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
        await send_weekly_voting_reminder(
            notifier, engine.roster, chat_id, settings.WEEKLY_REMINDER_THREAD_ID,
        )

    # JobQueue days: 0 = Sunday .. 6 = Saturday
    ptb_day = (settings.WEEKLY_REMINDER_WEEKDAY + 1) % 7
    app.job_queue.run_daily(
        _weekly_job_callback,
        time=reminder_time,
        days=(ptb_day,),
        name="weekly_voting_reminder",
    )

    logger.info(
        "Weekly voting reminder scheduled on weekday %d at %02d:00 %s",
        settings.WEEKLY_REMINDER_WEEKDAY,
        settings.WEEKLY_REMINDER_HOUR,
        settings.TIMEZONE,
    )


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting PlannerBot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
