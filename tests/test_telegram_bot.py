"""Tests for src.bot.telegram_bot — Telegram bot handlers.

Handlers run against a real PlanningEngine over a temp DB; Telegram objects
(Update, CallbackQuery, Bot) are mocked.
"""

from datetime import date, datetime, time, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.bot.telegram_bot import (
    _format_overview,
    _identity,
    _parse_hhmm,
    _parse_save_args,
    cmd_get,
    cmd_no,
    cmd_pause,
    cmd_plan,
    cmd_prob,
    cmd_save,
    cmd_saved,
    cmd_start,
    cmd_unpause,
    cmd_unsave,
    cmd_yes,
    handle_plan_callback,
    handle_save_callback,
)
from src.config import settings
from src.core.planner import Match
from src.data.models import Availability

TODAY = date(2026, 3, 10)
TOMORROW = TODAY + timedelta(days=1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_user(username="alice", full_name="Alice", user_id=111):
    user = MagicMock()
    user.username = username
    user.full_name = full_name
    user.id = user_id
    return user


def _make_update(username="alice", chat_id=-100):
    """Create a mock Update with a command message."""
    update = MagicMock()
    update.effective_user = _make_user(username, username.title())
    update.effective_chat.id = chat_id
    update.message.chat_id = chat_id
    update.message.message_thread_id = None
    update.message.reply_text = AsyncMock()
    update.message.set_reaction = AsyncMock()
    update.effective_message = update.message
    return update


def _make_callback(data, username="alice", chat_id=-100):
    """Create a mock Update carrying an inline-button press."""
    update = _make_update(username, chat_id)
    query = MagicMock()
    query.data = data
    query.from_user = _make_user(username, username.title())
    query.answer = AsyncMock()
    query.edit_message_text = AsyncMock()
    query.edit_message_reply_markup = AsyncMock()
    query.delete_message = AsyncMock()
    update.callback_query = query
    return update


def _make_context(engine, args=None):
    context = MagicMock()
    context.args = args or []
    context.bot_data = {"engine": engine}
    context.bot.send_message = AsyncMock()
    return context


def _replies(update):
    return [c.args[0] for c in update.message.reply_text.call_args_list]


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


class TestParseHelpers:
    def test_parse_hhmm(self):
        assert _parse_hhmm("19:30") == time(19, 30)
        assert _parse_hhmm(" 9:05 ") == time(9, 5)

    def test_parse_hhmm_invalid(self):
        assert _parse_hhmm("25:00") is None
        assert _parse_hhmm("soon") is None
        assert _parse_hhmm("") is None

    def test_parse_save_args(self):
        assert _parse_save_args("28.01.2026 18:30") == datetime(2026, 1, 28, 18, 30)
        assert _parse_save_args("28.01.2026   18:30") == datetime(2026, 1, 28, 18, 30)

    def test_parse_save_args_invalid(self):
        assert _parse_save_args("2026-01-28 18:30") is None
        assert _parse_save_args("28.01.2026") is None

    def test_identity_falls_back_to_id(self):
        user = _make_user(username=None, full_name="No Username", user_id=42)
        assert _identity(user) == ("42", "No Username")


class TestFormatOverview:
    def test_table_and_nearest_date(self, engine):
        engine.record_availability("alice", TODAY, Availability.YES, time(18, 0), display_name="Alice")
        engine.roster.ensure("bob", "Bob <b>")
        text = _format_overview(engine.overview(days=1), Match(TOMORROW, None), engine.clock)
        assert "Alice: <i>+ (from 18:00)</i>" in text
        assert "Bob &lt;b&gt;: <i>???</i>" in text
        assert "<b>Nearest suitable date</b>: 11 Mar (Wed)" in text

    def test_not_found(self, engine):
        text = _format_overview([], None, engine.clock)
        assert text.endswith("not found")

    def test_nearest_with_time(self, engine):
        match = Match(TOMORROW, engine.clock.to_local(engine.clock.combine(TOMORROW, time(19, 30))))
        text = _format_overview([], match, engine.clock)
        assert text.endswith("11 Mar (Wed) 19:30")


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_unlisted_chat_ignored(self, engine):
        update = _make_update(chat_id=-999)
        with patch.object(settings, "ALLOWED_CHAT_IDS", [-100]):
            await cmd_start(update, _make_context(engine))
        update.message.reply_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_listed_chat_served(self, engine):
        update = _make_update(chat_id=-100)
        with patch.object(settings, "ALLOWED_CHAT_IDS", [-100]):
            await cmd_start(update, _make_context(engine))
        update.message.reply_text.assert_called_once()

    @pytest.mark.asyncio
    async def test_empty_allow_list_serves_everyone(self, engine):
        update = _make_update(chat_id=-555)
        await cmd_start(update, _make_context(engine))
        assert "/plan" in _replies(update)[0]


# ---------------------------------------------------------------------------
# Availability commands
# ---------------------------------------------------------------------------


class TestCmdYes:
    @pytest.mark.asyncio
    async def test_missing_time_shows_usage(self, engine):
        update = _make_update()
        await cmd_yes(update, _make_context(engine))
        assert "/yes 19:30" in _replies(update)[0]
        assert engine.ledger.get("alice", TODAY) is None

    @pytest.mark.asyncio
    async def test_records_and_proposes(self, engine):
        update = _make_update()
        context = _make_context(engine, ["19:30"])
        await cmd_yes(update, context)

        response = engine.ledger.get("alice", TODAY)
        assert response.status is Availability.YES
        update.message.set_reaction.assert_awaited_once()

        context.bot.send_message.assert_awaited_once()
        kwargs = context.bot.send_message.call_args.kwargs
        assert kwargs["chat_id"] == -100
        assert "10.03.2026" in kwargs["text"]
        assert "19:30" in kwargs["text"]
        [[button]] = kwargs["reply_markup"].inline_keyboard
        assert button.callback_data == "save;2026-03-10;19:30"

    @pytest.mark.asyncio
    async def test_no_proposal_without_quorum(self, engine):
        engine.roster.ensure("bob")
        update = _make_update()
        context = _make_context(engine, ["19:30"])
        await cmd_yes(update, context)
        context.bot.send_message.assert_not_called()


class TestCmdNoAndProb:
    @pytest.mark.asyncio
    async def test_no_cancels_todays_game(self, engine):
        engine.promote_and_schedule(datetime(2026, 3, 10, 20, 0), -100)
        update = _make_update()
        await cmd_no(update, _make_context(engine))
        assert _replies(update) == ["Today's game has been cancelled"]
        assert engine.session_on(TODAY) is None

    @pytest.mark.asyncio
    async def test_no_without_game_only_reacts(self, engine):
        update = _make_update()
        await cmd_no(update, _make_context(engine))
        update.message.reply_text.assert_not_called()
        update.message.set_reaction.assert_awaited_once()
        assert engine.ledger.get("alice", TODAY).status is Availability.NO

    @pytest.mark.asyncio
    async def test_prob_completes_quorum(self, engine):
        engine.record_availability("bob", TODAY, Availability.YES, time(20, 0))
        update = _make_update()
        context = _make_context(engine)
        await cmd_prob(update, context)
        assert engine.ledger.get("alice", TODAY).status is Availability.PROBABLY
        assert "20:00" in context.bot.send_message.call_args.kwargs["text"]


class TestCmdPause:
    @pytest.mark.asyncio
    async def test_pause_and_unpause(self, engine):
        update = _make_update()
        await cmd_pause(update, _make_context(engine))
        assert engine.roster.get("alice").active is False
        await cmd_unpause(update, _make_context(engine))
        assert engine.roster.get("alice").active is True


class TestCmdGet:
    @pytest.mark.asyncio
    async def test_shows_overview(self, engine):
        engine.record_availability("alice", TOMORROW, Availability.YES, time(18, 0))
        update = _make_update()
        await cmd_get(update, _make_context(engine))
        text = _replies(update)[0]
        assert "<b>Nearest suitable date</b>: 11 Mar (Wed) 18:00" in text
        assert update.message.reply_text.call_args.kwargs["parse_mode"] == "HTML"


# ---------------------------------------------------------------------------
# Saved games
# ---------------------------------------------------------------------------


class TestCmdSave:
    @pytest.mark.asyncio
    async def test_missing_args(self, engine):
        update = _make_update()
        await cmd_save(update, _make_context(engine))
        assert _replies(update)[0].startswith("Missing date/time.")

    @pytest.mark.asyncio
    async def test_invalid_args(self, engine):
        update = _make_update()
        await cmd_save(update, _make_context(engine, ["tomorrow"]))
        assert _replies(update)[0].startswith("Invalid date/time format.")

    @pytest.mark.asyncio
    async def test_saves_and_schedules(self, engine):
        update = _make_update()
        await cmd_save(update, _make_context(engine, ["11.03.2026", "18:30"]))
        assert _replies(update)[0].startswith("🏰 Game saved! Upcoming games:")
        session = engine.session_on(TOMORROW)
        assert session is not None
        assert len(engine.jobs.ids_for_session(session.id)) == 5

    @pytest.mark.asyncio
    async def test_duplicate_day(self, engine):
        await cmd_save(_make_update(), _make_context(engine, ["11.03.2026", "18:30"]))
        update = _make_update()
        await cmd_save(update, _make_context(engine, ["11.03.2026", "20:00"]))
        assert _replies(update) == ["⚔️ A game is already planned for that day!"]


class TestCmdSavedAndUnsave:
    @pytest.mark.asyncio
    async def test_saved_empty(self, engine):
        update = _make_update()
        await cmd_saved(update, _make_context(engine))
        assert _replies(update) == ["No saved games."]

    @pytest.mark.asyncio
    async def test_saved_lists_games(self, engine):
        result = engine.promote_session(datetime(2026, 3, 11, 18, 30))
        update = _make_update()
        await cmd_saved(update, _make_context(engine))
        assert f"[{result.session.id}] 11.03.2026 (Wed) 18:30" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_unsave_not_a_number(self, engine):
        update = _make_update()
        await cmd_unsave(update, _make_context(engine, ["abc"]))
        assert _replies(update)[0].startswith("Game number missing")

    @pytest.mark.asyncio
    async def test_unsave_unknown(self, engine):
        update = _make_update()
        await cmd_unsave(update, _make_context(engine, ["5"]))
        assert _replies(update) == ["Game 5 not found"]

    @pytest.mark.asyncio
    async def test_unsave_removes_game_and_reminders(self, engine):
        result, _ = engine.promote_and_schedule(datetime(2026, 3, 11, 18, 30), -100)
        update = _make_update()
        await cmd_unsave(update, _make_context(engine, [str(result.session.id)]))
        assert _replies(update) == ["Game and all its reminders removed"]
        assert engine.jobs.ids_for_session(result.session.id) == []


# ---------------------------------------------------------------------------
# Plan keyboard callbacks
# ---------------------------------------------------------------------------


class TestPlanCallbacks:
    @pytest.mark.asyncio
    async def test_plan_command_sends_keyboard(self, engine):
        update = _make_update()
        await cmd_plan(update, _make_context(engine))
        markup = update.message.reply_text.call_args.kwargs["reply_markup"]
        assert markup.inline_keyboard[0][0].callback_data == "plan;unknown;2026-03-10;alice"
        assert engine.roster.get("alice") is not None

    @pytest.mark.asyncio
    async def test_foreign_button_refused(self, engine):
        update = _make_callback("plan;unknown;2026-03-11;alice", username="bob")
        await handle_plan_callback(update, _make_context(engine))
        update.callback_query.answer.assert_awaited_once_with("Not your button!")
        assert engine.ledger.for_date(TOMORROW, active_only=False) == []

    @pytest.mark.asyncio
    async def test_foreign_done_refused(self, engine):
        update = _make_callback("pdone;alice", username="bob")
        await handle_plan_callback(update, _make_context(engine))
        update.callback_query.answer.assert_awaited_once_with("Not your button!")
        update.callback_query.delete_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_to_yes_opens_time_picker(self, engine):
        update = _make_callback("plan;unknown;2026-03-11;alice")
        await handle_plan_callback(update, _make_context(engine))
        assert engine.ledger.get("alice", TOMORROW).status is Availability.YES
        markup = update.callback_query.edit_message_text.call_args.kwargs["reply_markup"]
        assert markup.inline_keyboard[0][0].callback_data == "ptime;2026-03-11;09:00;alice"

    @pytest.mark.asyncio
    async def test_yes_to_no_refreshes_keyboard(self, engine):
        update = _make_callback("plan;yes;2026-03-11;alice")
        await handle_plan_callback(update, _make_context(engine))
        assert engine.ledger.get("alice", TOMORROW).status is Availability.NO
        update.callback_query.edit_message_reply_markup.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_time_pick_records_earliest_time(self, engine):
        update = _make_callback("ptime;2026-03-11;19:30;alice")
        await handle_plan_callback(update, _make_context(engine))
        response = engine.ledger.get("alice", TOMORROW)
        assert engine.clock.to_local(response.earliest_time).strftime("%H:%M") == "19:30"

    @pytest.mark.asyncio
    async def test_back_shows_plan_keyboard(self, engine):
        update = _make_callback("pback;alice")
        await handle_plan_callback(update, _make_context(engine))
        update.callback_query.edit_message_text.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_done_proposes_matches(self, engine):
        engine.record_availability("alice", TOMORROW, Availability.YES, time(18, 0))
        update = _make_callback("pdone;alice")
        context = _make_context(engine)
        await handle_plan_callback(update, context)

        update.callback_query.delete_message.assert_awaited_once()
        context.bot.send_message.assert_awaited_once()
        assert "11.03.2026" in context.bot.send_message.call_args.kwargs["text"]
        assert engine.ledger.get("alice", TODAY).status is Availability.NO


class TestSaveCallback:
    @pytest.mark.asyncio
    async def test_save_button_promotes(self, engine):
        update = _make_callback("save;2026-03-11;19:30")
        await handle_save_callback(update, _make_context(engine))
        update.callback_query.answer.assert_awaited_once()
        session = engine.session_on(TOMORROW)
        assert engine.clock.to_local(session.starts_at).strftime("%H:%M") == "19:30"
