"""
tests/test_reminders.py — Reminder Dispatcher
==============================================
At-most-once reminders per (event, interval), the 90 s tolerance window,
claim release on send failure and DM fan-out.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.orm import Session

from muster.database.models import Participant, Reminder
from muster.services.exceptions import ExternalGatewayError
from muster.services.reminder_service import (
    ReminderDispatcher,
    claim_reminder,
    reminder_targets,
)
from conftest import CHANNEL_ID, NOW, run_async


@pytest.fixture
def dispatcher(db_engine, gateway):
    return ReminderDispatcher(db_engine, gateway)


def _confirm(engine, event_id, *user_ids):
    with Session(engine) as session:
        for user_id in user_ids:
            session.add(Participant(
                event_id=event_id, user_id=user_id, username=f"user{user_id}",
                status="confirmed", joined_at=NOW - timedelta(days=1, minutes=-user_id),
            ))
        session.commit()


def _reminder(engine, event_id, interval):
    with Session(engine) as session:
        return session.get(Reminder, (event_id, interval))


class TestDueReminders:

    def test_one_hour_reminder_sent_once(self, db_engine, make_event, guild_settings, gateway, dispatcher):
        guild_settings(reminder_intervals=["1h"])
        event_id = make_event(start_time=NOW + timedelta(hours=1))
        _confirm(db_engine, event_id, 1, 2)

        assert run_async(dispatcher.run(NOW)) == 1
        assert run_async(dispatcher.run(NOW + timedelta(seconds=60))) == 0

        gateway.send_message.assert_awaited_once()
        assert gateway.send_message.await_args.args == (CHANNEL_ID,)
        assert gateway.send_message.await_args.kwargs["content"] == "<@1> <@2>"
        reminder = _reminder(db_engine, event_id, "1h")
        assert reminder.message_id == 9000

    def test_outside_tolerance_not_sent(self, db_engine, make_event, guild_settings, gateway, dispatcher):
        guild_settings(reminder_intervals=["1h"])
        make_event(start_time=NOW + timedelta(minutes=62))

        assert run_async(dispatcher.run(NOW)) == 0
        gateway.send_message.assert_not_awaited()

    def test_guild_without_settings_uses_defaults(self, db_engine, make_event, gateway, dispatcher):
        event_id = make_event(start_time=NOW + timedelta(minutes=15))

        assert run_async(dispatcher.run(NOW)) == 1
        assert _reminder(db_engine, event_id, "15m") is not None
        assert gateway.send_message.await_args.kwargs["content"] == "No participants yet"

    def test_each_interval_independent(self, db_engine, make_event, guild_settings, dispatcher):
        guild_settings(reminder_intervals=["1h", "15m"])
        event_id = make_event(start_time=NOW + timedelta(hours=1))

        assert run_async(dispatcher.run(NOW)) == 1
        assert run_async(dispatcher.run(NOW + timedelta(minutes=45))) == 1
        assert _reminder(db_engine, event_id, "1h") is not None
        assert _reminder(db_engine, event_id, "15m") is not None

    def test_malformed_interval_skipped(self, db_engine, make_event, guild_settings, dispatcher):
        guild_settings(reminder_intervals=["soon", "1h"])
        make_event(start_time=NOW + timedelta(hours=1))

        assert run_async(dispatcher.run(NOW)) == 1

    def test_active_events_ignored(self, db_engine, make_event, guild_settings, dispatcher):
        guild_settings(reminder_intervals=["1h"])
        make_event(start_time=NOW + timedelta(hours=1), status="active")

        assert run_async(dispatcher.run(NOW)) == 0

    def test_one_day_reminder_at_horizon_edge(self, db_engine, make_event, guild_settings, dispatcher):
        guild_settings(reminder_intervals=["1d"])
        make_event(start_time=NOW + timedelta(days=1))

        assert run_async(dispatcher.run(NOW)) == 1

    def test_targets_follow_horizon_rule(self, db_engine, make_event):
        make_event(start_time=NOW + timedelta(hours=1))
        assert len(reminder_targets(db_engine, NOW)) == 1
        with patch("muster.services.reminder_service.in_reminder_horizon", return_value=False):
            assert reminder_targets(db_engine, NOW) == []


class TestDeliveryFailures:

    def test_send_failure_releases_claim(self, db_engine, make_event, guild_settings, gateway, dispatcher):
        guild_settings(reminder_intervals=["1h"])
        event_id = make_event(start_time=NOW + timedelta(hours=1))
        gateway.send_message.side_effect = ExternalGatewayError("Missing Access")

        assert run_async(dispatcher.run(NOW)) == 0
        assert _reminder(db_engine, event_id, "1h") is None

        gateway.send_message.side_effect = lambda *args, **kwargs: 1234
        assert run_async(dispatcher.run(NOW + timedelta(seconds=60))) == 1
        assert _reminder(db_engine, event_id, "1h").message_id == 1234

    def test_direct_messages(self, db_engine, make_event, guild_settings, gateway, dispatcher):
        guild_settings(reminder_intervals=["1h"], dm_reminders=True)
        event_id = make_event(start_time=NOW + timedelta(hours=1))
        _confirm(db_engine, event_id, 1, 2)

        run_async(dispatcher.run(NOW))

        assert [c.args for c in gateway.send_direct_message.await_args_list] == [(1,), (2,)]

    def test_dm_failure_keeps_claim(self, db_engine, make_event, guild_settings, gateway, dispatcher):
        guild_settings(reminder_intervals=["1h"], dm_reminders=True)
        event_id = make_event(start_time=NOW + timedelta(hours=1))
        _confirm(db_engine, event_id, 1)
        gateway.send_direct_message.side_effect = ExternalGatewayError("DMs closed")

        assert run_async(dispatcher.run(NOW)) == 1
        assert _reminder(db_engine, event_id, "1h") is not None


def test_claim_is_exclusive(db_engine, make_event):
    event_id = make_event()
    assert claim_reminder(db_engine, event_id, "1h", CHANNEL_ID, NOW) is True
    assert claim_reminder(db_engine, event_id, "1h", CHANNEL_ID, NOW) is False
