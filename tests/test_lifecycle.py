"""
tests/test_lifecycle.py — Event State Machine
==============================================
Scheduling, activation, archiving, auto-deletion and cancellation, with a
recording fake gateway standing in for Discord.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from muster.database.models import Event, LogEntry, Participant, Reminder
from muster.services.event_message import EventMessageRenderer
from muster.services.exceptions import ExternalGatewayError, NotFoundError, ValidationError
from muster.services.lifecycle_service import (
    EventLifecycle,
    activate_event,
    cancel_event,
    complete_event,
    due_for_activation,
    schedule_event,
)
from muster.services.voice_service import VoiceChannelManager
from conftest import CHANNEL_ID, GUILD_ID, NOW, run_async


@pytest.fixture
def lifecycle(db_engine, gateway):
    renderer = EventMessageRenderer(db_engine, gateway)
    voice = VoiceChannelManager(db_engine, gateway)
    return EventLifecycle(db_engine, gateway, renderer, voice)


def _event(engine, event_id) -> Event:
    with Session(engine) as session:
        event = session.get(Event, event_id)
        session.expunge(event)
        return event


class TestSchedule:

    def test_creates_scheduled_event(self, db_engine):
        event = schedule_event(
            db_engine, guild_id=GUILD_ID, channel_id=CHANNEL_ID, title="  Raid  ",
            start_time=NOW + timedelta(days=1), created_by=5, now=NOW,
            duration=120, max_participants=10,
        )
        assert event.id is not None
        assert event.title == "Raid"
        assert event.status == "scheduled"
        assert event.require_approval is False
        with Session(db_engine) as session:
            entry = session.scalars(select(LogEntry)).one()
            assert entry.action == "create_event"

    def test_approval_channel_forces_approval(self, db_engine, guild_settings):
        guild_settings(approval_channel_ids=[CHANNEL_ID])
        event = schedule_event(
            db_engine, guild_id=GUILD_ID, channel_id=CHANNEL_ID, title="Raid",
            start_time=NOW + timedelta(days=1), now=NOW,
        )
        assert event.require_approval is True

    @pytest.mark.parametrize(
        "overrides",
        [
            {"title": " "},
            {"start_time": NOW - timedelta(minutes=1)},
            {"duration": 0},
            {"max_participants": -1},
            {"colour": "red"},
        ],
    )
    def test_rejects_invalid_input(self, db_engine, overrides):
        kwargs = {
            "guild_id": GUILD_ID, "channel_id": CHANNEL_ID, "title": "Raid",
            "start_time": NOW + timedelta(days=1), "now": NOW,
        }
        kwargs.update(overrides)
        with pytest.raises(ValidationError):
            schedule_event(db_engine, **kwargs)

    def test_schedule_publishes_message(self, db_engine, gateway, lifecycle):
        event = run_async(lifecycle.schedule(
            guild_id=GUILD_ID, channel_id=CHANNEL_ID, title="Raid",
            start_time=NOW + timedelta(days=3650),
        ))
        gateway.send_message.assert_awaited_once()
        assert _event(db_engine, event.id).message_id == 9000


class TestActivation:

    def test_scheduled_to_active_once(self, db_engine, make_event, lifecycle):
        event_id = make_event(start_time=NOW - timedelta(minutes=1))

        assert run_async(lifecycle.run_activation(NOW)) == 1
        assert run_async(lifecycle.run_activation(NOW)) == 0
        assert _event(db_engine, event_id).status == "active"

    def test_future_event_not_activated(self, db_engine, make_event, lifecycle):
        event_id = make_event(start_time=NOW + timedelta(minutes=1))
        assert run_async(lifecycle.run_activation(NOW)) == 0
        assert _event(db_engine, event_id).status == "scheduled"

    def test_activates_exactly_at_start(self, db_engine, make_event):
        started = make_event(start_time=NOW)
        make_event(start_time=NOW + timedelta(seconds=1))
        assert due_for_activation(db_engine, NOW) == [started]

    def test_selection_follows_activation_rule(self, db_engine, make_event):
        make_event(start_time=NOW - timedelta(minutes=1))
        with patch("muster.services.lifecycle_service.activation_due", return_value=False):
            assert due_for_activation(db_engine, NOW) == []

    def test_reminder_messages_removed_rows_kept(self, db_engine, make_event, gateway, lifecycle):
        event_id = make_event(start_time=NOW - timedelta(minutes=1))
        with Session(db_engine) as session:
            session.add(Reminder(
                event_id=event_id, interval="1h", channel_id=CHANNEL_ID,
                message_id=321, sent_at=NOW - timedelta(hours=1),
            ))
            session.commit()

        run_async(lifecycle.run_activation(NOW))

        gateway.delete_message.assert_awaited_once_with(CHANNEL_ID, 321)
        with Session(db_engine) as session:
            reminder = session.get(Reminder, (event_id, "1h"))
            assert reminder is not None
            assert reminder.message_id is None

    def test_message_refreshed(self, db_engine, make_event, gateway, lifecycle):
        make_event(start_time=NOW - timedelta(minutes=1), message_id=444)
        run_async(lifecycle.run_activation(NOW))
        gateway.edit_message.assert_awaited_once()
        assert gateway.edit_message.await_args.args == (CHANNEL_ID, 444)

    def test_refresh_failure_keeps_transition(self, db_engine, make_event, gateway, lifecycle):
        event_id = make_event(start_time=NOW - timedelta(minutes=1), message_id=444)
        gateway.edit_message.side_effect = ExternalGatewayError("boom")

        assert run_async(lifecycle.run_activation(NOW)) == 1
        assert _event(db_engine, event_id).status == "active"


class TestArchiving:

    def test_waits_for_longer_of_hour_and_duration(self, db_engine, make_event, lifecycle):
        event_id = make_event(status="active", start_time=NOW - timedelta(hours=2), duration=180)

        assert run_async(lifecycle.run_archiving(NOW)) == 0
        assert run_async(lifecycle.run_archiving(NOW + timedelta(hours=1))) == 1

        event = _event(db_engine, event_id)
        assert event.status == "completed"
        assert event.archived_at is not None

    def test_short_event_archived_after_one_hour(self, db_engine, make_event, lifecycle):
        make_event(status="active", start_time=NOW - timedelta(minutes=59), duration=30)
        assert run_async(lifecycle.run_archiving(NOW)) == 0
        assert run_async(lifecycle.run_archiving(NOW + timedelta(minutes=1))) == 1

    def test_archive_post_and_thread_deletion(
        self, db_engine, make_event, guild_settings, gateway, lifecycle
    ):
        guild_settings(archive_channel_id=42)
        event_id = make_event(
            status="active", start_time=NOW - timedelta(hours=2),
            thread_id=77, delete_thread=True,
        )
        with Session(db_engine) as session:
            session.add(Participant(
                event_id=event_id, user_id=1, username="alice", status="confirmed",
            ))
            session.commit()

        run_async(lifecycle.run_archiving(NOW))

        assert gateway.send_message.await_args.args == (42,)
        embed = gateway.send_message.await_args.kwargs["embed"]
        assert "alice" in embed.fields[-1].value
        gateway.delete_channel.assert_awaited_once()
        assert gateway.delete_channel.await_args.args == (77,)

    def test_archive_post_failure_keeps_completion(
        self, db_engine, make_event, guild_settings, gateway, lifecycle
    ):
        guild_settings(archive_channel_id=42)
        event_id = make_event(status="active", start_time=NOW - timedelta(hours=2))
        gateway.send_message.side_effect = ExternalGatewayError("no access")

        assert run_async(lifecycle.run_archiving(NOW)) == 1
        assert _event(db_engine, event_id).status == "completed"


class TestMonotonicStatus:

    def test_completed_event_never_reactivated(self, db_engine, make_event):
        event_id = make_event(status="completed", start_time=NOW - timedelta(hours=3))
        assert activate_event(db_engine, event_id, NOW) is False
        assert complete_event(db_engine, event_id, NOW) is None
        assert _event(db_engine, event_id).status == "completed"

    def test_scheduled_event_not_completed_directly(self, db_engine, make_event):
        event_id = make_event(start_time=NOW - timedelta(hours=3))
        assert complete_event(db_engine, event_id, NOW) is None

    def test_cancelled_event_stays_cancelled(self, db_engine, make_event):
        event_id = make_event(status="cancelled", start_time=NOW - timedelta(minutes=5))
        assert activate_event(db_engine, event_id, NOW) is False
        with pytest.raises(ValidationError):
            cancel_event(db_engine, event_id, now=NOW)


class TestDeletion:

    def test_message_deleted_after_window(
        self, db_engine, make_event, guild_settings, gateway, lifecycle
    ):
        guild_settings(auto_delete_hours=24)
        event_id = make_event(
            status="completed", start_time=NOW - timedelta(hours=30),
            archived_at=NOW - timedelta(hours=25), message_id=555,
        )

        assert run_async(lifecycle.run_deletion(NOW)) == 1

        gateway.delete_message.assert_awaited_once_with(CHANNEL_ID, 555)
        assert _event(db_engine, event_id).deleted_at is not None
        assert run_async(lifecycle.run_deletion(NOW)) == 0

    def test_not_yet_due(self, db_engine, make_event, guild_settings, lifecycle):
        guild_settings(auto_delete_hours=24)
        make_event(
            status="completed", start_time=NOW - timedelta(hours=10),
            archived_at=NOW - timedelta(hours=8), message_id=555,
        )
        assert run_async(lifecycle.run_deletion(NOW)) == 0

    def test_without_guild_setting(self, db_engine, make_event, lifecycle):
        make_event(
            status="completed", start_time=NOW - timedelta(days=30),
            archived_at=NOW - timedelta(days=29), message_id=555,
        )
        assert run_async(lifecycle.run_deletion(NOW)) == 0

    def test_failed_delete_retried_next_tick(
        self, db_engine, make_event, guild_settings, gateway, lifecycle
    ):
        guild_settings(auto_delete_hours=1)
        event_id = make_event(
            status="completed", start_time=NOW - timedelta(hours=5),
            archived_at=NOW - timedelta(hours=2), message_id=555,
        )
        gateway.delete_message.side_effect = ExternalGatewayError("rate limited")

        assert run_async(lifecycle.run_deletion(NOW)) == 0
        assert _event(db_engine, event_id).deleted_at is None

        gateway.delete_message.side_effect = None
        assert run_async(lifecycle.run_deletion(NOW)) == 1


class TestCancel:

    def test_cancel_scheduled(self, db_engine, make_event):
        event_id = make_event()
        cancel_event(db_engine, event_id, actor_id=5, now=NOW)
        assert _event(db_engine, event_id).status == "cancelled"

    def test_cancel_completed_rejected(self, db_engine, make_event):
        event_id = make_event(status="completed")
        with pytest.raises(ValidationError):
            cancel_event(db_engine, event_id, now=NOW)

    def test_cancel_unknown(self, db_engine):
        with pytest.raises(NotFoundError):
            cancel_event(db_engine, 404, now=NOW)

    def test_cancel_releases_voice_channel(self, db_engine, make_event, gateway, lifecycle):
        event_id = make_event(
            voice_channel_enabled=True, voice_channel_id=321,
            voice_channel_created_at=NOW - timedelta(minutes=5),
        )

        run_async(lifecycle.cancel(event_id, actor_id=5))

        gateway.delete_channel.assert_awaited_once()
        assert gateway.delete_channel.await_args.args == (321,)
        event = _event(db_engine, event_id)
        assert event.status == "cancelled"
        assert event.voice_channel_id is None
        assert event.voice_channel_deleted_at is not None
