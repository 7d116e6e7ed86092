"""
tests/test_event_message.py — Event Message Rendering
======================================================
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy.orm import Session

from muster.database.models import Event, Participant
from muster.services.embeds import build_event_embed, discord_timestamp
from muster.services.event_message import EventMessageRenderer, load_roster
from conftest import CHANNEL_ID, NOW, run_async


def _seed_roster(engine, event_id):
    with Session(engine) as session:
        session.add_all([
            Participant(event_id=event_id, user_id=1, username="a", role="Tank",
                        status="confirmed", joined_at=NOW - timedelta(minutes=3)),
            Participant(event_id=event_id, user_id=2, username="b", role="Healer",
                        spec="Holy", status="confirmed", joined_at=NOW - timedelta(minutes=2)),
            Participant(event_id=event_id, user_id=3, username="c", role="Tank",
                        status="waitlist", position=1, joined_at=NOW - timedelta(minutes=1)),
            Participant(event_id=event_id, user_id=4, username="d",
                        status="pending", joined_at=NOW),
        ])
        session.commit()


class TestRoster:

    def test_grouped_by_status(self, db_engine, make_event):
        event_id = make_event()
        _seed_roster(db_engine, event_id)

        snapshot = load_roster(db_engine, event_id)

        assert [p.user_id for p in snapshot.confirmed] == [1, 2]
        assert [p.user_id for p in snapshot.waitlist] == [3]
        assert [p.user_id for p in snapshot.pending] == [4]

    def test_unknown_event(self, db_engine):
        assert load_roster(db_engine, 404) is None


class TestEmbed:

    def test_role_groups(self, db_engine, make_event):
        event_id = make_event(role_limits={"Tank": 1, "Healer": 2})
        _seed_roster(db_engine, event_id)
        snapshot = load_roster(db_engine, event_id)

        embed = build_event_embed(
            snapshot.event, snapshot.confirmed, snapshot.waitlist, snapshot.pending
        )

        names = [f.name for f in embed.fields]
        assert "Tank (1/1)" in names
        assert "Healer (1/2)" in names
        assert any(name.endswith("Waitlist (1)") for name in names)
        healer = next(f for f in embed.fields if f.name == "Healer (1/2)")
        assert healer.value == "<@2> (Holy)"
        assert embed.footer.text == f"Event #{event_id}"

    def test_plain_participant_list(self):
        event = Event(
            id=1, title="Raid", start_time=NOW, status="scheduled", max_participants=5,
        )
        embed = build_event_embed(event, [])
        field = next(f for f in embed.fields if f.name.endswith("(0/5)"))
        assert field.value == "_No signups yet_"

    def test_timestamp_of_naive_value(self):
        assert discord_timestamp(NOW.replace(tzinfo=None), "R") == (
            f"<t:{int(NOW.timestamp())}:R>"
        )


class TestRenderer:

    def test_publish_stores_message_id(self, db_engine, make_event, gateway):
        event_id = make_event()
        renderer = EventMessageRenderer(db_engine, gateway)

        assert run_async(renderer.publish(event_id)) == 9000
        assert gateway.send_message.await_args.args == (CHANNEL_ID,)
        with Session(db_engine) as session:
            assert session.get(Event, event_id).message_id == 9000

    def test_refresh_edits_existing_message(self, db_engine, make_event, gateway):
        event_id = make_event(message_id=42)
        renderer = EventMessageRenderer(db_engine, gateway)

        assert run_async(renderer.refresh(event_id)) is True
        assert gateway.edit_message.await_args.args == (CHANNEL_ID, 42)

    def test_refresh_without_message(self, db_engine, make_event, gateway):
        event_id = make_event()
        assert run_async(EventMessageRenderer(db_engine, gateway).refresh(event_id)) is False
        gateway.edit_message.assert_not_awaited()

    def test_refresh_skips_deleted_event(self, db_engine, make_event, gateway):
        event_id = make_event(message_id=42, deleted_at=NOW)
        assert run_async(EventMessageRenderer(db_engine, gateway).refresh(event_id)) is False
