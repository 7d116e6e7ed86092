"""
Muster — Event Sign-ups for Discord Communities
================================================
Users sign up for community events, get admitted or queued, and the event
moves through its time-gated phases while reminders, capacity limits,
temporary voice channels and attendance statistics stay consistent.

Package layout::

    muster/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Timing, scoring and embed constants
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, session helper, run_db bridge
    │   ├── models.py      # ORM models (6 tables)
    │   └── seed.py        # Default guild settings
    ├── engine/            # Pure rules, no I/O
    │   ├── timing.py      # Reminder / activation / archive / voice windows
    │   ├── capacity.py    # Roster capacity checks
    │   ├── scoring.py     # Attendance score + ranks
    │   └── voice_state.py # Voice channel state variant
    ├── services/
    │   ├── participation_service.py  # Join / leave / approve / promote
    │   ├── lifecycle_service.py      # Event state machine
    │   ├── reminder_service.py       # Idempotent reminders
    │   ├── voice_service.py          # Temporary voice channels
    │   ├── statistics_service.py     # Counters, no-shows, leaderboard
    │   ├── stats_service.py          # Leaderboard message, top-member role
    │   ├── scheduler_service.py      # One tick, fixed step order
    │   ├── gateway.py                # Discord side effects
    │   └── …
    └── bot/
        ├── core.py        # Bot subclass, cog loader
        └── cogs/
            └── scheduler.py  # tasks.loop driving the scheduler
"""

__version__ = "0.1.0"
