"""
tests/test_config.py — Configuration, Seeding & Guild Settings
===============================================================
"""

from __future__ import annotations

import pytest

from muster.config import load_config
from muster.constants import DEFAULT_REMINDER_INTERVALS
from muster.database.seed import seed_guild_settings
from muster.services.guild_config_service import get_guild_config
from conftest import CHANNEL_ID, GUILD_ID


class TestLoadConfig:

    def test_full_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            'community_name: "Night Owls"\n'
            'bot_prefix: "?"\n'
            "guild_id: 123456789012345678\n"
            "tick_seconds: 30\n",
            encoding="utf-8",
        )
        cfg = load_config(path)
        assert cfg.community_name == "Night Owls"
        assert cfg.bot_prefix == "?"
        assert cfg.guild_id == 123456789012345678
        assert cfg.tick_seconds == 30

    def test_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("community_name: Owls\n", encoding="utf-8")
        cfg = load_config(path)
        assert cfg.bot_prefix == "!"
        assert cfg.guild_id is None
        assert cfg.tick_seconds == 60

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_missing_required_key(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("bot_prefix: '!'\n", encoding="utf-8")
        with pytest.raises(KeyError):
            load_config(path)


class TestGuildSettings:

    def test_defaults_without_row(self, db_engine):
        cfg = get_guild_config(db_engine, GUILD_ID)
        assert cfg.reminder_intervals == DEFAULT_REMINDER_INTERVALS
        assert cfg.auto_delete_hours is None
        assert cfg.voice_create_before_minutes == 30
        assert cfg.stats_min_events == 3
        assert cfg.stats_channel_id is None
        assert cfg.stats_interval_hours == 24
        assert cfg.stats_top_count == 10

    def test_row_values(self, db_engine, guild_settings):
        guild_settings(
            reminder_intervals=["2h"], approval_channel_ids=[str(CHANNEL_ID)],
            auto_delete_hours=48,
        )
        cfg = get_guild_config(db_engine, GUILD_ID)
        assert cfg.reminder_intervals == ("2h",)
        assert CHANNEL_ID in cfg.approval_channel_ids
        assert cfg.auto_delete_hours == 48

    def test_seed_is_idempotent(self, db_engine):
        assert seed_guild_settings(db_engine, GUILD_ID) is True
        assert seed_guild_settings(db_engine, GUILD_ID) is False
        assert get_guild_config(db_engine, GUILD_ID).reminder_intervals == DEFAULT_REMINDER_INTERVALS
