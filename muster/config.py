"""
muster.config — YAML Configuration Loader
==========================================

Reads ``config.yaml`` for **infrastructure-only** settings (bot identity,
primary guild, scheduler period).  Per-guild tuning (reminder intervals,
auto-delete window, voice-channel timing, leaderboard threshold) lives in
the ``guild_settings`` table.

Usage::

    from muster.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.guild_id)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from muster.constants import TICK_SECONDS


@dataclass(frozen=True, slots=True)
class MusterConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    community_name: str
    bot_prefix: str

    # Primary guild snowflake (seeded with default guild settings on start)
    guild_id: int | None = None

    # Scheduler tick period in seconds
    tick_seconds: int = TICK_SECONDS


def load_config(path: str | Path = "config.yaml") -> MusterConfig:
    """Read *path* and return a :class:`MusterConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return MusterConfig(
        community_name=raw["community_name"],
        bot_prefix=raw.get("bot_prefix", "!"),
        guild_id=int(raw["guild_id"]) if raw.get("guild_id") else None,
        tick_seconds=int(raw.get("tick_seconds", TICK_SECONDS)),
    )
