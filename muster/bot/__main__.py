"""
muster.bot.__main__ — Entry point for ``python -m muster.bot``
==============================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (infrastructure settings).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Seed default guild settings for the primary guild (idempotent).
5. Create the MusterBot and hand it config + engine.
6. Start the bot (blocking — runs the asyncio event loop).
"""

from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv

from muster.bot.core import MusterBot
from muster.config import load_config
from muster.database.engine import create_db_engine, init_db
from muster.database.seed import seed_guild_settings

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("muster")


def main() -> None:
    """Bootstrap and run the Muster bot."""

    # 1. Environment variables (secrets).
    load_dotenv()

    token = os.getenv("DISCORD_TOKEN")
    if not token or token == "your-discord-bot-token-here":
        logger.critical(
            "DISCORD_TOKEN is not set.  "
            "Copy .env.example → .env and paste your bot token."
        )
        sys.exit(1)

    # 2. Infrastructure configuration.
    cfg = load_config()
    logger.info("Config loaded — Community: %s", cfg.community_name)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. Default guild settings.
    if cfg.guild_id:
        seed_guild_settings(engine, cfg.guild_id)

    # 5. Bot.
    bot = MusterBot(cfg=cfg, engine=engine)

    # 6. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting Muster bot…")
    try:
        bot.run(token, log_handler=None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
