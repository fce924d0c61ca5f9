from __future__ import annotations

import asyncio
import logging
import os
import sys
import traceback
from logging.handlers import RotatingFileHandler

import discord
from discord import app_commands
from discord.ext import commands

from presencebot.core import (
    DEFAULT_CONFIG_TEMPLATE, AttendanceSettings, Config, Database, PresenceEngine, StoreError,
)
from presencebot.utils.tz_time import DEFAULT_TZ_NAME, Clock

BOT_DIR = os.path.dirname(os.path.abspath(__file__))

COGS = [
    "presencebot.cogs.attendance",   # Attendance: voice tracking, events, reports
]

# Constants
SEPARATOR = "=" * 60

logger = logging.getLogger("presencebot")


# Helper functions for consistent output formatting
def _print_section(title: str = ""):
    """Print a section separator with optional title."""
    print(f"\n{SEPARATOR}")
    if title:
        print(title)
        print(SEPARATOR)


def setup_logging(cfg: Config):
    """Console + rotating file logging for the whole presencebot package."""
    level_name = str(cfg.get("logging", "level", default="INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    root = logging.getLogger("presencebot")
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    log_file = cfg.get("logging", "file", default="presencebot.log")
    if log_file:
        path = log_file if os.path.isabs(log_file) else os.path.join(BOT_DIR, log_file)
        fh = RotatingFileHandler(path, maxBytes=2_000_000, backupCount=2, encoding="utf-8")
        fh.setFormatter(fmt)
        root.addHandler(fh)


class PresenceBot(commands.Bot):
    def __init__(self, cfg: Config, db: Database):
        intents = discord.Intents.default()
        intents.members = True
        intents.voice_states = True

        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
        )
        self.cfg = cfg
        self.db = db
        self.settings = AttendanceSettings.from_config(cfg)
        self.engine = PresenceEngine(
            db,
            clock=Clock(self.settings.timezone),
            notify_cooldown_minutes=self.settings.notify_cooldown_minutes,
        )
        self._commands_synced = False

    async def setup_hook(self):
        """Called when the bot is setting up. Initialize database and load cogs."""
        _print_section("Initializing PresenceBot...")

        try:
            await self.db.connect()
            print("✓ Database connected")
            await self.db.migrate()
            print("✓ Database migrations completed")
        except StoreError as e:
            print(f"✗ Database error during setup: {e}")
            traceback.print_exc()
            raise

        self.tree.on_error = self.on_app_command_error

        loaded_count = 0
        failed_count = 0
        for ext in COGS:
            try:
                await self.load_extension(ext)
                loaded_count += 1
                print(f"✓ Loaded: {ext}")
            except commands.ExtensionError as e:
                failed_count += 1
                print(f"✗ Failed to load {ext}: {e}")
                traceback.print_exc()

        _print_section(f"Extensions: {loaded_count} loaded, {failed_count} failed")
        print("Waiting for bot to be ready...")
        print()

    async def on_ready(self):
        """Called when the bot is ready. Sync commands once."""
        _print_section()
        print(f"Bot is ready! Logged in as {self.user} (ID: {self.user.id})")
        print(f"Connected to {len(self.guilds)} guild(s)")
        print()

        if not self._commands_synced:
            try:
                synced = await self.tree.sync()
                print(f"✓ Synced {len(synced)} command(s)")
                self._commands_synced = True
            except discord.HTTPException as e:
                print(f"✗ Command sync failed: {e}")

    async def on_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        """Global error handler for app commands."""
        original = getattr(error, "original", error)
        error_messages = {
            app_commands.CommandOnCooldown: lambda e: f"This command is on cooldown. Try again in {e.retry_after:.1f} seconds.",
            app_commands.MissingPermissions: "You don't have permission to use this command.",
            app_commands.BotMissingPermissions: "I don't have the required permissions to execute this command.",
            app_commands.NoPrivateMessage: "This command only works inside a server.",
        }

        message = None
        for error_type, msg in error_messages.items():
            if isinstance(error, error_type):
                message = msg(error) if callable(msg) else msg
                break

        if message is None and isinstance(original, StoreError):
            logger.error("Store error in command %s: %s",
                         interaction.command.qualified_name if interaction.command else "?", original)
            message = "⚠️ Database error, nothing was changed. Please tell an admin."
        elif message is None:
            logger.error("Unhandled command error", exc_info=original)
            message = "An error occurred while executing this command."

        try:
            if interaction.response.is_done():
                await interaction.followup.send(message, ephemeral=True)
            else:
                await interaction.response.send_message(message, ephemeral=True)
        except discord.HTTPException:
            pass

    async def on_error(self, event_method: str, *args, **kwargs):
        """Global error handler for events."""
        logger.exception("Error in event %s", event_method)

    async def close(self):
        self.engine.close()
        await super().close()
        await self.db.close()


def load_config(config_path: str) -> Config:
    # Create config from environment variables if it doesn't exist
    if not os.path.exists(config_path):
        _print_section("config.yml not found. Attempting to create from environment variables...")

        token = os.getenv("DISCORD_BOT_TOKEN")
        if not token:
            print("ERROR: config.yml file not found and DISCORD_BOT_TOKEN not set!")
            print(SEPARATOR)
            print(f"Expected location: {config_path}")
            print("\nTo fix this:")
            print("1. Create config.yml next to bot.py, OR")
            print("2. Set the DISCORD_BOT_TOKEN environment variable")
            print(SEPARATOR)
            sys.exit(1)

        tz_name = os.getenv("TIMEZONE", DEFAULT_TZ_NAME)
        try:
            with open(config_path, "w", encoding="utf-8") as f:
                f.write(DEFAULT_CONFIG_TEMPLATE.format(token=token, timezone=tz_name))
            print(f"✓ Created config.yml from environment variables at {config_path}")
        except OSError as e:
            print(f"✗ Failed to create config.yml: {e}")
            sys.exit(1)

    return Config.load(config_path)


async def main():
    config_path = os.getenv("PRESENCEBOT_CONFIG", os.path.join(BOT_DIR, "config.yml"))
    cfg = load_config(config_path)
    setup_logging(cfg)

    token = cfg.get("token")
    if not token or token == "PUT_YOUR_BOT_TOKEN_HERE":
        _print_section("ERROR: Bot token not configured!")
        print("Please set your bot token in config.yml")
        sys.exit(1)

    db_path = cfg.get("database", "path", default="presencebot.sqlite3")
    if not os.path.isabs(db_path):
        db_path = os.path.join(BOT_DIR, db_path)

    db = Database(db_path)
    bot = PresenceBot(cfg, db)

    # Retry logic for rate limiting
    max_retries = 5
    async with bot:
        for attempt in range(max_retries):
            try:
                await bot.start(token)
                break
            except discord.HTTPException as e:
                if e.status == 429 and attempt < max_retries - 1:
                    wait_time = 5 * (2 ** attempt)  # 5, 10, 20, 40 seconds
                    print(f"Rate limited (429). Waiting {wait_time} seconds before retry ({attempt + 1}/{max_retries})...")
                    await asyncio.sleep(wait_time)
                    continue
                raise
            except discord.LoginFailure as e:
                print(f"ERROR: Discord Login Failure: {e}")
                print("Please check the token in config.yml or DISCORD_BOT_TOKEN.")
                sys.exit(1)


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nBot shutdown requested by user")


if __name__ == "__main__":
    run()
