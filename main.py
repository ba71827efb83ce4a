# main.py

import os
import asyncio
import logging
from dotenv import load_dotenv
import discord
from discord.ext import commands
import uvicorn

# --- Configuration ---
# Load environment variables from a .env file before the cogs read their constants.
load_dotenv()
TOKEN = os.getenv("DISCORD_TOKEN")
DASHBOARD_HOST = os.getenv("DASHBOARD_HOST", "0.0.0.0")
DASHBOARD_PORT = int(os.getenv("DASHBOARD_PORT", "8000"))
SYNC_COMMANDS = os.getenv("SYNC_COMMANDS", "").lower() in ("1", "true", "yes")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
log = logging.getLogger("main")

# Imported after load_dotenv so the dashboard sees the same environment.
from dashboard.app import app as dashboard_app  # noqa: E402


# --- Custom Bot Class ---
class CombinedBot(commands.Bot):
    """
    A bot that also serves the FastAPI dashboard from the same event loop.
    """
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.web_server_task = None
        self.uvicorn_server = None

    async def setup_hook(self):
        # --- 1. Load Cogs ---
        print("- - - - - - - - - - - - - - - -")
        print("Loading Cogs...")
        for folder in sorted(os.listdir("./cogs")):
            path = f"./cogs/{folder}"
            if os.path.isdir(path) and os.path.exists(f"{path}/cog.py"):
                cog_path = f"cogs.{folder}.cog"
                try:
                    await self.load_extension(cog_path)
                    print(f"Loaded cog from {cog_path}")
                except Exception:
                    log.exception("Failed to load %s", cog_path)
        print("- - - - - - - - - - - - - - - -")

        if SYNC_COMMANDS:
            synced = await self.tree.sync()
            print(f"Synced {len(synced)} application command(s).")

        # --- 2. Share Bot Instance with FastAPI ---
        # Routes reach the bot as 'request.app.state.bot' and the engines through it.
        dashboard_app.state.bot = self

        # --- 3. Start the Uvicorn Web Server ---
        config = uvicorn.Config(
            dashboard_app,
            host=DASHBOARD_HOST,
            port=DASHBOARD_PORT,
            log_level="info"
        )
        self.uvicorn_server = uvicorn.Server(config)
        self.web_server_task = asyncio.create_task(self.uvicorn_server.serve())
        print(f"Dashboard started on http://{DASHBOARD_HOST}:{DASHBOARD_PORT}")
        print("- - - - - - - - - - - - - - - -")

    async def on_ready(self):
        print(f"\nLogged in as: {self.user.name} (ID: {self.user.id})")
        print(f"Discord.py Version: {discord.__version__}")
        print("Bot is online and ready!")
        print("- - - - - - - - - - - - - - - -")

    async def close(self):
        print("\nClosing down...")

        # Unloading the cogs stops every vote and meeting timer.
        for name in list(self.extensions):
            await self.unload_extension(name)

        if self.uvicorn_server:
            self.uvicorn_server.should_exit = True
            if self.web_server_task:
                await asyncio.wait([self.web_server_task], timeout=5.0)

        await super().close()
        print("Bot and dashboard have been closed.")


# --- Main Execution Block ---
if __name__ == "__main__":
    if not TOKEN:
        raise ValueError("DISCORD_TOKEN is missing from your .env file!")

    intents = discord.Intents.default()
    intents.members = True  # role grants look members up by id

    bot = CombinedBot(command_prefix="!", intents=intents)

    # bot.run() handles KeyboardInterrupt and calls bot.close().
    bot.run(TOKEN, log_handler=None)
