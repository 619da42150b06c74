import os
import asyncio
import logging
from dotenv import load_dotenv
import discord
from discord.ext import commands
from . import discord_util

load_dotenv()
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logging.info("[BOOT] main module imported")

TOKEN = os.getenv("DISCORD_TOKEN")

intents = discord.Intents.default()
intents.guilds = True
intents.members = True

class BridgeBot(commands.Bot):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._ws_task = None

    async def setup_hook(self):
        discord_util.set_bot(self)
        logging.info("[BOOT] client registered with discord_util")

    async def close(self):
        # let queued sends/deletes land before the gateway goes away
        await discord_util.flush()
        if self._ws_task is not None and not self._ws_task.done():
            self._ws_task.cancel()
        await super().close()
        discord_util.set_bot(None)

bot = BridgeBot(command_prefix="!", intents=intents)

@bot.event
async def on_ready():
    logging.info("[BOOT] on_ready() entered")
    logging.info("Logged in as %s (%s)", bot.user, bot.user.id)

    # Import mc_ws ONLY now to avoid early side-effects
    logging.info("[BOOT] importing mc_ws inside on_ready()")
    from . import mc_ws

    mc_ws.mark_discord_ready()

    # Start WS once
    if bot._ws_task is None or bot._ws_task.done():
        async def _runner():
            try:
                await mc_ws.run_ws_app()
            except asyncio.CancelledError:
                raise
            except Exception:
                logging.exception("WebSocket server task exited with an error")
        bot._ws_task = asyncio.create_task(_runner())
        logging.info("Scheduled MC WebSocket server task")

async def main():
    if not TOKEN:
        logging.error("DISCORD_TOKEN is not set; refusing to start")
        return
    async with bot:
        await bot.start(TOKEN)

if __name__ == "__main__":
    asyncio.run(main())
