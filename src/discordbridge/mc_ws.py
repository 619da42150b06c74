import asyncio
import hashlib
import hmac
import json
import logging
import os

import discord
from aiohttp import web

from . import discord_util

logging.info("[BOOT] mc_ws module imported")

MC_WS_PORT = int(os.getenv("MC_WS_PORT", "8765"))
MC_TOKEN_PEPPER = os.getenv("MC_TOKEN_PEPPER", "")
MC_LINK_TOKEN = os.getenv("MC_LINK_TOKEN", "")
DISCORD_CHANNEL_ID = int(os.getenv("DISCORD_CHANNEL_ID", "0") or 0)

log = logging.getLogger(__name__)

# Discord readiness (set by main.on_ready())
_ready_evt = asyncio.Event()


def mark_discord_ready():
    if not _ready_evt.is_set():
        _ready_evt.set()
        log.info("[BOOT] mc_ws received discord-ready signal")


async def _wait_ready():
    await _ready_evt.wait()


def _token_hash(token: str) -> str:
    h = hashlib.sha256()
    h.update((token.strip() + MC_TOKEN_PEPPER).encode("utf-8"))
    return h.hexdigest()


def _token_ok(token: str) -> bool:
    if not token or not MC_LINK_TOKEN:
        return False
    return hmac.compare_digest(_token_hash(token), _token_hash(MC_LINK_TOKEN))


def _bridge_channel() -> discord.TextChannel | None:
    client = discord_util.get_client()
    if client is None or not DISCORD_CHANNEL_ID:
        return None
    return client.get_channel(DISCORD_CHANNEL_ID)


# ---------- Formatting ----------

def format_mc_chat(player: str, text: str, guild: discord.Guild | None) -> str:
    """
    MC chat line -> Discord markdown: `**player** » text`.
    Color codes go, markdown in the player's text is escaped and
    @Name tokens become real mentions when a guild is known.
    """
    player = discord_util.escape_markdown(discord_util.strip_color(player or "Player"))
    text = discord_util.strip_color(text or "")
    if guild is not None:
        text = discord_util.convert_mentions_from_names(text, guild)
    text = discord_util.escape_markdown(text)
    return f"**{player}** » {text}"


def format_mc_event(player: str, text: str) -> str:
    # join/quit/death lines, in italics
    player = discord_util.escape_markdown(discord_util.strip_color(player or "Player"))
    text = discord_util.escape_markdown(discord_util.strip_color(text or ""))
    return f"*{player} {text}*"


# ---------- Relays ----------

async def _relay_mc_to_discord(data: dict):
    await _wait_ready()
    channel = _bridge_channel()
    if channel is None:
        log.info("relay: no bridge channel available (DISCORD_CHANNEL_ID=%s)", DISCORD_CHANNEL_ID)
        return
    content = format_mc_chat(data.get("player", "Player"), data.get("text", ""), channel.guild)
    discord_util.send_message(channel, content)


async def _relay_mc_event_to_discord(data: dict):
    await _wait_ready()
    channel = _bridge_channel()
    if channel is None:
        log.info("event: no bridge channel available (DISCORD_CHANNEL_ID=%s)", DISCORD_CHANNEL_ID)
        return
    etype = (data.get("etype") or "").lower()  # "join" | "quit" | "death"
    player = data.get("player", "Player")
    discord_util.send_message(channel, format_mc_event(player, data.get("text", "")))
    log.info("event: relayed %s for %s to channel %s", etype, player, channel.id)


async def _announce(server_name: str, online: bool):
    await _wait_ready()
    channel = _bridge_channel()
    if channel is None:
        log.warning("notify: no bridge channel available for %s", server_name)
        return
    name = discord_util.escape_markdown(discord_util.strip_color(server_name))
    if online:
        discord_util.send_message(channel, f"🟢 **{name}** connected.")
        discord_util.set_text_channel_topic(channel, f"Bridged with {server_name} (online)")
        discord_util.set_game_status(server_name)
    else:
        discord_util.send_message(channel, f"🔴 **{name}** disconnected. Waiting for reconnect…")
        discord_util.set_text_channel_topic(channel, f"Bridged with {server_name} (offline)")


# ---------- WS Handlers ----------

async def handle_op(data: dict, state: dict) -> dict | None:
    """
    Dispatch a single decoded frame. `state` carries per-connection
    `authed` / `server`. Returns the reply frame, if any.
    """
    op = data.get("op")

    if op == "auth":
        token = (data.get("token") or "").strip()
        state["server"] = data.get("server") or state.get("server") or "Minecraft"
        if not _token_ok(token):
            log.warning("MC auth rejected: server=%s", state["server"])
            return {"op": "auth", "ok": False, "err": "bad token"}
        state["authed"] = True
        log.info("MC auth ok: server=%s short_hash=%s", state["server"], _token_hash(token)[:12])
        await _announce(state["server"], online=True)
        return {"op": "auth", "ok": True}

    if not state.get("authed"):
        return {"op": "error", "err": "unauthorized"}

    if op == "mc_chat":
        await _relay_mc_to_discord(data)
    elif op == "mc_event":
        await _relay_mc_event_to_discord(data)
    else:
        log.debug("mc ws: ignoring unknown op %r", op)
    return None


async def ws_handler(request: web.Request):
    ws = web.WebSocketResponse(heartbeat=20)
    await ws.prepare(request)

    state: dict = {"authed": False, "server": "Minecraft"}

    try:
        async for msg in ws:
            if msg.type == web.WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except ValueError:
                    await ws.send_json({"op": "error", "err": "bad_json"})
                    continue
                if not isinstance(data, dict):
                    await ws.send_json({"op": "error", "err": "bad_json"})
                    continue

                reply = await handle_op(data, state)
                if reply is not None:
                    await ws.send_json(reply)

            elif msg.type == web.WSMsgType.ERROR:
                log.warning("mc ws error: %s", ws.exception())

    finally:
        if state["authed"]:
            await _announce(state["server"], online=False)

    return ws


async def run_ws_app():
    log.info("[BOOT] run_ws_app() starting")
    app = web.Application()
    app.add_routes([web.get("/mcws", ws_handler)])
    runner = web.AppRunner(app)
    try:
        await runner.setup()
        site4 = web.TCPSite(runner, "0.0.0.0", MC_WS_PORT)
        await site4.start()
        log.info("MC WebSocket (IPv4) listening on 0.0.0.0:%s", MC_WS_PORT)
        try:
            site6 = web.TCPSite(runner, "::", MC_WS_PORT)
            await site6.start()
            log.info("MC WebSocket (IPv6) listening on [::]:%s", MC_WS_PORT)
        except OSError as e:
            log.warning("IPv6 WS listener not started: %s", e)
        while True:
            await asyncio.sleep(3600)
    except Exception as e:
        log.exception("MC WS server crashed during startup: %s", e)
        raise
    finally:
        await runner.cleanup()
