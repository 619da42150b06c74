"""Minecraft websocket bridge: formatting and op dispatch."""

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from conftest import FakeChannel, FakeGuild, make_member
from src.discordbridge import discord_util, mc_ws


@pytest.fixture
def bridge(fake_bot, monkeypatch):
    channel = FakeChannel(
        guild=FakeGuild([make_member(7, "Alex")]),
        channel_id=42,
        manage_channels=True,
    )
    fake_bot.channels[42] = channel
    monkeypatch.setattr(mc_ws, "DISCORD_CHANNEL_ID", 42)
    monkeypatch.setattr(mc_ws, "MC_LINK_TOKEN", "s3cret")
    monkeypatch.setattr(mc_ws, "MC_TOKEN_PEPPER", "pepper")
    mc_ws.mark_discord_ready()
    return channel


def _dispatch(frames, state=None):
    state = state if state is not None else {"authed": False, "server": "Minecraft"}

    async def scenario():
        replies = [await mc_ws.handle_op(f, state) for f in frames]
        await discord_util.flush()
        return replies

    return asyncio.run(scenario()), state


def test_format_mc_chat_sanitizes_and_mentions():
    guild = FakeGuild([make_member(7, "Alex")])
    out = mc_ws.format_mc_chat("§6Mr_Ed", "§ahey @alex, *look*", guild)
    assert out == "**Mr\\_Ed** » hey <@7>, \\*look\\*"


def test_format_mc_chat_without_guild_keeps_names():
    assert mc_ws.format_mc_chat("Steve", "hi @alex", None) == "**Steve** » hi @alex"


def test_format_mc_event_italic():
    assert mc_ws.format_mc_event("Steve", "§cdrowned") == "*Steve drowned*"


def test_token_hash_uses_pepper(monkeypatch):
    monkeypatch.setattr(mc_ws, "MC_TOKEN_PEPPER", "")
    plain = mc_ws._token_hash("abc")
    monkeypatch.setattr(mc_ws, "MC_TOKEN_PEPPER", "pepper")
    assert mc_ws._token_hash(" abc ") != plain
    assert len(plain) == 64


def test_chat_before_auth_is_rejected(bridge):
    replies, _ = _dispatch([{"op": "mc_chat", "player": "Steve", "text": "hi"}])
    assert replies == [{"op": "error", "err": "unauthorized"}]
    assert bridge.sent == []


def test_bad_token_is_rejected(bridge):
    replies, state = _dispatch([{"op": "auth", "token": "wrong", "server": "SMP"}])
    assert replies[0]["ok"] is False
    assert not state["authed"]
    assert bridge.sent == []


def test_auth_announces_and_relays_chat(bridge, fake_bot):
    replies, state = _dispatch([
        {"op": "auth", "token": "s3cret", "server": "SMP"},
        {"op": "mc_chat", "player": "Steve", "text": "§ahello @ALEX"},
        {"op": "mc_event", "etype": "join", "player": "Steve", "text": "joined the game"},
    ])
    assert replies == [{"op": "auth", "ok": True}, None, None]
    assert state["authed"]
    assert [m.content for m in bridge.sent] == [
        "🟢 **SMP** connected.",
        "**Steve** » hello <@7>",
        "*Steve joined the game*",
    ]
    bridge.edit.assert_awaited_once_with(topic="Bridged with SMP (online)")
    fake_bot.change_presence.assert_awaited_once()


def test_unknown_op_is_ignored(bridge):
    replies, _ = _dispatch(
        [{"op": "mc_something"}],
        state={"authed": True, "server": "SMP"},
    )
    assert replies == [None]
    assert bridge.sent == []


async def _until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate() and loop.time() < deadline:
        await asyncio.sleep(0.01)


def test_ws_route_rejects_malformed_frames_and_announces_close(bridge):
    async def scenario():
        app = web.Application()
        app.add_routes([web.get("/mcws", mc_ws.ws_handler)])
        async with TestClient(TestServer(app)) as client:
            ws = await client.ws_connect("/mcws")

            await ws.send_str("{not json")
            assert await ws.receive_json() == {"op": "error", "err": "bad_json"}

            await ws.send_str("[1, 2]")
            assert await ws.receive_json() == {"op": "error", "err": "bad_json"}

            await ws.send_json({"op": "auth", "token": "s3cret", "server": "SMP"})
            assert await ws.receive_json() == {"op": "auth", "ok": True}

            await ws.close()
            await _until(lambda: any("disconnected" in m.content for m in bridge.sent))
        await discord_util.flush()

    asyncio.run(scenario())
    assert [m.content for m in bridge.sent] == [
        "🟢 **SMP** connected.",
        "🔴 **SMP** disconnected. Waiting for reconnect…",
    ]
    bridge.edit.assert_awaited_with(topic="Bridged with SMP (offline)")
