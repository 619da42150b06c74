"""Light stand-ins for the discord.py objects the bridge touches."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from src.discordbridge import discord_util

BOT_ID = 1


def make_role(name, position, default=False):
    return SimpleNamespace(name=name, position=position, is_default=lambda: default)


def make_member(member_id, display_name, name=None, roles=()):
    return SimpleNamespace(
        id=member_id,
        display_name=display_name,
        name=name or display_name,
        mention=f"<@{member_id}>",
        roles=list(roles),
    )


class FakeGuild:
    def __init__(self, members=()):
        self.members = list(members)
        self.members.append(make_member(BOT_ID, "BridgeBot"))

    def get_member(self, member_id):
        for m in self.members:
            if m.id == member_id:
                return m
        return None


class FakeMessage:
    def __init__(self, channel, content):
        self.channel = channel
        self.content = content
        self.delete = AsyncMock()


class FakeChannel:
    def __init__(self, guild=None, channel_id=42, **perms):
        self.id = channel_id
        self.guild = guild or FakeGuild()
        self.perms = {"read_messages": True, "send_messages": True, **perms}
        self.sent = []
        self.send_kwargs = []
        self.edit = AsyncMock()

    def permissions_for(self, member):
        return SimpleNamespace(**self.perms)

    async def send(self, content, **kwargs):
        msg = FakeMessage(self, content)
        self.sent.append(msg)
        self.send_kwargs.append(kwargs)
        return msg

    def __str__(self):
        return f"#bridge-{self.id}"


@pytest.fixture
def fake_bot():
    channels = {}
    bot = SimpleNamespace(
        user=SimpleNamespace(id=BOT_ID),
        change_presence=AsyncMock(),
        get_channel=lambda cid: channels.get(cid),
        channels=channels,
    )
    discord_util.set_bot(bot)
    yield bot
    discord_util.set_bot(None)
    discord_util._pending.clear()
