# src/discordbridge/discord_util.py
import asyncio
import inspect
import logging
import re
from typing import Awaitable, Callable, Optional, Union

import discord

log = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000

# Relayed game chat may ping users, never @everyone or roles
SAFE_ALLOWED_MENTIONS = discord.AllowedMentions(everyone=False, roles=False, users=True)

MC_COLOR_RE = re.compile(r"§[0-9A-FK-ORX]", re.IGNORECASE)
MC_AMP_COLOR_RE = re.compile(r"[&§][0-9a-fklmnor]")
ANSI_TRIPLE_RE = re.compile(r"\x1b?\[[0-9]{1,2};[0-9]{1,2};[0-9]{1,2}m")
ANSI_SINGLE_RE = re.compile(r"\x1b?\[[0-9]{1,3}m")
ANSI_RESET_RE = re.compile(r"\x1b?\[m")

# only escape after an even run of backslashes; `\\*` is a literal backslash and a live star
MARKDOWN_RE = re.compile(r"(?<!\\)((?:\\\\)*)([_*~])")

MessageCallback = Callable[[discord.Message], Union[None, Awaitable[None]]]

_bot: discord.Client | None = None

# strong refs for fire-and-forget work; the loop only keeps weak ones
_pending: set[asyncio.Task] = set()


def set_bot(bot: discord.Client | None) -> None:
    global _bot
    _bot = bot


def get_client() -> discord.Client | None:
    return _bot


def _spawn(coro: Awaitable, what: str) -> asyncio.Task:
    task = asyncio.get_running_loop().create_task(coro)
    _pending.add(task)

    def _done(t: asyncio.Task) -> None:
        _pending.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            log.warning("%s failed: %s", what, exc, exc_info=exc)

    task.add_done_callback(_done)
    return task


async def flush() -> None:
    """Wait for every queued send/delete/edit, including ones queued meanwhile."""
    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)


# ---------- Roles ----------

def get_role_name(role: discord.Role | None) -> str:
    return "" if role is None else role.name


def get_top_role(member: discord.Member) -> discord.Role | None:
    roles = [r for r in member.roles if not r.is_default()]
    if not roles:
        return None
    return max(roles, key=lambda r: r.position)


def get_top_role_for_user(user: discord.abc.User, guild: discord.Guild) -> discord.Role | None:
    member = guild.get_member(user.id)
    if member is None:
        return None
    return get_top_role(member)


# ---------- Text ----------

def convert_mentions_from_names(message: str, guild: discord.Guild) -> str:
    """
    Turn `@Name` into `<@id>` for every guild member whose display name or
    user name equals Name (case-insensitive). Unknown names are left as typed.
    """
    if "@" not in message:
        return message

    name_to_member: dict[str, discord.Member] = {}
    for m in guild.members:
        for n in (m.display_name, m.name):
            if n:
                # first seen wins
                name_to_member.setdefault(n.casefold(), m)
    if not name_to_member:
        return message

    # longest first so "@Steve2" is not eaten by "@Steve"
    names = sorted(name_to_member, key=len, reverse=True)
    pattern = re.compile(
        r"@(" + "|".join(re.escape(n) for n in names) + r")(?!\w)",
        re.IGNORECASE,
    )

    def repl(m: re.Match) -> str:
        # IGNORECASE folds wider than lower(), so look up the casefolded form
        member = name_to_member.get(m.group(1).casefold())
        return member.mention if member is not None else m.group(0)

    return pattern.sub(repl, message)


def escape_markdown(text: str) -> str:
    return MARKDOWN_RE.sub(r"\1\\\2", text)


def strip_color(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    out = MC_COLOR_RE.sub("", text)
    out = MC_AMP_COLOR_RE.sub("", out)
    out = ANSI_TRIPLE_RE.sub("", out)
    out = ANSI_SINGLE_RE.sub("", out)
    out = ANSI_RESET_RE.sub("", out)
    return out


# ---------- Permissions ----------

def check_permission(
    channel: discord.abc.GuildChannel | None,
    permission: str,
    user: discord.abc.User | None = None,
) -> bool:
    """
    True if `user` (the bot itself when omitted) holds the discord.Permissions
    flag named `permission` (e.g. "send_messages") in `channel`.
    """
    if channel is None:
        return False
    if user is None:
        if _bot is None or _bot.user is None:
            return False
        user = _bot.user
    member = channel.guild.get_member(user.id)
    if member is None:
        return False
    return bool(getattr(channel.permissions_for(member), permission, False))


def _can_post(channel, action: str) -> bool:
    if channel is None:
        log.debug("Tried %s to a null channel", action)
        return False
    if not check_permission(channel, "read_messages"):
        log.debug("Tried %s to channel %s but the bot doesn't have read permissions for that channel", action, channel)
        return False
    if not check_permission(channel, "send_messages"):
        log.debug("Tried %s to channel %s but the bot doesn't have write permissions for that channel", action, channel)
        return False
    return True


# ---------- Sending ----------

async def _deliver(
    channel: discord.abc.Messageable,
    content: str,
    callback: MessageCallback | None = None,
) -> discord.Message:
    sent = await channel.send(content, allowed_mentions=SAFE_ALLOWED_MENTIONS)
    if callback is not None:
        result = callback(sent)
        if inspect.isawaitable(result):
            await result
    return sent


def send_message(channel: discord.TextChannel | None, message: Optional[str], expiration: float = 0) -> None:
    """
    Send `message` to `channel` in the background.

    Color codes are stripped and anything past 2000 characters goes out as
    follow-up messages. With `expiration` > 0 every part is deleted again
    after that many seconds.
    """
    if channel is None:
        log.debug("Tried sending a message to a null channel")
        return

    if _bot is None:
        log.debug("Tried sending a message using a null client")
        return

    if not _can_post(channel, "sending a message"):
        return

    if message is None:
        log.debug("Tried sending a null message to %s", channel)
        return

    if not message.strip():
        log.debug("Tried sending a blank message to %s", channel)
        return

    message = strip_color(message)

    if len(message) > MAX_MESSAGE_LENGTH:
        log.warning(
            "Tried sending message with length of %d (%d over limit)",
            len(message),
            len(message) - MAX_MESSAGE_LENGTH,
        )
    chunks = [message[i:i + MAX_MESSAGE_LENGTH] for i in range(0, len(message), MAX_MESSAGE_LENGTH)]

    async def _expire(m: discord.Message) -> None:
        await asyncio.sleep(expiration)
        delete_message(m)

    def _schedule_expiry(m: discord.Message) -> None:
        _spawn(_expire(m), f"expiry of message in {channel}")

    callback = _schedule_expiry if expiration > 0 else None

    async def _send_all() -> None:
        for chunk in chunks:
            await _deliver(channel, chunk, callback)

    _spawn(_send_all(), f"send to {channel}")


async def send_message_blocking(channel: discord.TextChannel | None, message: str) -> discord.Message | None:
    """Send and wait for the result. Returns None when the message could not be sent."""
    if not _can_post(channel, "sending a message"):
        return None

    try:
        return await channel.send(message, allowed_mentions=SAFE_ALLOWED_MENTIONS)
    except discord.HTTPException as e:
        log.warning("Sending a message to %s failed: %s", channel, e)
        return None


def queue_message(
    channel: discord.TextChannel | None,
    message: str,
    callback: MessageCallback | None = None,
) -> asyncio.Task | None:
    if not _can_post(channel, "sending a message"):
        return None
    return _spawn(_deliver(channel, message, callback), f"send to {channel}")


# ---------- Channel / presence / message management ----------

def set_text_channel_topic(channel: discord.TextChannel | None, topic: str) -> None:
    if channel is None:
        log.debug("Attempted to set topic of null channel")
        return

    if _bot is None:
        log.debug("Attempted to set topic using null client")
        return

    if not check_permission(channel, "manage_channels"):
        log.warning(
            'Unable to update topic of %s because the bot is missing the "Manage Channels" permission',
            channel,
        )
        return

    _spawn(channel.edit(topic=topic), f"topic update of {channel}")


def set_game_status(game_status: Optional[str]) -> None:
    if _bot is None:
        log.debug("Attempted to set game status using null client")
        return
    if not game_status:
        log.debug("Attempted setting game status to a null or empty string")
        return

    _spawn(_bot.change_presence(activity=discord.Game(name=game_status)), "presence update")


def delete_message(message: discord.Message) -> None:
    if isinstance(message.channel, discord.abc.PrivateChannel):
        return

    if not check_permission(message.channel, "manage_messages"):
        log.warning("Could not delete message in channel %s, no permission to manage messages", message.channel)
        return

    _spawn(message.delete(), f"delete in {message.channel}")


def private_message(user: discord.abc.User, message: str) -> None:
    _spawn(user.send(message), f"DM to {user}")
