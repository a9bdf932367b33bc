from __future__ import annotations

from typing import Any, Literal

import discord

from polls.service import tally_votes


RevokeOutcome = Literal["ok", "not_found", "forbidden", "error"]

EMBED_COLOR = 0x5865F2


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def build_poll_result_embed(poll: dict[str, Any]) -> discord.Embed:
    tally = tally_votes(poll)
    embed = discord.Embed(
        title=f"Poll ended: {poll.get('question') or 'Untitled poll'}",
        color=EMBED_COLOR,
    )
    lines = []
    for row in tally["options"]:
        bar = "#" * int(round(row["percent"] / 10))
        lines.append(f"**{row['option']}** - {row['votes']} vote(s) ({row['percent']}%) {bar}")
    embed.description = "\n".join(lines) or "No options."
    embed.set_footer(text=f"{tally['total_votes']} vote(s) from {tally['voters']} voter(s)")
    return embed


def build_notice_embed(payload: dict[str, Any]) -> discord.Embed:
    embed = discord.Embed(
        title=str(payload.get("title") or "Notice"),
        description=str(payload.get("description") or ""),
        color=EMBED_COLOR,
    )
    if payload.get("guild_name"):
        embed.set_footer(text=str(payload["guild_name"]))
    return embed


class DiscordGateway:
    """Side effects the expiration handlers need from Discord."""

    def __init__(self, bot) -> None:
        self.bot = bot

    async def _resolve_guild(self, guild_id: int):
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            guild = await self.bot.fetch_guild(guild_id)
        return guild

    async def revoke_role(self, guild_id: Any, user_id: Any, role_id: Any, reason: str) -> RevokeOutcome:
        gid, uid, rid = _as_int(guild_id), _as_int(user_id), _as_int(role_id)
        if gid is None or uid is None or rid is None:
            print(f"[TempRoles] bad ids guild={guild_id} user={user_id} role={role_id}")
            return "not_found"

        try:
            guild = await self._resolve_guild(gid)
            member = guild.get_member(uid) or await guild.fetch_member(uid)
            role = guild.get_role(rid)
            if role is None:
                return "not_found"
            if role not in getattr(member, "roles", []):
                # already gone; nothing to revoke
                return "ok"
            await member.remove_roles(role, reason=reason)
            return "ok"
        except discord.NotFound:
            return "not_found"
        except discord.Forbidden:
            print(f"[TempRoles] missing permission to remove role={role_id} guild={guild_id}")
            return "forbidden"
        except discord.HTTPException as e:
            print(f"[TempRoles] discord error removing role={role_id} user={user_id}: {e}")
            return "error"

    async def notify_user(self, user_id: Any, payload: dict[str, Any]) -> bool:
        uid = _as_int(user_id)
        if uid is None:
            return False
        try:
            user = self.bot.get_user(uid) or await self.bot.fetch_user(uid)
            if payload.get("guild_id") and not payload.get("guild_name"):
                guild = self.bot.get_guild(_as_int(payload["guild_id"]) or 0)
                if guild is not None:
                    payload = {**payload, "guild_name": guild.name}
            await user.send(embed=build_notice_embed(payload))
            return True
        except (discord.Forbidden, discord.NotFound):
            # DMs closed or user gone
            return False
        except discord.HTTPException as e:
            print(f"[TempRoles] failed to DM user={user_id}: {e}")
            return False

    async def publish_poll_result(self, channel_id: Any, poll: dict[str, Any]) -> bool:
        cid = _as_int(channel_id)
        if cid is None:
            return False
        try:
            channel = self.bot.get_channel(cid) or await self.bot.fetch_channel(cid)
            await channel.send(embed=build_poll_result_embed(poll))
            return True
        except discord.HTTPException as e:
            print(f"[Polls] failed to publish result poll={poll.get('id')} channel={channel_id}: {e}")
            return False
