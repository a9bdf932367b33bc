import os

import discord
from discord.ext import commands
from config.runtime import load_runtime_config
from misc.events_runtime import shutdown_runtime
from misc.runtime_wiring import build_runtime_deps
from misc.runtime_wiring import wire_bot_runtime

# =========================
# CONFIG
# =========================
CFG = load_runtime_config()
if not CFG.discord_token:
    raise RuntimeError("Missing DISCORD_TOKEN env var.")

AWARD_MESSAGE_XP = os.getenv("ROLE_REACTOR_MESSAGE_XP", "1").strip() not in {"0", "false", "no", "off"}

DISCORD_MAX_MESSAGE_LEN = 1900  # keep under 2000 hard limit


def chunk_text(text: str, limit: int = DISCORD_MAX_MESSAGE_LEN) -> list[str]:
    text = text or ""
    if len(text) <= limit:
        return [text]

    chunks = []
    remaining = text

    while len(remaining) > limit:
        # Prefer splitting on newline, then space
        split_at = remaining.rfind("\n", 0, limit)
        if split_at == -1:
            split_at = remaining.rfind(" ", 0, limit)
        if split_at == -1:
            split_at = limit

        chunk = remaining[:split_at].strip()
        if chunk:
            chunks.append(chunk)

        remaining = remaining[split_at:].strip()

    if remaining:
        chunks.append(remaining)

    return chunks


async def send_chunked(channel: discord.abc.Messageable, text: str) -> None:
    for part in chunk_text(text, DISCORD_MAX_MESSAGE_LEN):
        await channel.send(part)


def user_is_owner(user: discord.abc.User) -> bool:
    uid = int(getattr(user, "id", 0) or 0)
    return bool(uid and uid in CFG.owner_user_ids)


# =========================
# DISCORD BOT
# =========================
intents = discord.Intents.default()
intents.message_content = True
intents.members = True


class RoleReactorBot(commands.Bot):
    runtime_deps = None

    async def close(self) -> None:
        if self.runtime_deps is not None and getattr(self, "_runtime_started", False):
            await shutdown_runtime(self.runtime_deps)
        await super().close()


bot = RoleReactorBot(command_prefix="!", intents=intents)

runtime_deps = build_runtime_deps(
    bot,
    CFG,
    send_chunked=send_chunked,
    user_is_owner=user_is_owner,
)
bot.runtime_deps = runtime_deps

wire_bot_runtime(
    bot,
    cfg=CFG,
    deps=runtime_deps,
    award_message_xp=AWARD_MESSAGE_XP,
)


if __name__ == "__main__":
    bot.run(CFG.discord_token)
