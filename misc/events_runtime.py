from __future__ import annotations

import discord
from discord.ext import commands
from misc.runtime_deps import RuntimeBootDeps
from misc.runtime_deps import RuntimeDeps


async def start_runtime(deps: RuntimeDeps) -> None:
    await deps.storage.initialize()
    await deps.scheduler.start()


async def shutdown_runtime(deps: RuntimeDeps) -> None:
    try:
        await deps.scheduler.stop()
    except Exception as e:
        print(f"[Scheduler] stop failed: {e}")
    try:
        await deps.experience.stop()
    except Exception as e:
        print(f"[XP] final flush failed: {e}")
    await deps.storage.close()


def register_runtime_events(
    bot: commands.Bot,
    *,
    deps: RuntimeDeps,
    boot: RuntimeBootDeps,
) -> None:
    @bot.event
    async def on_ready():
        print(f"Role Reactor is online as {bot.user}")
        if getattr(bot, "_runtime_started", False):
            # reconnects fire on_ready again
            return
        bot._runtime_started = True
        print(boot.config_summary)
        await start_runtime(deps)

    @bot.event
    async def on_message(message: discord.Message):
        if message.author.bot:
            return

        if boot.award_message_xp and message.guild is not None:
            deps.experience.award_message_xp(message.guild.id, message.author.id)

        if (message.content or "").lstrip().startswith("!"):
            await bot.process_commands(message)
