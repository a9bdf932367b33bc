from __future__ import annotations

import asyncio
import importlib
import tempfile
from datetime import datetime, timedelta, timezone


class _RecordingGateway:
    def __init__(self):
        self.calls: list[str] = []

    async def revoke_role(self, guild_id, user_id, role_id, reason):
        self.calls.append(f"revoke {guild_id}:{user_id}:{role_id}")
        return "ok"

    async def notify_user(self, user_id, payload):
        self.calls.append(f"notify {user_id}")
        return True

    async def publish_poll_result(self, channel_id, poll):
        self.calls.append(f"publish {poll.get('id')}")
        return True


async def _send_chunked(channel, text):
    print(text)


def _try_import_or_skip(module_name: str, pip_name: str | None = None) -> bool:
    try:
        importlib.import_module(module_name)
        return True
    except ModuleNotFoundError:
        install_name = pip_name or module_name
        print(
            f"Smoke wiring check skipped: missing dependency '{module_name}'. "
            f"Install requirements and retry (e.g. `pip install {install_name}` "
            f"or `pip install -e .`)."
        )
        return False


async def _exercise(deps, gateway) -> None:
    from misc.events_runtime import shutdown_runtime
    from misc.events_runtime import start_runtime

    overdue = datetime.now(timezone.utc) - timedelta(seconds=5)
    await deps.storage.add_temporary_role("1", "2", "3", overdue, notify_on_expiry=True)

    await start_runtime(deps)
    try:
        poll = await deps.polls.create_poll(
            guild_id=1,
            channel_id=4,
            creator_id=2,
            question="Smoke?",
            options=["yes", "no"],
            duration_hours=1,
        )
        await deps.polls.cast_vote(poll["id"], 2, 0)
        print(deps.storage.status())
        print(deps.scheduler.status())
    finally:
        await shutdown_runtime(deps)

    if "revoke 1:2:3" not in gateway.calls:
        raise RuntimeError(f"catch-up pass did not revoke the overdue grant: {gateway.calls}")


def _main() -> int:
    if not _try_import_or_skip("discord", "discord.py"):
        return 0
    if not _try_import_or_skip("yaml", "PyYAML"):
        return 0

    import discord
    from discord.ext import commands
    from config.runtime import load_runtime_config
    from misc.runtime_wiring import build_runtime_deps
    from misc.runtime_wiring import wire_bot_runtime

    with tempfile.TemporaryDirectory() as tmp:
        cfg = load_runtime_config({"ROLE_REACTOR_STORAGE_MODE": "file", "ROLE_REACTOR_DATA_DIR": tmp})
        bot = commands.Bot(command_prefix="!", intents=discord.Intents.none())
        gateway = _RecordingGateway()
        deps = build_runtime_deps(
            bot,
            cfg,
            send_chunked=_send_chunked,
            user_is_owner=lambda user: False,
            gateway=gateway,
        )
        wire_bot_runtime(bot, cfg=cfg, deps=deps)

        expected_commands = {"storagestatus", "dbmigrations", "storagesync"}
        missing = sorted(expected_commands - set(bot.all_commands.keys()))
        if missing:
            raise RuntimeError(f"Missing expected commands: {missing}")

        if getattr(bot, "on_ready", None) is None or getattr(bot, "on_message", None) is None:
            raise RuntimeError("Runtime events were not registered")

        asyncio.run(_exercise(deps, gateway))

    print("Smoke wiring check passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
