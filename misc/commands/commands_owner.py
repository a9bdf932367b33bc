from __future__ import annotations

from discord.ext import commands
from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates


def format_storage_status(storage_status: dict, scheduler_status: dict | None) -> str:
    lines = [
        "Storage status:",
        f"- backend: {storage_status.get('backend')}",
        f"- data_dir: {storage_status.get('data_dir')}",
        f"- db_path: {storage_status.get('db_path') or '(none)'}",
        f"- cache: {storage_status.get('cache_entries', 0)} entries, ttl={storage_status.get('cache_ttl_seconds')}s",
        f"- sync: {'active' if storage_status.get('sync_active') else 'inactive'}",
    ]
    if scheduler_status:
        lines.extend(
            [
                "Expiration scheduler:",
                f"- state: {scheduler_status.get('state')}",
                f"- handlers: {', '.join(scheduler_status.get('handlers') or []) or '(none)'}",
                f"- last pass: {scheduler_status.get('last_pass_at') or 'never'} "
                f"processed={scheduler_status.get('last_processed', 0)} failed={scheduler_status.get('last_failed', 0)}",
                f"- tracked: {scheduler_status.get('tracked', 0)}",
                f"- next check in: {scheduler_status.get('next_delay_seconds')}s",
            ]
        )
    return "\n".join(lines)


def register(
    bot: commands.Bot,
    *,
    deps: CommandDeps,
    gates: CommandGates,
) -> None:
    @bot.command(name="storagestatus")
    async def cmd_storagestatus(ctx: commands.Context):
        if not gates.user_is_owner(ctx.author):
            await ctx.send("This command is owner-only.")
            return

        scheduler_status = deps.scheduler.status() if deps.scheduler is not None else None
        text = format_storage_status(deps.storage.status(), scheduler_status)
        await deps.send_chunked(ctx.channel, "```\n" + text[:7000] + "\n```")

    @bot.command(name="dbmigrations")
    async def cmd_dbmigrations(ctx: commands.Context, limit: int = 30):
        if not gates.user_is_owner(ctx.author):
            await ctx.send("This command is owner-only.")
            return

        db_store = getattr(deps.storage, "db_store", None)
        if db_store is None:
            await ctx.send("Database storage is not active; running on local files.")
            return

        lim = max(1, min(int(limit or 30), 200))
        rows = await db_store.list_migrations(lim)
        if not rows:
            await ctx.send("No schema migrations found.")
            return

        lines = [f"Applied schema migrations (latest {len(rows)}):"]
        for version, name, applied_at in rows:
            lines.append(f"- {version}_{name} @ {applied_at}")

        await deps.send_chunked(ctx.channel, "```\n" + "\n".join(lines)[:7000] + "\n```")

    @bot.command(name="storagesync")
    async def cmd_storagesync(ctx: commands.Context):
        if not gates.user_is_owner(ctx.author):
            await ctx.send("This command is owner-only.")
            return

        sync = getattr(deps.storage, "sync", None)
        if sync is None:
            await ctx.send("Reconciliation is not running; nothing to sync.")
            return

        results = await sync.run_once()
        changed = [r.collection for r in results if r.file_changed or r.db_changed]
        failed = [r.collection for r in results if not r.ok]
        await ctx.send(
            f"Reconciled {len(results)} collection(s). "
            f"changed={','.join(changed) if changed else '(none)'} "
            f"failed={','.join(failed) if failed else '(none)'}"
        )
