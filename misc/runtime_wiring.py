from __future__ import annotations

from config.runtime import RuntimeConfig
from config.runtime import describe_config
from experience.service import ExperienceService
from jobs.expiration import ExpirationScheduler
from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates
from misc.commands.commands_owner import register as register_owner
from misc.discord_gateway import DiscordGateway
from misc.events_runtime import register_runtime_events
from misc.runtime_deps import RuntimeBootDeps
from misc.runtime_deps import RuntimeDeps
from polls.expiration import PollExpirationHandler
from polls.service import PollService
from storage.manager import StorageManager
from temp_roles.expiration import TemporaryRoleExpirationHandler
from temp_roles.service import TemporaryRoleService


def build_runtime_deps(
    bot,
    cfg: RuntimeConfig,
    *,
    send_chunked,
    user_is_owner,
    gateway=None,
) -> RuntimeDeps:
    storage = StorageManager(
        data_dir=cfg.data_dir,
        db_path=cfg.db_path,
        force_file_mode=cfg.force_file_mode,
        cache_ttl_seconds=cfg.cache_ttl_seconds,
        sync_interval_seconds=cfg.sync_interval_seconds,
        dual_homed_collections=cfg.dual_homed_collections,
    )
    gateway = gateway or DiscordGateway(bot)
    polls = PollService(storage)
    scheduler = ExpirationScheduler(
        [
            TemporaryRoleExpirationHandler(storage, gateway),
            PollExpirationHandler(storage, gateway, polls=polls),
        ],
        concurrency=cfg.scheduler_concurrency,
        batch_delay_seconds=cfg.scheduler_batch_delay_seconds,
        floor=cfg.scheduler_floor_seconds,
        ceiling=cfg.scheduler_ceiling_seconds,
        idle=cfg.scheduler_idle_seconds,
    )
    polls.on_created = scheduler.poke

    return RuntimeDeps(
        storage=storage,
        scheduler=scheduler,
        send_chunked=send_chunked,
        user_is_owner=user_is_owner,
        temp_roles=TemporaryRoleService(storage, on_created=scheduler.poke),
        polls=polls,
        experience=ExperienceService(storage, flush_interval_seconds=cfg.xp_flush_interval_seconds),
    )


def wire_bot_runtime(
    bot,
    *,
    cfg: RuntimeConfig,
    deps: RuntimeDeps,
    award_message_xp: bool = True,
) -> None:
    register_owner(
        bot,
        deps=CommandDeps(
            storage=deps.storage,
            scheduler=deps.scheduler,
            send_chunked=deps.send_chunked,
        ),
        gates=CommandGates(user_is_owner=deps.user_is_owner),
    )

    register_runtime_events(
        bot,
        deps=deps,
        boot=RuntimeBootDeps(
            config_summary=describe_config(cfg),
            award_message_xp=award_message_xp,
        ),
    )
