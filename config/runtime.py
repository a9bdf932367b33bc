from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from config.defaults import DEFAULT_CACHE_TTL_SECONDS
from config.defaults import DEFAULT_DATA_DIR
from config.defaults import DEFAULT_DB_PATH
from config.defaults import DEFAULT_SYNC_INTERVAL_SECONDS
from config.defaults import DUAL_HOMED_COLLECTIONS
from config.defaults import SCHEDULER_BATCH_DELAY_SECONDS
from config.defaults import SCHEDULER_CEILING_SECONDS
from config.defaults import SCHEDULER_CONCURRENCY
from config.defaults import SCHEDULER_FLOOR_SECONDS
from config.defaults import SCHEDULER_IDLE_SECONDS
from config.defaults import STORAGE_MODES
from config.defaults import XP_FLUSH_INTERVAL_SECONDS


@dataclass(frozen=True)
class RuntimeConfig:
    discord_token: str | None
    owner_user_ids: set[int]

    storage_mode: str
    data_dir: str
    db_path: str
    cache_ttl_seconds: int
    sync_interval_seconds: int
    dual_homed_collections: tuple[str, ...]

    scheduler_floor_seconds: int
    scheduler_ceiling_seconds: int
    scheduler_idle_seconds: int
    scheduler_concurrency: int
    scheduler_batch_delay_seconds: float

    xp_flush_interval_seconds: float

    @property
    def force_file_mode(self) -> bool:
        return self.storage_mode == "file"


def parse_id_set(raw: str | None) -> set[int]:
    out: set[int] = set()
    for tok in re.split(r"[,\s;]+", raw or ""):
        tok = tok.strip()
        if tok.isdigit():
            out.add(int(tok))
    return out


def _env_int(env: dict[str, str], name: str, default: int, *, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        print(f"[CFG] invalid {name}={raw!r}; falling back to {default}")
        return default
    if value < minimum:
        print(f"[CFG] {name}={value} below minimum {minimum}; falling back to {default}")
        return default
    return value


def _env_float(env: dict[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(0.0, float(raw.strip()))
    except ValueError:
        print(f"[CFG] invalid {name}={raw!r}; falling back to {default}")
        return default


def load_yaml_overrides(path: str | None) -> dict[str, Any]:
    if not path:
        return {}
    p = Path(path)
    if not p.exists():
        print(f"[CFG] config file not found: {path}; using env/defaults")
        return {}
    try:
        payload = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        print(f"[CFG] could not parse {path}: {e}; using env/defaults")
        return {}
    if not isinstance(payload, dict):
        print(f"[CFG] {path} must contain a top-level mapping; ignoring it")
        return {}
    return payload


def _collections_from(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, (list, tuple)):
        return DUAL_HOMED_COLLECTIONS
    names = [str(x).strip() for x in raw if str(x).strip()]
    return tuple(dict.fromkeys(names)) or DUAL_HOMED_COLLECTIONS


def load_runtime_config(env: dict[str, str] | None = None) -> RuntimeConfig:
    env = dict(os.environ if env is None else env)
    overrides = load_yaml_overrides(env.get("ROLE_REACTOR_CONFIG_PATH"))
    storage_yaml = overrides.get("storage") if isinstance(overrides.get("storage"), dict) else {}
    scheduler_yaml = overrides.get("scheduler") if isinstance(overrides.get("scheduler"), dict) else {}

    mode = (env.get("ROLE_REACTOR_STORAGE_MODE") or str(storage_yaml.get("mode") or "auto")).strip().lower()
    if mode not in STORAGE_MODES:
        print(f"[CFG] invalid ROLE_REACTOR_STORAGE_MODE={mode!r}; falling back to 'auto'")
        mode = "auto"

    floor = _env_int(env, "ROLE_REACTOR_SCHEDULER_FLOOR_SECONDS", int(scheduler_yaml.get("floor_seconds") or SCHEDULER_FLOOR_SECONDS), minimum=1)
    ceiling = _env_int(env, "ROLE_REACTOR_SCHEDULER_CEILING_SECONDS", int(scheduler_yaml.get("ceiling_seconds") or SCHEDULER_CEILING_SECONDS), minimum=1)
    if ceiling < floor:
        print(f"[CFG] scheduler ceiling {ceiling}s below floor {floor}s; using defaults")
        floor, ceiling = SCHEDULER_FLOOR_SECONDS, SCHEDULER_CEILING_SECONDS

    return RuntimeConfig(
        discord_token=env.get("DISCORD_TOKEN"),
        owner_user_ids=parse_id_set(env.get("ROLE_REACTOR_OWNER_IDS")),
        storage_mode=mode,
        data_dir=(env.get("ROLE_REACTOR_DATA_DIR") or str(storage_yaml.get("data_dir") or DEFAULT_DATA_DIR)).strip(),
        db_path=(env.get("ROLE_REACTOR_DB_PATH") or str(storage_yaml.get("db_path") or DEFAULT_DB_PATH)).strip(),
        cache_ttl_seconds=_env_int(env, "ROLE_REACTOR_CACHE_TTL_SECONDS", int(storage_yaml.get("cache_ttl_seconds") or DEFAULT_CACHE_TTL_SECONDS)),
        sync_interval_seconds=_env_int(env, "ROLE_REACTOR_SYNC_INTERVAL_SECONDS", int(storage_yaml.get("sync_interval_seconds") or DEFAULT_SYNC_INTERVAL_SECONDS)),
        dual_homed_collections=_collections_from(storage_yaml.get("dual_homed_collections")),
        scheduler_floor_seconds=floor,
        scheduler_ceiling_seconds=ceiling,
        scheduler_idle_seconds=_env_int(env, "ROLE_REACTOR_SCHEDULER_IDLE_SECONDS", int(scheduler_yaml.get("idle_seconds") or SCHEDULER_IDLE_SECONDS), minimum=1),
        scheduler_concurrency=_env_int(env, "ROLE_REACTOR_SCHEDULER_CONCURRENCY", int(scheduler_yaml.get("concurrency") or SCHEDULER_CONCURRENCY), minimum=1),
        scheduler_batch_delay_seconds=_env_float(env, "ROLE_REACTOR_SCHEDULER_BATCH_DELAY_SECONDS", float(scheduler_yaml.get("batch_delay_seconds") or SCHEDULER_BATCH_DELAY_SECONDS)),
        xp_flush_interval_seconds=_env_float(env, "ROLE_REACTOR_XP_FLUSH_INTERVAL_SECONDS", XP_FLUSH_INTERVAL_SECONDS),
    )


def describe_config(cfg: RuntimeConfig) -> str:
    return (
        f"[CFG] storage_mode={cfg.storage_mode} data_dir={cfg.data_dir} db_path={cfg.db_path} "
        f"cache_ttl={cfg.cache_ttl_seconds}s sync_interval={cfg.sync_interval_seconds}s "
        f"collections={len(cfg.dual_homed_collections)} "
        f"scheduler=[{cfg.scheduler_floor_seconds}s..{cfg.scheduler_ceiling_seconds}s] "
        f"concurrency={cfg.scheduler_concurrency}"
    )
