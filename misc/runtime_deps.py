from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class RuntimeDeps:
    # core
    storage: Any
    scheduler: Any
    send_chunked: Callable
    user_is_owner: Callable

    # domain services
    temp_roles: Any
    polls: Any
    experience: Any


@dataclass(frozen=True)
class RuntimeBootDeps:
    config_summary: str
    award_message_xp: bool = True
