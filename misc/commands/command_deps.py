from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from typing import Callable


def _default_false(*args, **kwargs) -> bool:
    return False


@dataclass(frozen=True)
class CommandDeps:
    storage: Any = None
    scheduler: Any = None
    send_chunked: Callable | None = None


@dataclass(frozen=True)
class CommandGates:
    user_is_owner: Callable[[Any], bool] = _default_false
