from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import FrozenSet


def _read_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"0", "false", "off", "no"}:
        return False
    if normalized in {"1", "true", "on", "yes"}:
        return True
    return default


def _read_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class EngineConfig:
    command_timeout: float = 300.0
    force_handlers: bool = False
    backup_files: bool = True
    dry_run: bool = False
    log_level: str = "INFO"
    allowed_failures: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            command_timeout=_read_float_env("CONVERGE_COMMAND_TIMEOUT", 300.0),
            force_handlers=_read_bool_env("CONVERGE_FORCE_HANDLERS", False),
            backup_files=_read_bool_env("CONVERGE_BACKUP_FILES", True),
            log_level=os.getenv("CONVERGE_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )
