from __future__ import annotations

import os
from dataclasses import dataclass, field

from swapcore.common import to_bool
from swapcore.storage import RedisConfigSettings

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def normalize_log_level(value: str) -> str:
    level = (value or "").strip().upper()
    if level in LOG_LEVELS:
        return level
    return "INFO"


@dataclass(slots=True)
class AppSettings:
    log_level: str = "INFO"
    private_key: str = ""
    health_monitor_enabled: bool = True
    redis: RedisConfigSettings = field(default_factory=RedisConfigSettings)

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            log_level=normalize_log_level(os.getenv("LOG_LEVEL", "INFO")),
            private_key=os.getenv("PRIVATE_KEY", ""),
            health_monitor_enabled=to_bool(os.getenv("RPC_HEALTH_MONITOR_ENABLED"), True),
            redis=RedisConfigSettings.from_env(),
        )
