"""
Configuration.
Config is the parsed config.yml; AttendanceSettings is the typed view the engine needs.
"""

from __future__ import annotations
import yaml
from dataclasses import dataclass
from typing import Any

from presencebot.utils.tz_time import DEFAULT_TZ_NAME

from .sessions import DEFAULT_CHECKOUT_MINUTES
from .throttle import DEFAULT_COOLDOWN_MINUTES

DEFAULT_CONFIG_TEMPLATE = """token: "{token}"

database:
  path: "presencebot.sqlite3"

attendance:
  timezone: "{timezone}"
  # text channel for check-in/out lines and event summaries (0 = disabled)
  log_channel: 0
  checkout_minutes_required: 60
  notify_cooldown_minutes: 120

logging:
  level: "INFO"
  file: "presencebot.log"
"""


class Config(dict):
    @staticmethod
    def load(path: str) -> "Config":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return Config(data)

    def get(self, *keys, default=None):
        cur: Any = self
        for k in keys:
            if isinstance(cur, dict) and k in cur:
                cur = cur[k]
            else:
                return default
        return cur


@dataclass(frozen=True)
class AttendanceSettings:
    timezone: str = DEFAULT_TZ_NAME
    log_channel_id: int = 0
    checkout_minutes_required: int = DEFAULT_CHECKOUT_MINUTES
    notify_cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES

    @classmethod
    def from_config(cls, cfg: Config) -> "AttendanceSettings":
        return cls(
            timezone=str(cfg.get("attendance", "timezone", default=DEFAULT_TZ_NAME)),
            log_channel_id=int(cfg.get("attendance", "log_channel", default=0) or 0),
            checkout_minutes_required=int(
                cfg.get("attendance", "checkout_minutes_required", default=DEFAULT_CHECKOUT_MINUTES)
            ),
            notify_cooldown_minutes=int(
                cfg.get("attendance", "notify_cooldown_minutes", default=DEFAULT_COOLDOWN_MINUTES)
            ),
        )
