from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class FatiguePolicy:
    daily_cap: int = 60
    daily_threshold: int = 100
    weekly_threshold: int = 1000
    monthly_threshold: int = 5000

    def override(self, raw: Mapping[str, object] | None) -> "FatiguePolicy":
        if not raw:
            return self
        values = {
            "daily_cap": self.daily_cap,
            "daily_threshold": self.daily_threshold,
            "weekly_threshold": self.weekly_threshold,
            "monthly_threshold": self.monthly_threshold,
        }
        for key in values:
            value = raw.get(key)
            if isinstance(value, int) and not isinstance(value, bool) and value > 0:
                values[key] = value
        return FatiguePolicy(**values)


@dataclass(frozen=True)
class ReviewSettings:
    fatigue: FatiguePolicy
    load_cache_ttl_s: float
    health_cache_ttl_s: float
    sync_focus_cooldown_s: float
    sync_read_retries: int
    release_sweep_interval_s: float
    usage_recheck_interval_s: float
    session_idle_ttl_s: float
    heartbeat_enabled: bool
    personal_require_rejection_reason: bool
    worker_token: str

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ReviewSettings":
        env = os.environ if environ is None else environ
        return cls(
            fatigue=FatiguePolicy(
                daily_cap=_env_int(env, "FATIGUE_DAILY_CAP", default=60, minimum=1),
                daily_threshold=_env_int(env, "FATIGUE_DAILY_THRESHOLD", default=100, minimum=1),
                weekly_threshold=_env_int(env, "FATIGUE_WEEKLY_THRESHOLD", default=1000, minimum=1),
                monthly_threshold=_env_int(env, "FATIGUE_MONTHLY_THRESHOLD", default=5000, minimum=1),
            ),
            load_cache_ttl_s=_env_float(env, "LOAD_CACHE_TTL_S", default=30.0),
            health_cache_ttl_s=_env_float(env, "HEALTH_CACHE_TTL_S", default=60.0),
            sync_focus_cooldown_s=_env_float(env, "SYNC_FOCUS_COOLDOWN_S", default=15.0),
            sync_read_retries=_env_int(env, "SYNC_READ_RETRIES", default=1),
            release_sweep_interval_s=_env_float(env, "RELEASE_SWEEP_INTERVAL_S", default=3600.0, minimum=1.0),
            usage_recheck_interval_s=_env_float(env, "USAGE_RECHECK_INTERVAL_S", default=900.0, minimum=1.0),
            session_idle_ttl_s=_env_float(env, "SESSION_IDLE_TTL_S", default=1800.0, minimum=1.0),
            heartbeat_enabled=_env_bool(env, "HEARTBEAT_ENABLED", default=False),
            personal_require_rejection_reason=_env_bool(env, "PERSONAL_REQUIRE_REJECTION_REASON", default=True),
            worker_token=env.get("WORKER_TOKEN", "").strip(),
        )
