"""Runtime configuration read from the environment."""

import os
from dataclasses import dataclass
from pathlib import Path

from spotube.core.errors import ConfigError

MATCH_POLICIES = ("title", "title_artist")


def _int(env: dict, name: str, default: int, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{name} must be at least {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    data_dir: Path = Path("/config/spotube")
    log_level: str = "INFO"
    analysis_tick_seconds: int = 60
    executor_tick_seconds: int = 60
    executor_batch_size: int = 50
    executor_concurrency: int = 1
    max_attempts: int = 5
    min_interval_minutes: int = 5
    youtube_daily_quota: int = 10000
    api_timeout_seconds: int = 10
    retention_days: int = 30
    match_policy: str = "title_artist"
    spotify_refresh_token: str = ""
    youtube_refresh_token: str = ""

    @property
    def store_file(self) -> Path:
        return self.data_dir / "spotube.json"

    @property
    def log_file(self) -> Path:
        return self.data_dir / "spotube.log"

    @property
    def lock_file(self) -> Path:
        return self.data_dir / ".spotube.lock"

    @property
    def cache_file(self) -> Path:
        return self.data_dir / ".search_cache.json"

    @property
    def status_file(self) -> Path:
        return self.data_dir / "sync_status.json"

    @classmethod
    def from_env(cls, env: dict | None = None) -> "Settings":
        env = os.environ if env is None else env
        policy = env.get("MATCH_POLICY", "title_artist").strip().lower()
        if policy not in MATCH_POLICIES:
            raise ConfigError(f"MATCH_POLICY must be one of {', '.join(MATCH_POLICIES)}, got {policy!r}")
        return cls(
            data_dir=Path(env.get("SPOTUBE_DATA_DIR", "/config/spotube")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            analysis_tick_seconds=_int(env, "ANALYSIS_TICK_SECONDS", 60),
            executor_tick_seconds=_int(env, "EXECUTOR_TICK_SECONDS", 60),
            executor_batch_size=_int(env, "EXECUTOR_BATCH_SIZE", 50),
            executor_concurrency=_int(env, "EXECUTOR_CONCURRENCY", 1),
            max_attempts=_int(env, "MAX_ATTEMPTS", 5),
            min_interval_minutes=_int(env, "MIN_INTERVAL_MINUTES", 5, minimum=5),
            youtube_daily_quota=_int(env, "YOUTUBE_DAILY_QUOTA", 10000),
            api_timeout_seconds=_int(env, "API_TIMEOUT_SECONDS", 10),
            retention_days=_int(env, "RETENTION_DAYS", 30),
            match_policy=policy,
            spotify_refresh_token=env.get("SPOTIFY_REFRESH_TOKEN", ""),
            youtube_refresh_token=env.get("YOUTUBE_REFRESH_TOKEN", ""),
        )
