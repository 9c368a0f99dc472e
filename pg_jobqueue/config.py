"""
Runtime settings for the PG Job Queue service.

Values come from environment variables (see ``Settings.from_env``); anything
not set falls back to the defaults below.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"Invalid value for {name}: {raw!r}")


@dataclass
class Settings:
    """Service configuration"""
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "scheduler"
    db_password: str = "scheduler123"
    db_name: str = "scheduler_db"
    pool_min_size: int = 2
    pool_max_size: int = 10
    poll_interval: float = 5.0           # Seconds between scheduler ticks
    heartbeat_interval: float = 30.0     # Seconds between heartbeat events
    job_timeout: Optional[float] = None  # None = handlers never time out
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    def __post_init__(self):
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if self.job_timeout is not None and self.job_timeout <= 0:
            raise ValueError("job_timeout must be positive when set")

    @classmethod
    def from_env(cls) -> 'Settings':
        return cls(
            db_host=os.getenv("PGHOST", cls.db_host),
            db_port=_env_number("PGPORT", cls.db_port, int),
            db_user=os.getenv("PGUSER", cls.db_user),
            db_password=os.getenv("PGPASSWORD", cls.db_password),
            db_name=os.getenv("PGDATABASE", cls.db_name),
            pool_min_size=_env_number("JOBQUEUE_POOL_MIN", cls.pool_min_size, int),
            pool_max_size=_env_number("JOBQUEUE_POOL_MAX", cls.pool_max_size, int),
            poll_interval=_env_number("JOB_POLL_INTERVAL", cls.poll_interval, float),
            heartbeat_interval=_env_number("HEARTBEAT_INTERVAL", cls.heartbeat_interval, float),
            job_timeout=_env_number("JOB_TIMEOUT", None, float),
            host=os.getenv("HOST", cls.host),
            port=_env_number("PORT", cls.port, int),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )
