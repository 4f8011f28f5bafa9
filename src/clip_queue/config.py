from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Job lifecycle defaults, shared by Settings and the components' own defaults
DEFAULT_JOB_TTL = 86400
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_STALE_AFTER = 45 * 60
DEFAULT_SWEEP_INTERVAL = 60


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "clipqueue"

    # Job lifecycle
    job_ttl_seconds: int = DEFAULT_JOB_TTL
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    stale_after_seconds: int = DEFAULT_STALE_AFTER
    sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL

    # External APIs
    klap_api_key: Optional[str] = None
    klap_api_url: str = "https://api.klap.app/v2"
    submagic_api_key: Optional[str] = None
    submagic_api_url: str = "https://api.submagic.co"

    log_level: str = "INFO"


@lru_cache()
def get_settings():
    return Settings()
