# configuration management using pydantic settings
# reads from .env file and provides type-safe config

from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    """app configuration loaded from environment variables"""

    # cache backend: "redis", "memory" (single process only) or "none"
    cache_backend: str = "redis"

    # redis connection - either a full url or host/port/password/db
    # leaving both unset disables the cache instead of failing startup
    redis_url: Optional[str] = None
    redis_host: Optional[str] = None
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    # short timeouts so a sick redis can't stall requests
    cache_socket_timeout: float = 0.5
    cache_connect_timeout: float = 2.0

    # collapse concurrent cold-key fetches onto one upstream call
    cache_single_flight: bool = False

    # how often the background warmer runs (seconds)
    cache_warm_interval: int = 3600

    # airtable (upstream record store)
    airtable_api_key: Optional[str] = None
    airtable_base_id: Optional[str] = None
    airtable_api_url: str = "https://api.airtable.com/v0"
    airtable_timeout: float = 10.0

    # logging
    log_level: str = "INFO"

    # api settings
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    class Config:
        env_file = ".env"  # load from .env file
        case_sensitive = False  # REDIS_HOST and redis_host both work
        extra = 'ignore'  # ignore extra fields in .env

# global settings instance
settings = Settings()
