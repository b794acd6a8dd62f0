from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="IMCACHE_", env_file=".env", extra="ignore")

    # Key derivation
    key_prefix: str = "imcache"

    # Expiry
    default_ttl_ms: int = Field(default=0, ge=0)
    cascade_on_expiry: bool = True

    # Remote invalidation
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    invalidation_channel: str = "imcache:invalidation"
    channel_queue_size: int = Field(default=10000, ge=0)

    # Observability
    log_level: str = "INFO"
    log_json: bool = False


settings = Settings()
