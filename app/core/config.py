import json
from functools import lru_cache
from typing import Literal

from fastapi import Depends
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from typing_extensions import Annotated

DEFAULT_JWT_SECRET = "dev-secret-change-in-prod"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: Literal["development", "production", "test"] = "development"
    api_version: str = "v1"
    log_level: str = "INFO"

    # database
    database_url: str = "sqlite+aiosqlite:///./tasks.db"
    db_retry_attempts: int = 5
    db_retry_delay: float = 5.0
    auto_create_tables: bool = True

    # auth
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"
    jwt_expires_in: int = 86400  # 24h
    bcrypt_rounds: int = 12

    # cache
    redis_dsn: str | None = "redis://localhost:6379/0"
    redis_required: bool = False
    redis_pool_size: int = 5
    cache_namespace: str = "taskcache:"
    l1_maxsize: int = 2048
    l1_ttl_seconds: int = 60  # upper bound for any L1 entry
    l2_ttl_seconds: int = 300  # default Redis TTL
    cache_ttl_task: int = 300
    cache_ttl_task_list: int = 300
    cache_ttl_dashboard: int = 300
    cache_ttl_user: int = 3600

    # http
    cors_origins: Annotated[list[str], NoDecode] = ["http://localhost:3000", "http://localhost:3001"]
    slow_request_threshold_ms: int = 1000

    @field_validator("cors_origins", mode="before")
    @classmethod
    def split_origins(cls, value):
        if isinstance(value, str):
            if value.startswith("["):
                return json.loads(value)
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def check_production_secrets(self):
        if self.is_production and self.jwt_secret == DEFAULT_JWT_SECRET:
            raise ValueError("JWT_SECRET must be set in production")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def api_prefix(self) -> str:
        return f"/api/{self.api_version}"


@lru_cache
def get_settings() -> Settings:
    return Settings()


SettingsDep = Annotated[Settings, Depends(get_settings)]
