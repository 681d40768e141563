from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process configuration, read from the environment and an optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    # Auth
    jwt_secret: SecretStr
    jwt_issuer: str = "online-store"
    token_ttl_hours: int = Field(24, gt=0)
    bcrypt_rounds: int = Field(12, ge=4, le=31)

    # Relational store
    database_url: str = "sqlite:///./storefront.db"
    db_pool_timeout: float = Field(30.0, gt=0)
    create_schema: bool = True

    # Cache
    cache_url: str = "redis://localhost:6379/0"
    cache_ttl_seconds: int = Field(600, gt=0)
    cache_socket_timeout: float = Field(0.5, gt=0)

    # HTTP
    cors_allow_origin: str = "https://petelka.shop"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Optional administrator created at startup
    admin_email: Optional[str] = None
    admin_password: Optional[SecretStr] = None

    @field_validator("jwt_secret")
    @classmethod
    def _secret_not_blank(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("JWT_SECRET must not be blank")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings()
