"""
Server settings.

Loaded from environment variables prefixed with SEALCHAT_ or from a .env file.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration options for the SealChat server"""

    model_config = SettingsConfigDict(env_prefix="SEALCHAT_", env_file=".env", extra="ignore")

    app_name: str = "SealChat Server"

    # JWT authentication
    secret_key: str = Field(default="change-this-secret-in-production")
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24

    database_url: str = "sqlite+aiosqlite:///./sealchat.db"
    sql_debug: bool = False

    # Upper bound for one encrypted file upload
    max_file_bytes: int = 25 * 1024 * 1024

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings"""
    return Settings()
