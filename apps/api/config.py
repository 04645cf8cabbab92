"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./media_converter.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379"
    SESSION_BACKEND: str = "redis"  # redis, memory

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Credits and quotas
    CREDIT_PER_CONVERSION: int = 1
    INITIAL_CREDITS: int = 10
    REFERRAL_BONUS: int = 5
    DAILY_LIMIT: int = 10
    MAX_FILE_SIZE_MB: int = 50

    # Sessions and retention
    SESSION_TTL_MINUTES: int = 30
    FILE_DELETE_AFTER_HOURS: int = 24
    SWEEP_INTERVAL_MINUTES: int = 60
    SWEEP_VIA_QUEUE: bool = False

    # Pipeline collaborators
    WORK_DIR: str = "/tmp/media_converter_work"
    MEDIA_SOURCE_BASE_URL: str = ""
    STORAGE_BACKEND: str = "filesystem"  # filesystem, http
    STORAGE_DIR: str = "/tmp/media_converter_storage"
    STORAGE_BASE_URL: str = ""
    STORAGE_API_TOKEN: str = ""
    DOWNLOAD_TIMEOUT_SECONDS: int = 300
    TRANSCODE_TIMEOUT_SECONDS: int = 900
    STAGE_TIMEOUT_SECONDS: int = 300

    # Security
    JWT_SECRET: str = "change_me_in_production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_HOURS: int = 24
    AUTO_CREATE_DB_SCHEMA: bool = True

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

    @property
    def max_file_size_bytes(self) -> int:
        return int(self.MAX_FILE_SIZE_MB) * 1024 * 1024


settings = Settings()


def validate_settings(config: Settings = settings) -> None:
    """Fail fast when numeric policy options or secrets are unusable."""
    if int(config.CREDIT_PER_CONVERSION) < 1:
        raise ValueError("CREDIT_PER_CONVERSION must be at least 1.")
    if int(config.REFERRAL_BONUS) < 0:
        raise ValueError("REFERRAL_BONUS must not be negative.")
    if int(config.INITIAL_CREDITS) < 0:
        raise ValueError("INITIAL_CREDITS must not be negative.")
    if int(config.DAILY_LIMIT) < 0:
        raise ValueError("DAILY_LIMIT must not be negative.")
    if int(config.MAX_FILE_SIZE_MB) <= 0:
        raise ValueError("MAX_FILE_SIZE_MB must be greater than 0.")
    if int(config.SESSION_TTL_MINUTES) <= 0:
        raise ValueError("SESSION_TTL_MINUTES must be greater than 0.")
    if int(config.FILE_DELETE_AFTER_HOURS) <= 0:
        raise ValueError("FILE_DELETE_AFTER_HOURS must be greater than 0.")
    if config.SESSION_BACKEND not in {"redis", "memory"}:
        raise ValueError("SESSION_BACKEND must be 'redis' or 'memory'.")
    if config.STORAGE_BACKEND not in {"filesystem", "http"}:
        raise ValueError("STORAGE_BACKEND must be 'filesystem' or 'http'.")
    if config.STORAGE_BACKEND == "http" and not (config.STORAGE_BASE_URL or "").strip():
        raise ValueError("STORAGE_BASE_URL is required when STORAGE_BACKEND=http.")

    insecure_values = {"", "change_me_in_production"}
    jwt_secret = (config.JWT_SECRET or "").strip()
    if jwt_secret in insecure_values or len(jwt_secret) < 24:
        raise ValueError("JWT_SECRET is insecure. Configure a strong non-default secret (>=24 chars).")
