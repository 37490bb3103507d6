"""
Application settings for the Dojo Notices service

Values are read from the environment (or a local .env file). The NOTICE_*
and FANOUT_* values are part of the delivery contract shared with clients.
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    PROJECT_NAME: str = "Dojo Notices API"
    VERSION: str = "1.0.0"
    DESCRIPTION: str = "Notice fan-out and member delivery for dojo announcements"
    API_V1_STR: str = "/api"
    BACKEND_CORS_ORIGINS: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # MongoDB
    MONGODB_URI: str = "mongodb://localhost:27017/?replicaSet=rs0"
    DATABASE_NAME: str = "dojo_notices"

    # Delivery contract
    NOTICE_BATCH_SIZE: int = Field(400, ge=1, le=1000, description="Inbox writes per atomic batch")
    NOTICE_CLOCK_SKEW_SECONDS: int = Field(120, ge=0)
    NOTICE_DEFAULT_DURATION_DAYS: int = Field(30, ge=1)
    NOTICE_MEMBER_LIMIT: int = Field(100, ge=1)
    NOTICE_STAFF_LIMIT: int = Field(200, ge=1)
    NOTICE_WINDOW_REFRESH_SECONDS: float = Field(60.0, gt=0)

    # Fan-out retry policy
    FANOUT_RETRY_ATTEMPTS: int = Field(3, ge=1)
    FANOUT_RETRY_BACKOFF_SECONDS: float = Field(0.2, ge=0)
    FANOUT_MAX_CONCURRENT_BATCHES: int = Field(4, ge=1)


settings = Settings()
