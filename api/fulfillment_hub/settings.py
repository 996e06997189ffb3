# fulfillment_hub/settings.py
"""
Fulfillment Hub Settings.
"""
from __future__ import annotations
from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, AliasChoices

class Settings(BaseSettings):
    # =========================================================================
    # File Storage (logs)
    # =========================================================================
    DATA_ROOT: Path = Field(
        default=(Path(__file__).resolve().parents[2] / "fulfillment-data"),
        validation_alias=AliasChoices("FULFILLMENT_DATA_ROOT", "DATA_ROOT"),
    )

    # =========================================================================
    # Database
    # =========================================================================
    # Full SQLAlchemy URL; when set it wins over the DB_* parts below.
    # e.g. sqlite+aiosqlite:///./fulfillment.db
    DATABASE_URL: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("FULFILLMENT_DATABASE_URL", "DATABASE_URL"),
    )
    DB_HOST: str = Field(default="localhost", validation_alias="DB_HOST")
    DB_PORT: int = Field(default=5432, validation_alias="DB_PORT")
    DB_NAME: str = Field(default="fulfillment_hub", validation_alias="DB_NAME")
    DB_USER: str = Field(default="postgres", validation_alias="DB_USER")
    DB_PASSWORD: str = Field(default="postgres", validation_alias="DB_PASSWORD")

    # Connection pool settings (ignored for SQLite)
    DB_POOL_SIZE: int = Field(default=5, validation_alias="DB_POOL_SIZE")
    DB_MAX_OVERFLOW: int = Field(default=10, validation_alias="DB_MAX_OVERFLOW")
    DB_ECHO: bool = Field(default=False, validation_alias="DB_ECHO")

    # PostgreSQL transaction isolation. The conditional stock UPDATE is safe under
    # READ COMMITTED; stricter levels surface conflicts as retries instead.
    DB_ISOLATION_LEVEL: str = Field(default="READ COMMITTED", validation_alias="DB_ISOLATION_LEVEL")

    # Seconds a SQLite writer waits for the database lock before giving up.
    SQLITE_BUSY_TIMEOUT: float = Field(default=30.0, validation_alias="SQLITE_BUSY_TIMEOUT")

    # Create tables on startup (dev / tests). Production schemas are managed externally.
    DB_CREATE_SCHEMA: bool = Field(default=False, validation_alias="DB_CREATE_SCHEMA")

    # =========================================================================
    # Fulfillment
    # =========================================================================
    FULFILLMENT_MAX_ATTEMPTS: int = Field(default=3, ge=1, validation_alias="FULFILLMENT_MAX_ATTEMPTS")
    FULFILLMENT_RETRY_BACKOFF: float = Field(
        default=0.05,
        ge=0,
        description="Base delay in seconds between contention retries (grows linearly)",
        validation_alias="FULFILLMENT_RETRY_BACKOFF",
    )
    FULFILLMENT_TIMEOUT: Optional[float] = Field(
        default=None,
        description="Default deadline in seconds for one fulfill call; None = unbounded",
        validation_alias="FULFILLMENT_TIMEOUT",
    )
    FULFILLMENT_LOCK_ROWS: bool = Field(
        default=True,
        description="Lock product rows in id order before reserving (SELECT ... FOR UPDATE)",
        validation_alias="FULFILLMENT_LOCK_ROWS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )

settings = Settings()
