"""
Configuration and logging setup for the arena service.

This module provides:
- Environment-based settings via Pydantic Settings
- Structured JSON logging configuration
- Centralized configuration access
"""

import logging
import logging.config
import sys
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Service configuration
    service_name: str = Field(default="forecast-arena", description="Name of the service")
    service_port: int = Field(default=8000, alias="ARENA_SERVICE_PORT")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", alias="LOG_LEVEL"
    )
    log_format: Literal["standard", "json"] = Field(default="standard", alias="LOG_FORMAT")

    # Storage
    database_url: str = Field(default="sqlite:///arena.db", alias="DATABASE_URL")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # Trigger endpoints; empty disables the bearer check
    cron_secret: str = Field(default="", alias="CRON_SECRET")

    # API Keys - loaded from environment, never logged
    openrouter_api_key: str = Field(default="", alias="OPENROUTER_API_KEY")
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    google_api_key: str = Field(default="", alias="GOOGLE_API_KEY")
    xai_api_key: str = Field(default="", alias="XAI_API_KEY")

    # Methodology
    methodology_version: str = Field(default="v1", alias="METHODOLOGY_VERSION")
    initial_balance: float = Field(default=10_000.0, gt=0, alias="INITIAL_BALANCE")
    min_bet: float = Field(default=10.0, ge=0, alias="MIN_BET")
    max_bet_fraction: float = Field(default=0.30, gt=0, le=1, alias="MAX_BET_FRACTION")
    top_markets_count: int = Field(default=100, ge=1, alias="TOP_MARKETS_COUNT")

    # Decision requests
    decision_max_retries: int = Field(default=1, ge=0, alias="DECISION_MAX_RETRIES")
    decision_temperature: float = Field(default=0.0, ge=0, le=2, alias="DECISION_TEMPERATURE")
    decision_max_tokens: int = Field(default=2000, ge=1, alias="DECISION_MAX_TOKENS")

    # Cycles
    snapshot_interval_minutes: int = Field(default=10, ge=1, alias="SNAPSHOT_INTERVAL_MINUTES")
    decision_cycle_budget_seconds: float = Field(
        default=300.0, gt=0, alias="DECISION_CYCLE_BUDGET_SECONDS"
    )
    snapshot_budget_seconds: float = Field(default=120.0, gt=0, alias="SNAPSHOT_BUDGET_SECONDS")
    max_consecutive_store_failures: int = Field(
        default=3, ge=1, alias="MAX_CONSECUTIVE_STORE_FAILURES"
    )

    # Cohort schedule: window opens at 00:00 UTC on the weekday (Monday=0 ... Sunday=6)
    cohort_start_weekday: int = Field(default=6, ge=0, le=6, alias="COHORT_START_WEEKDAY")
    cohort_start_window_hours: int = Field(default=1, ge=1, le=24, alias="COHORT_START_WINDOW_HOURS")
    allow_concurrent_cohorts: bool = Field(default=False, alias="ALLOW_CONCURRENT_COHORTS")
    empty_cohort_grace_days: int = Field(default=7, ge=0, alias="EMPTY_COHORT_GRACE_DAYS")

    # CORS configuration
    cors_origins: list[str] = Field(
        default=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        description="Allowed CORS origins",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application settings instance
    """
    return Settings()


JSON_FORMAT = (
    '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", '
    '"function": "%(funcName)s", "message": "%(message)s"}'
)


def configure_logging(settings: Settings) -> logging.Logger:
    """
    Configure logging for the service and the arena engine.

    The engine and service loggers follow LOG_LEVEL; SQL statements are
    shown only when DATABASE_ECHO is on, and LiteLLM is kept at WARNING.

    Args:
        settings: Application settings containing log level and format

    Returns:
        Logger: The llm_service logger
    """

    def console(level: str) -> dict:
        return {"level": level, "handlers": ["console"], "propagate": False}

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"format": JSON_FORMAT, "datefmt": "%Y-%m-%dT%H:%M:%S%z"},
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": settings.log_level,
                "formatter": settings.log_format,
                "stream": sys.stdout,
            },
        },
        "root": {"level": settings.log_level, "handlers": ["console"]},
        "loggers": {
            "llm_service": console(settings.log_level),
            "arena": console(settings.log_level),
            "uvicorn": console("INFO"),
            "sqlalchemy.engine": console("INFO" if settings.database_echo else "WARNING"),
            "LiteLLM": console("WARNING"),
        },
    })

    logger = get_logger()
    logger.info(
        f"Logging configured at {settings.log_level}",
        extra={"format": settings.log_format, "service": settings.service_name},
    )
    return logger


def get_logger(name: str = "llm_service") -> logging.Logger:
    """Logger under the service namespace."""
    return logging.getLogger(name)
