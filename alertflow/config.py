# alertflow/config.py
"""
alertflow Configuration Module - Environment-based configuration
Supports development, testing and production deployments.
"""

import os
import logging.config
from typing import Optional
from functools import lru_cache

from dotenv import load_dotenv

# Load .env file if present
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings:
    """Application settings loaded from environment variables"""

    def __init__(self):
        # ======================================================================
        # Application Settings
        # ======================================================================
        self.ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
        self.DEBUG: bool = _env_bool("DEBUG", "false")
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
        self.LOG_FILE: Optional[str] = os.getenv("LOG_FILE") or None
        self.LOG_MAX_SIZE_MB: int = int(os.getenv("LOG_MAX_SIZE_MB", "100"))

        # ======================================================================
        # API Settings
        # ======================================================================
        self.API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
        self.API_PORT: int = int(os.getenv("API_PORT", "8000"))
        self.API_KEY: Optional[str] = os.getenv("ALERTFLOW_API_KEY") or None

        # ======================================================================
        # Database Configuration
        # ======================================================================
        # Default to SQLite for development
        self.DATABASE_URL: str = os.getenv("DATABASE_URL") or "sqlite:///./alertflow.db"
        self.DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "5"))
        self.DB_MAX_OVERFLOW: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))

        # ======================================================================
        # Redis / Queue Configuration
        # ======================================================================
        self.REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
        self.REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
        self.REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
        self.REDIS_PASSWORD: Optional[str] = os.getenv("REDIS_PASSWORD") or None
        self.QUEUE_BACKEND: str = os.getenv("QUEUE_BACKEND", "memory").lower()  # memory | redis
        self.QUEUE_KEY_PREFIX: str = os.getenv("QUEUE_KEY_PREFIX", "analysis")
        self.TASK_DATA_TTL_SECONDS: int = int(os.getenv("TASK_DATA_TTL_SECONDS", "86400"))
        self.PROGRESS_TTL_SECONDS: int = int(os.getenv("PROGRESS_TTL_SECONDS", "86400"))

        # ======================================================================
        # Worker Pool Settings
        # ======================================================================
        self.WORKER_COUNT: int = int(os.getenv("WORKER_COUNT", "4"))
        self.WORKER_POLL_INTERVAL: float = float(os.getenv("WORKER_POLL_INTERVAL", "1.0"))
        self.WORKER_HEALTH_WINDOW: float = float(os.getenv("WORKER_HEALTH_WINDOW", "300"))
        self.WORKER_STOP_TIMEOUT: float = float(os.getenv("WORKER_STOP_TIMEOUT", "30"))
        self.WORKER_MIN_HEALTHY_RATIO: float = float(os.getenv("WORKER_MIN_HEALTHY_RATIO", "0.5"))

        # ======================================================================
        # Task Timeout / Retry Settings
        # ======================================================================
        self.TASK_DEFAULT_TIMEOUT: float = float(os.getenv("TASK_DEFAULT_TIMEOUT", "300"))
        self.TASK_MAX_RETRIES: int = int(os.getenv("TASK_MAX_RETRIES", "3"))
        self.RETRY_BASE_DELAY: float = float(os.getenv("RETRY_BASE_DELAY", "1"))
        self.RETRY_MAX_DELAY: float = float(os.getenv("RETRY_MAX_DELAY", "60"))
        self.SWEEP_INTERVAL: float = float(os.getenv("SWEEP_INTERVAL", "30"))
        self.CALLBACK_TTL_SECONDS: float = float(os.getenv("CALLBACK_TTL_SECONDS", "3600"))

        # ======================================================================
        # Analysis Engine
        # ======================================================================
        self.ANALYSIS_ENGINE_URL: Optional[str] = os.getenv("ANALYSIS_ENGINE_URL") or None
        self.ANALYSIS_ENGINE_API_KEY: Optional[str] = os.getenv("ANALYSIS_ENGINE_API_KEY") or None

        # ======================================================================
        # Admission Circuit Breaker
        # ======================================================================
        self.CIRCUIT_BREAKER_ENABLED: bool = _env_bool("CIRCUIT_BREAKER_ENABLED", "true")
        self.CIRCUIT_MIN_WORKERS: int = int(os.getenv("CIRCUIT_MIN_WORKERS", "1"))
        self.CIRCUIT_MAX_QUEUE_SIZE: int = int(os.getenv("CIRCUIT_MAX_QUEUE_SIZE", "1000"))
        self.CIRCUIT_RECOVERY_TIMEOUT: int = int(os.getenv("CIRCUIT_RECOVERY_TIMEOUT", "30"))
        self.CIRCUIT_TEST_TASK_TIMEOUT: int = int(os.getenv("CIRCUIT_TEST_TASK_TIMEOUT", "60"))

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @property
    def REDIS_URL(self) -> str:
        """Construct Redis URL from components"""
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_testing(self) -> bool:
        return self.ENVIRONMENT.lower() == "testing"

    def get_log_config(self) -> dict:
        """Get structured logging configuration"""
        handlers = ["console"]
        config = {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "correlation": {
                    "()": "alertflow.middleware.correlation.CorrelationIdFilter",
                },
            },
            "formatters": {
                "default": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s [corr-id:%(correlation_id)s]: %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S"
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["correlation"],
                    "stream": "ext://sys.stdout"
                },
            },
            "root": {
                "level": self.LOG_LEVEL,
                "handlers": handlers
            }
        }
        if self.LOG_FILE:
            config["handlers"]["file"] = {
                "class": "logging.handlers.RotatingFileHandler",
                "formatter": "default",
                "filters": ["correlation"],
                "filename": self.LOG_FILE,
                "maxBytes": self.LOG_MAX_SIZE_MB * 1024 * 1024,
                "backupCount": 5
            }
            handlers.append("file")
        return config


def configure_logging(settings: Optional["Settings"] = None):
    """Apply the logging configuration for the given (or cached) settings"""
    settings = settings or get_settings()
    logging.config.dictConfig(settings.get_log_config())


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
