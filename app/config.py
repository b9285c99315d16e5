"""
Test Forecast Engine
Configuration classes for the Flask app factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'forecast_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _env_int(name, default):
    return int(os.getenv(name, str(default)))


def _env_bool(name, default):
    return os.getenv(name, "true" if default else "false").lower() == "true"


class Config:
    """Base configuration shared across all environments."""

    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # Queue connection (Redis or Valkey). No default: a worker without a
    # live queue would drop every enqueue.
    REDIS_URL = os.getenv("REDIS_URL") or os.getenv("VALKEY_URL")

    # Forecast queue + worker
    FORECAST_QUEUE_NAME = os.getenv("FORECAST_QUEUE_NAME", "forecast-updates")
    FORECAST_QUEUE_PREFIX = os.getenv("FORECAST_QUEUE_PREFIX", "queue")
    FORECAST_WORKER_CONCURRENCY = _env_int("FORECAST_WORKER_CONCURRENCY", 5)
    FORECAST_RATE_LIMIT_MAX = _env_int("FORECAST_RATE_LIMIT_MAX", 100)
    FORECAST_RATE_LIMIT_DURATION_MS = _env_int("FORECAST_RATE_LIMIT_DURATION_MS", 1000)
    FORECAST_RATE_LIMIT_STORAGE_URI = os.getenv("FORECAST_RATE_LIMIT_STORAGE_URI", "memory://")
    FORECAST_JOB_ATTEMPTS = _env_int("FORECAST_JOB_ATTEMPTS", 3)
    FORECAST_JOB_BACKOFF_MS = _env_int("FORECAST_JOB_BACKOFF_MS", 5000)
    FORECAST_KEEP_FINISHED_JOBS = _env_int("FORECAST_KEEP_FINISHED_JOBS", 1000)
    FORECAST_POLL_TIMEOUT_SECONDS = _env_int("FORECAST_POLL_TIMEOUT_SECONDS", 5)

    # Forecast engine
    FORECAST_BATCH_SIZE = _env_int("FORECAST_BATCH_SIZE", 1000)
    FORECAST_ENQUEUE_ON_WRITE = _env_bool("FORECAST_ENQUEUE_ON_WRITE", True)


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    REDIS_URL = None
    FORECAST_ENQUEUE_ON_WRITE = False
    FORECAST_JOB_BACKOFF_MS = 0
    FORECAST_POLL_TIMEOUT_SECONDS = 1


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
