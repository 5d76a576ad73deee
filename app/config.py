"""
Capital Project Portal
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'portal_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _database_url(env_name="DATABASE_URL"):
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    raw = os.getenv(env_name, "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else None


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Rate limiting (Flask-Limiter)
    RATELIMIT_ENABLED = os.getenv("RATELIMIT_ENABLED", "true").lower() == "true"
    RATELIMIT_STORAGE_URI = os.getenv("REDIS_URL", "memory://")

    # ── Data store ───────────────────────────────────────────────────────
    # Backend: memory | file | database
    DATA_STORE_BACKEND = os.getenv("DATA_STORE_BACKEND", "file")
    # Mode: file | preferred_database | required_database
    DATA_STORE_MODE = os.getenv("DATA_STORE_MODE", "file")
    DATA_STORE_DIR = os.getenv("DATA_STORE_DIR", os.path.join(basedir, "data"))
    # Single-process file stores only; ignored for database backends
    DATA_STORE_CACHE = os.getenv("DATA_STORE_CACHE", "false").lower() == "true"

    # ── Change governance ────────────────────────────────────────────────
    CHANGE_THRESHOLDS = {
        "budget_impact_threshold_abs": 50_000,
        "budget_impact_threshold_pct": 5,
        "schedule_impact_threshold_days": 14,
        "cumulative_budget_escalation_pct": 10,
    }

    GOVERNANCE_AUDIT_MAX_ENTRIES = 5000

    # Links embedded in notifications
    PORTAL_BASE_URL = os.getenv("PORTAL_BASE_URL", "http://localhost:5000")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url() or _SQLITE_DEV


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    DATA_STORE_BACKEND = "memory"
    DATA_STORE_MODE = "file"
    DATA_STORE_CACHE = False


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    # Hosted filesystems are read-only; the database is the only durable store.
    DATA_STORE_BACKEND = os.getenv("DATA_STORE_BACKEND", "database")
    DATA_STORE_MODE = os.getenv("DATA_STORE_MODE", "required_database")
    DATA_STORE_CACHE = False

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
