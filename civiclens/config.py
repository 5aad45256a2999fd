"""
CivicLens
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'civiclens_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes", "on")


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
    JWT_ACCESS_EXPIRES = int(os.getenv("JWT_ACCESS_EXPIRES", "900"))
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # Redis (rate-limit storage)
    REDIS_URL = os.getenv("REDIS_URL", "memory://")
    RATELIMIT_ENABLED = True

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Uploads
    MAX_CONTENT_LENGTH = 12 * 1024 * 1024
    MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(10 * 1024 * 1024)))
    IMAGE_STORAGE_DIR = os.getenv("IMAGE_STORAGE_DIR", os.path.join(basedir, "instance", "uploads"))
    IMAGE_FETCH_TIMEOUT = float(os.getenv("IMAGE_FETCH_TIMEOUT", "15"))
    # Object-storage hosts whose http(s) image refs may be fetched (comma separated)
    IMAGE_REMOTE_HOSTS = tuple(h.strip() for h in os.getenv("IMAGE_REMOTE_HOSTS", "").split(",") if h.strip())

    # AI oracle
    AI_ORACLE_MODEL = os.getenv("AI_ORACLE_MODEL", "gemini-2.5-flash")
    AI_ORACLE_TIMEOUT = float(os.getenv("AI_ORACLE_TIMEOUT", "20"))
    AI_ORACLE_MAX_RETRIES = int(os.getenv("AI_ORACLE_MAX_RETRIES", "1"))
    AI_ORACLE_ALLOW_STUB = _env_bool("AI_ORACLE_ALLOW_STUB")

    # Provenance (anti-fraud) thresholds
    PROVENANCE_MAX_AGE_HOURS = float(os.getenv("PROVENANCE_MAX_AGE_HOURS", "24"))
    PROVENANCE_MAX_DISTANCE_KM = float(os.getenv("PROVENANCE_MAX_DISTANCE_KM", "1.0"))

    # Duplicate detection
    DUPLICATE_SEARCH_RADIUS_DEG = float(os.getenv("DUPLICATE_SEARCH_RADIUS_DEG", "0.0005"))  # ~50 m
    DUPLICATE_MAX_CANDIDATES = int(os.getenv("DUPLICATE_MAX_CANDIDATES", "3"))
    DUPLICATE_CANDIDATE_STATUSES = ("pending",)

    # Resolution reward
    RESOLUTION_REWARD_CREDITS = int(os.getenv("RESOLUTION_REWARD_CREDITS", "50"))

    # Triage worker: thread | inline | deferred
    TRIAGE_EXECUTION = os.getenv("TRIAGE_EXECUTION", "thread")
    TRIAGE_MAX_ATTEMPTS = int(os.getenv("TRIAGE_MAX_ATTEMPTS", "3"))
    # Seconds a running job may hold its claim before the queue takes it back
    TRIAGE_JOB_LEASE = float(os.getenv("TRIAGE_JOB_LEASE", "300"))

    # Reverse geocoding (optional)
    OPENCAGE_API_KEY = os.getenv("OPENCAGE_API_KEY")
    GEOCODING_TIMEOUT = float(os.getenv("GEOCODING_TIMEOUT", "5"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )
    # Local stub lets the pipeline run end-to-end without API keys
    AI_ORACLE_ALLOW_STUB = _env_bool("AI_ORACLE_ALLOW_STUB", "true")


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    JWT_SECRET_KEY = "test-secret-key-for-unit-tests-only-min-32-chars"
    RATELIMIT_ENABLED = False
    AI_ORACLE_ALLOW_STUB = False
    TRIAGE_EXECUTION = "deferred"
    OPENCAGE_API_KEY = None


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    # Override engine options with PostgreSQL statement timeout
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
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
