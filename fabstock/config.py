"""
fabstock configuration classes, selected by the app factory.

    app.config.from_object(config[os.getenv("APP_ENV", "development")]())

Database:
    DATABASE_URL          development/production (``postgres://`` accepted)
    TEST_DATABASE_URL     tests; in-memory SQLite when unset

Domain settings:
    CONSUMPTION_MAX_RETRIES   attempts before a stale write becomes ConflictError
    UNIT_OF_WORK_TIMEOUT      seconds; unset means no limit
    DEFAULT_TENANT_ID         tenant used by CLI commands without --tenant
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'fabstock_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _database_url(env_name: str) -> str | None:
    # SQLAlchemy 2.0 only knows the postgresql:// scheme
    raw = os.getenv(env_name, "")
    if not raw:
        return None
    return raw.replace("postgres://", "postgresql://", 1)


def _optional_float(name: str) -> float | None:
    raw = os.getenv(name, "")
    return float(raw) if raw else None


class Config:
    """Settings shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    DEFAULT_TENANT_ID = os.getenv("DEFAULT_TENANT_ID", "default")
    CONSUMPTION_MAX_RETRIES = int(os.getenv("CONSUMPTION_MAX_RETRIES", "3"))
    UNIT_OF_WORK_TIMEOUT = _optional_float("UNIT_OF_WORK_TIMEOUT")

    # Flask-Migrate owns the schema unless a subclass opts in
    AUTO_CREATE_TABLES = False


class DevelopmentConfig(Config):
    DEBUG = True
    AUTO_CREATE_TABLES = True
    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL") or _SQLITE_DEV


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = _database_url("TEST_DATABASE_URL") or _SQLITE_TEST
    # StaticPool (in-memory SQLite) takes no pool arguments
    SQLALCHEMY_ENGINE_OPTIONS = {}
    CONSUMPTION_MAX_RETRIES = 3
    UNIT_OF_WORK_TIMEOUT = None


class ProductionConfig(Config):
    """PostgreSQL behind a bounded pool; refuses to start half-configured."""

    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        # Server-side ceiling; UNIT_OF_WORK_TIMEOUT narrows it per transaction
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = [name for name, value in (
            ("DATABASE_URL", self.SQLALCHEMY_DATABASE_URI),
            ("SECRET_KEY", os.getenv("SECRET_KEY")),
        ) if not value]
        if missing:
            raise RuntimeError(f"Production requires: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
