"""Configuration classes."""

import pytest

from fabstock.config import ProductionConfig, config


def test_production_refuses_to_start_without_database_and_secret(monkeypatch):
    monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
    monkeypatch.delenv("SECRET_KEY", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL, SECRET_KEY"):
        ProductionConfig()


def test_production_accepts_complete_environment(monkeypatch):
    monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", "postgresql://db/fabstock")
    monkeypatch.setenv("SECRET_KEY", "s3cret")
    assert ProductionConfig().SQLALCHEMY_ENGINE_OPTIONS["pool_pre_ping"] is True


def test_testing_config_defaults(app):
    assert config["testing"].TESTING is True
    assert config["default"] is config["development"]
    assert app.config["CONSUMPTION_MAX_RETRIES"] == 3
    assert app.config["UNIT_OF_WORK_TIMEOUT"] is None
