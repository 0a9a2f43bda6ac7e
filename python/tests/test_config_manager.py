"""
Tests for configuration loading, validation and logging setup.
"""

import logging

import pytest
import yaml

from config_manager import ConfigManager, ConfigurationError, LoggingConfig, get_config
from database.connection import DatabaseSettings
from log_utils import configure_logging, sanitize_for_logging


def _write_config(tmp_path, data):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return str(path)


class TestConfigManager:

    def test_defaults_without_file(self, config):
        assert config.pipeline.case_number_prefix == "KYC"
        assert config.pipeline.check_types == ["pep", "sanctions", "adverse_media"]
        assert config.registry.timeout_seconds == 8.0
        assert config.registry.min_query_length == 3
        assert config.screening.provider == "static"
        assert config.screening.timeout_seconds == 10.0

    def test_loads_sections(self, tmp_path):
        path = _write_config(tmp_path, {
            "database": {"host": "db.internal", "name": "kyc_test"},
            "pipeline": {"case_number_prefix": "DD", "max_list_limit": 100, "default_list_limit": 20},
            "registry": {"enabled": False},
            "logging": {"level": "DEBUG", "console": False},
        })
        config = ConfigManager(path)

        assert config.database.host == "db.internal"
        assert config.database.name == "kyc_test"
        assert config.pipeline.case_number_prefix == "DD"
        assert config.pipeline.max_list_limit == 100
        assert config.registry.enabled is False
        assert config.registry.min_query_length == 3
        assert config.logging.level == "DEBUG"
        assert config.to_dict()["pipeline"]["case_number_prefix"] == "DD"

    def test_shipped_config_is_valid(self):
        config = ConfigManager()
        assert config.pipeline.check_types

    @pytest.mark.parametrize("section,values,message", [
        ("pipeline", {"check_types": []}, "check_types"),
        ("pipeline", {"check_types": ["pep", "pep"]}, "duplicates"),
        ("pipeline", {"default_list_limit": 600}, "default_list_limit"),
        ("registry", {"timeout_seconds": 0}, "registry.timeout_seconds"),
        ("screening", {"provider": "carrier-pigeon"}, "screening.provider"),
        ("screening", {"provider": "http"}, "endpoint_url"),
        ("logging", {"level": "LOUD"}, "logging.level"),
    ])
    def test_invalid_values(self, tmp_path, section, values, message):
        path = _write_config(tmp_path, {section: values})
        with pytest.raises(ConfigurationError) as exc_info:
            ConfigManager(path)
        assert message in str(exc_info.value)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("pipeline: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            ConfigManager(str(path))

    def test_singleton(self, tmp_path):
        ConfigManager.reset_instance()
        path = _write_config(tmp_path, {})
        try:
            assert get_config(path) is get_config()
        finally:
            ConfigManager.reset_instance()


class TestDatabaseSettings:

    def test_from_config_prefers_environment(self, config, monkeypatch):
        monkeypatch.setenv("DB_HOST", "env-host")
        for name in ("DATABASE_URL", "DB_NAME", "DB_USER"):
            monkeypatch.delenv(name, raising=False)
        settings = DatabaseSettings.from_config(config.database)

        assert settings.host == "env-host"
        assert settings.database == "kyc_database"
        assert settings.get_url().startswith("postgresql+psycopg2://kyc_user:")

    def test_url_takes_precedence(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/kyc.db")
        assert DatabaseSettings.from_env().get_url() == "sqlite:///tmp/kyc.db"


class TestLogging:

    def test_sanitize_removes_control_characters(self):
        assert sanitize_for_logging("Muster\nGmbH\r\nFAKE ENTRY") == "Muster GmbH FAKE ENTRY"
        assert sanitize_for_logging("x" * 600, max_length=10) == "x" * 10
        assert sanitize_for_logging(None) == ""

    def test_configure_logging_writes_file(self, tmp_path):
        log_file = tmp_path / "logs" / "pipeline.log"
        root = configure_logging(LoggingConfig(level="WARNING", file=str(log_file), console=False))
        try:
            logging.getLogger("pipeline.test").warning("registry unavailable")
            for handler in root.handlers:
                handler.flush()
            assert root.level == logging.WARNING
            assert "registry unavailable" in log_file.read_text(encoding="utf-8")
        finally:
            for handler in list(root.handlers):
                handler.close()
                root.removeHandler(handler)
