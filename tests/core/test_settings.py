"""Tests for dbharness.core.settings."""

from pathlib import Path
from unittest.mock import patch

import pytest

from dbharness.core.errors import ConfigurationError
from dbharness.core.settings import HarnessSettings, default_data_directory


class TestHarnessSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("DBHARNESS_CONNECTION_STRING", raising=False)
        settings = HarnessSettings(_env_file=None)
        assert settings.connection_string == ""
        assert settings.service_account == "NT Service\\MSSQL$SQLEXPRESS"
        assert settings.sqlpackage_path == "sqlpackage"
        assert settings.command_timeout == 600

    def test_reads_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DBHARNESS_CONNECTION_STRING", "Data Source=local;Initial Catalog=T")
        monkeypatch.setenv("DBHARNESS_DATA_DIRECTORY", str(tmp_path))
        monkeypatch.setenv("DBHARNESS_COMMAND_TIMEOUT", "30")
        settings = HarnessSettings(_env_file=None)
        assert settings.connection_string == "Data Source=local;Initial Catalog=T"
        assert settings.data_directory == tmp_path
        assert settings.command_timeout == 30

    def test_require_connection_string_when_unset(self):
        settings = HarnessSettings(_env_file=None, connection_string="  ")
        with pytest.raises(ConfigurationError, match="connection string"):
            settings.require_connection_string()

    def test_require_connection_string_when_set(self):
        settings = HarnessSettings(_env_file=None, connection_string="Data Source=local")
        assert settings.require_connection_string() == "Data Source=local"


def test_default_data_directory_is_a_directory():
    assert isinstance(default_data_directory(), Path)


def test_configure_logging_uses_settings():
    settings = HarnessSettings(_env_file=None, log_level="DEBUG", json_logs=True)
    with patch("dbharness.core.settings.configure_logging") as configure:
        settings.configure_logging()
    configure.assert_called_once_with(level="DEBUG", json_format=True)
