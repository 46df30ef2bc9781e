"""Tests for config/settings.py."""

import pytest
import yaml

from testflow_engine.config.settings import Settings, _ENV_MAP, load_settings
from testflow_engine.utils.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(_ENV_MAP) + ["TFE_CONFIG_FILE"]:
        monkeypatch.delenv(key, raising=False)


def test_defaults_when_no_file_or_env(tmp_path):
    settings = load_settings(config_path=str(tmp_path / "nonexistent.yaml"))
    assert settings == Settings()
    assert settings.execution.parallel_execution is True
    assert settings.execution.stop_on_error is True
    assert settings.execution.server_cookie_handling is False
    assert settings.execution.proxy_url is None
    assert settings.logging.level == "INFO"
    assert settings.server.port == 8000


def test_packaged_config_matches_defaults():
    assert load_settings() == Settings()


def test_yaml_file_overrides_defaults(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text(yaml.dump({
        "execution": {"parallel_execution": False, "retry_count": 2, "proxy_url": "http://proxy.local/forward"},
        "server": {"port": 9001},
    }))

    settings = load_settings(config_path=str(config_file))
    assert settings.execution.parallel_execution is False
    assert settings.execution.retry_count == 2
    assert settings.execution.proxy_url == "http://proxy.local/forward"
    assert settings.server.port == 9001
    # Unset fields keep defaults
    assert settings.execution.stop_on_error is True
    assert settings.server.host == "0.0.0.0"


def test_env_vars_override_yaml(tmp_path, monkeypatch):
    config_file = tmp_path / "config.yaml"
    config_file.write_text(yaml.dump({"execution": {"stop_on_error": True, "timeout": 5}}))
    monkeypatch.setenv("TFE_STOP_ON_ERROR", "false")
    monkeypatch.setenv("TFE_TIMEOUT", "2.5")
    monkeypatch.setenv("TFE_LOG_LEVEL", "DEBUG")

    settings = load_settings(config_path=str(config_file))
    assert settings.execution.stop_on_error is False
    assert settings.execution.timeout == 2.5
    assert settings.logging.level == "DEBUG"


def test_config_file_from_env(tmp_path, monkeypatch):
    config_file = tmp_path / "custom.yaml"
    config_file.write_text(yaml.dump({"execution": {"server_cookie_handling": True}}))
    monkeypatch.setenv("TFE_CONFIG_FILE", str(config_file))

    settings = load_settings()
    assert settings.execution.server_cookie_handling is True


@pytest.mark.parametrize("key, value", [("TFE_PARALLEL_EXECUTION", "maybe"), ("TFE_RETRY_COUNT", "lots")])
def test_invalid_env_value(tmp_path, monkeypatch, key, value):
    monkeypatch.setenv(key, value)
    with pytest.raises(ConfigurationError, match=key):
        load_settings(config_path=str(tmp_path / "nonexistent.yaml"))


def test_invalid_yaml(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("execution: [unclosed")
    with pytest.raises(ConfigurationError, match="Invalid config file"):
        load_settings(config_path=str(config_file))


def test_invalid_setting_type(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text(yaml.dump({"execution": {"retry_count": "many"}}))
    with pytest.raises(ConfigurationError, match="Invalid settings"):
        load_settings(config_path=str(config_file))
