"""Configuration loading: YAML file -> env vars -> Pydantic defaults."""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ValidationError

from testflow_engine.utils.exceptions import ConfigurationError


class ExecutionPreferences(BaseModel):
    parallel_execution: bool = True
    stop_on_error: bool = True
    server_cookie_handling: bool = False
    retry_count: int = 0
    retry_delay: float = 0.5
    timeout: float = 30.0
    proxy_url: str | None = None
    max_workers: int = 8


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    endpoints_dir: str = "endpoints"


class Settings(BaseModel):
    execution: ExecutionPreferences = ExecutionPreferences()
    logging: LoggingConfig = LoggingConfig()
    server: ServerConfig = ServerConfig()


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


_ENV_MAP: dict[str, tuple[str, str, type]] = {
    "TFE_PARALLEL_EXECUTION": ("execution", "parallel_execution", bool),
    "TFE_STOP_ON_ERROR": ("execution", "stop_on_error", bool),
    "TFE_SERVER_COOKIE_HANDLING": ("execution", "server_cookie_handling", bool),
    "TFE_RETRY_COUNT": ("execution", "retry_count", int),
    "TFE_RETRY_DELAY": ("execution", "retry_delay", float),
    "TFE_TIMEOUT": ("execution", "timeout", float),
    "TFE_PROXY_URL": ("execution", "proxy_url", str),
    "TFE_LOG_LEVEL": ("logging", "level", str),
}


def load_settings(config_path: str | None = None) -> Settings:
    """Load settings: YAML file -> env var overrides -> Pydantic defaults."""
    yaml_data: dict = {}

    # 1. Resolve config file path
    path = _resolve_config_path(config_path)
    if path and path.is_file():
        with open(path) as f:
            try:
                yaml_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid config file {path}: {e}") from e

    # 2. Build settings from YAML (or defaults)
    try:
        settings = Settings.model_validate(yaml_data) if yaml_data else Settings()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings in {path}: {e}") from e

    # 3. Override with env vars
    overrides: dict[str, dict] = {}
    for env_key, (section, field_name, field_type) in _ENV_MAP.items():
        val = os.environ.get(env_key)
        if val is None:
            continue
        try:
            overrides.setdefault(section, {})[field_name] = _parse_bool(val) if field_type is bool else field_type(val)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {env_key}: {e}") from e

    if overrides:
        merged = settings.model_dump()
        for section, values in overrides.items():
            merged[section].update(values)
        settings = Settings.model_validate(merged)

    return settings


def _resolve_config_path(explicit_path: str | None) -> Path | None:
    if explicit_path:
        return Path(explicit_path)

    env_path = os.environ.get("TFE_CONFIG_FILE")
    if env_path:
        return Path(env_path)

    # Default: config/config.yaml relative to package
    pkg_dir = Path(__file__).parent
    default = pkg_dir / "config.yaml"
    if default.is_file():
        return default

    return None
