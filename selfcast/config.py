"""Configuration loading for Selfcast.

Configuration lives in ``selfcast.yaml`` at the project root. Missing keys
fall back to DEFAULT_CONFIG; a few values can be overridden from the
environment so secrets never need to be committed.

Key functions:
- load_config: Load selfcast.yaml with defaults and environment overrides.
- resolve_dir: Resolve a configured directory against the project root.
- get_secret: The token signing secret.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

CONFIG_FILENAME = "selfcast.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "data_dir": "data",
    "output_dir": "output",
    "templates_dir": "templates",
    "host": "127.0.0.1",
    "port": 4000,
    "ws_port": 4001,
    "base_url": "",
    "render_mode": "local",
    "render_url": "",
    "regeneration_timeout": 10.0,
    "fetch_timeout": 5.0,
    "cache_bypass_fetches": 3,
    "token_max_age": 86400,
    "log_level": "INFO",
}

_ENV_OVERRIDES = {
    "SELFCAST_BASE_URL": "base_url",
    "SELFCAST_RENDER_URL": "render_url",
    "SELFCAST_LOG_LEVEL": "log_level",
}


def load_config(project_root: Path) -> dict[str, Any]:
    """Load site configuration from selfcast.yaml.

    Args:
        project_root: Root directory of the project.

    Returns:
        Dictionary containing configuration values, with defaults applied
        and environment overrides on top.

    Raises:
        ConfigError: If the file exists but is not valid YAML.
    """
    config_path = project_root / CONFIG_FILENAME
    config = DEFAULT_CONFIG.copy()
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid {CONFIG_FILENAME}: {exc}") from exc
        if isinstance(loaded, dict):
            config.update(loaded)
    for env_name, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            config[key] = value
    config["project_root"] = project_root
    return config


def resolve_dir(config: dict[str, Any], key: str) -> Path:
    """Resolve a configured directory (e.g. ``data_dir``) to an absolute path."""
    root = Path(config.get("project_root") or Path.cwd())
    value = Path(str(config.get(key) or DEFAULT_CONFIG[key]))
    return value if value.is_absolute() else root / value


def get_secret(config: dict[str, Any]) -> str:
    """Return the token signing secret.

    ``SELFCAST_SECRET`` wins over ``secret_key`` in the config file.

    Raises:
        ConfigError: If no secret is configured.
    """
    secret = os.environ.get("SELFCAST_SECRET") or config.get("secret_key")
    if not secret:
        raise ConfigError(
            "No signing secret configured; set SELFCAST_SECRET or secret_key in selfcast.yaml"
        )
    return str(secret)
