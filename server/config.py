"""
RealmOps Relay - Configuration Manager
=======================================
Handles loading and saving of application configuration from two sources:

1. config.yaml  - Non-sensitive settings (listen address, relay tunables,
                  Docker endpoint, server catalog location)
2. .env         - Secrets (token verification key)

Usage:
    config = ConfigManager(project_dir="/path/to/realmops-relay")
    settings = config.load()                   # Returns merged config dict
    config.update({"relay": {"idle_timeout": 60}})
    secret = config.get_secret("RELAY_JWT_SECRET")
"""

import os
import yaml
from dotenv import dotenv_values


# Default configuration values used when config.yaml is missing or incomplete.
DEFAULTS = {
    "web": {
        "port": 8080,
        "host": "0.0.0.0",
    },
    "relay": {
        "console_history": 200,
        "log_history": 500,
        "idle_timeout": 30,
        "console_retry_delay": 1.0,
        "console_max_retries": 5,
        "log_retry_interval": 2.0,
        "adapter_backlog": 1000,
        "command_history": 50,
        "connect_timeout": 10,
        "log_tail": 100,
    },
    "docker": {
        # None means "use DOCKER_HOST / the platform default socket"
        "base_url": None,
    },
    "catalog": {
        "path": "servers.yaml",
    },
}

# Sections written back to config.yaml; anything else is dropped on save.
SECTIONS = ["web", "relay", "docker", "catalog"]

# Secret names read from the environment or .env.
JWT_SECRET_KEY = "RELAY_JWT_SECRET"


class ConfigManager:
    """
    Unified configuration manager.

    Attributes:
        project_dir: Root directory of the project.
        config_path: Full path to config.yaml.
        env_path:    Full path to .env file.
    """

    def __init__(self, project_dir: str):
        self.project_dir = project_dir
        self.config_path = os.path.join(project_dir, "config.yaml")
        self.env_path = os.path.join(project_dir, ".env")

    def load(self) -> dict:
        """
        Load and merge configuration from config.yaml with defaults.

        Missing values are filled from DEFAULTS, so callers always see a
        complete configuration even if the YAML file is partial.

        Returns:
            A dictionary containing the full configuration.
        """
        config = _deep_copy(DEFAULTS)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    user_config = yaml.safe_load(f) or {}
                _deep_merge(config, user_config)
            except (yaml.YAMLError, OSError) as e:
                # Corrupted config: keep defaults, let the caller report it
                config["_config_error"] = str(e)

        return config

    def save(self, config: dict) -> None:
        """
        Save configuration back to config.yaml.

        Only the known sections are written; internal keys (prefixed with
        '_') never reach the file.
        """
        clean = {}
        for section in SECTIONS:
            if section in config:
                clean[section] = config[section]

        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.dump(
                clean,
                f,
                default_flow_style=False,
                allow_unicode=True,
                sort_keys=False,
            )

    def update(self, updates: dict) -> dict:
        """
        Partially update configuration and save.

        Args:
            updates: Dictionary of settings to update (can be partial).

        Returns:
            The full updated configuration.
        """
        config = self.load()
        _deep_merge(config, updates)
        self.save(config)
        return config

    def resolve_path(self, path: str) -> str:
        """Resolve a config-relative path against the project directory."""
        if os.path.isabs(path):
            return path
        return os.path.join(self.project_dir, path)

    # -- Secrets --------------------------------------------------------------

    def get_secret(self, key_name: str) -> str | None:
        """
        Look up a secret, preferring the process environment over .env.

        Returns:
            The value, or None if it is unset or empty.
        """
        value = os.environ.get(key_name)
        if value:
            return value
        env_values = dotenv_values(self.env_path) if os.path.exists(self.env_path) else {}
        return env_values.get(key_name) or None


# -- Helper Functions ---------------------------------------------------------

def _deep_copy(d: dict) -> dict:
    """Create a deep copy of a nested dictionary."""
    result = {}
    for key, value in d.items():
        if isinstance(value, dict):
            result[key] = _deep_copy(value)
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _deep_merge(base: dict, override: dict) -> None:
    """
    Recursively merge 'override' into 'base' (in-place).

    For nested dicts, values are merged recursively.
    For all other types, override replaces base.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
