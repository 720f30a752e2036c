"""YAML configuration loader.

Supports hierarchical configuration:
1. Built-in defaults (Settings defaults and the bundled model catalog)
2. ~/.modelgate/config.yaml (global user prefs)
3. .modelgate/config.yaml (project-level, searched from cwd upwards)
4. An explicit file named by MODELGATE_MODELS_CONFIG
5. Environment variables / .env (highest precedence, settings only)

A config file may hold these top-level sections::

    settings:            # Settings field names -> values
      slow_response_ms: 5000
    models:              # merged over the bundled catalog, per model key
      openrouter-llama:
        temperature: 0.2
    routing:             # merged over the bundled routing tables
      default_model: openrouter-grok
    aliases:             # extra names accepted for a model key
      fast: groq
    circuit_breakers:    # per-transport circuit breaker overrides
      openrouter:
        failure_threshold: 3
    rate_limits:         # per-bucket outbound quotas
      x-api:
        limit: 15
        window_seconds: 900
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog
import yaml

logger = structlog.get_logger(__name__)

CONFIG_DIR_NAME = ".modelgate"
CONFIG_FILE_NAME = "config.yaml"


def get_global_config_path() -> Path:
    """Get path to global config file."""
    return Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def get_project_config_path(cwd: Path | None = None) -> Path | None:
    """Get path to project config file if it exists.

    Searches from cwd up to root for .modelgate/config.yaml
    """
    if cwd is None:
        cwd = Path.cwd()

    current = cwd.resolve()

    while current != current.parent:
        config_path = current / CONFIG_DIR_NAME / CONFIG_FILE_NAME
        if config_path.exists():
            return config_path
        current = current.parent

    return None


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load YAML file and return dict. Unreadable files count as empty."""
    if not path.exists():
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to load config file", path=str(path), error=str(e))
        return {}
    return content if isinstance(content, dict) else {}


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries.

    Override values take precedence.
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_config(cwd: Path | None = None, explicit_path: Path | None = None) -> dict[str, Any]:
    """Load configuration from all file sources and return the merged dict."""
    config: dict[str, Any] = {}

    global_path = get_global_config_path()
    if global_path.exists():
        config = deep_merge(config, load_yaml_file(global_path))

    project_path = get_project_config_path(cwd)
    if project_path:
        config = deep_merge(config, load_yaml_file(project_path))

    if explicit_path is not None:
        if not explicit_path.exists():
            logger.warning("Explicit config file not found", path=str(explicit_path))
        config = deep_merge(config, load_yaml_file(explicit_path))

    return config


def save_config(config: dict[str, Any], path: Path) -> None:
    """Save configuration to YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)


def init_project_config(project_path: Path) -> Path:
    """Create a minimal project config file if none exists.

    Returns path to the config file.
    """
    config_path = project_path / CONFIG_DIR_NAME / CONFIG_FILE_NAME

    if config_path.exists():
        return config_path

    project_config = {
        "settings": {"slow_response_ms": 3000},
        "routing": {"task_model_map": {"chat": "openrouter-llama"}},
    }
    save_config(project_config, config_path)

    return config_path


class ConfigLoader:
    """Configuration loader with caching.

    Loads configuration from YAML files and provides merged settings.
    """

    def __init__(self, cwd: Path | None = None, explicit_path: Path | None = None):
        self.cwd = cwd or Path.cwd()
        self.explicit_path = explicit_path
        self._config: dict[str, Any] | None = None

    def load(self) -> dict[str, Any]:
        """Load and return merged configuration."""
        if self._config is None:
            self._config = load_config(self.cwd, self.explicit_path)
        return self._config

    def reload(self) -> dict[str, Any]:
        """Reload configuration from disk."""
        self._config = None
        return self.load()

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key (dot notation supported).

        Example: loader.get("routing.default_model") returns "openrouter-llama"
        """
        value: Any = self.load()
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def catalog_overrides(self) -> dict[str, Any]:
        """The `models`, `routing` and `aliases` sections, for merging over the catalog."""
        config = self.load()
        overrides: dict[str, Any] = {}
        for section in ("models", "routing", "aliases"):
            if isinstance(config.get(section), dict):
                overrides[section] = config[section]
        return overrides

    def to_env_vars(self) -> dict[str, str]:
        """Map the `settings` section onto Settings env aliases.

        Unknown keys are skipped with a warning. Lists and dicts are JSON
        encoded, which pydantic-settings decodes for complex fields.
        """
        from modelgate.settings import Settings

        section = self.get("settings", {})
        if not isinstance(section, dict):
            return {}

        env_vars: dict[str, str] = {}
        for field_name, value in section.items():
            field_info = Settings.model_fields.get(field_name)
            if field_info is None:
                logger.warning("Unknown setting in config file", setting=field_name)
                continue
            if value is None:
                continue
            env_name = field_info.alias or field_name.upper()
            if isinstance(value, (list, dict)):
                env_vars[env_name] = json.dumps(value)
            elif isinstance(value, bool):
                env_vars[env_name] = "true" if value else "false"
            else:
                env_vars[env_name] = str(value)

        return env_vars
