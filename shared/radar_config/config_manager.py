"""
Radar configuration.

Base YAML files from the config directory are merged in order, then
`environments/<ENVIRONMENT>.yaml` is merged on top, then ${VAR} references
are expanded from the process environment.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml

logger = logging.getLogger(__name__)

_MISSING = object()

BASE_FILES = ("services.yaml", "limits.yaml", "algorithms.yaml")


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return base updated with override; nested mappings merge key by key."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def expand_env(value: Any, path: str = "") -> Any:
    if isinstance(value, dict):
        return {key: expand_env(item, f"{path}.{key}" if path else key) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env(item, path) for item in value]
    if isinstance(value, str):
        expanded = os.path.expandvars(value)
        if "${" in expanded:
            logger.warning(f"Unresolved environment reference in '{path}': {expanded}")
        return expanded
    return value


def _default_config_dir() -> Path:
    env_dir = os.getenv("RADAR_CONFIG_DIR")
    if env_dir:
        return Path(env_dir)
    if Path("/app/config").exists():
        return Path("/app/config")
    return Path(__file__).resolve().parents[2] / "config"


class ConfigManager:
    """Read-only view over the merged YAML configuration."""

    def __init__(self, config_dir: Optional[Path] = None, environment: Optional[str] = None):
        self.config_dir = Path(config_dir) if config_dir else _default_config_dir()
        self.environment = environment or os.getenv("ENVIRONMENT", "development")
        self._values: Dict[str, Any] = {}
        self._load_config()

    def _read_yaml(self, path: Path) -> Dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                content = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading {path}: {e}")
            raise

        if not isinstance(content, dict):
            raise ValueError(f"Config file {path} must contain a mapping at the top level")
        return content

    def _load_config(self) -> None:
        logger.info(f"Loading configuration from {self.config_dir} ({self.environment})")

        merged: Dict[str, Any] = {}
        for name in BASE_FILES:
            path = self.config_dir / name
            if not path.exists():
                logger.warning(f"Config file not found: {path}")
                continue
            merged = deep_merge(merged, self._read_yaml(path))

        override_path = self.config_dir / "environments" / f"{self.environment}.yaml"
        if override_path.exists():
            merged = deep_merge(merged, self._read_yaml(override_path))
            logger.info(f"Applied {self.environment} environment overrides")

        self._values = expand_env(merged)

    def get(self, key_path: str, default: Any = _MISSING) -> Any:
        """
        Look up a dot-separated key such as 'algorithms.fusion.update_threshold'.

        Without a default a missing key raises KeyError; an explicit default,
        None included, is returned instead.
        """
        node: Any = self._values
        for part in key_path.split("."):
            if not isinstance(node, dict) or part not in node:
                if default is _MISSING:
                    raise KeyError(f"Configuration key '{key_path}' not found")
                return default
            node = node[part]
        return node

    def has(self, key_path: str) -> bool:
        try:
            self.get(key_path)
        except KeyError:
            return False
        return True

    def validate_required_keys(self, required_keys: Iterable[str]) -> None:
        missing = [key for key in required_keys if not self.has(key)]
        if missing:
            raise KeyError(f"Missing required configuration keys: {missing}")

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._values)


_config_instance: Optional[ConfigManager] = None


def get_config(config_dir: Optional[Path] = None, environment: Optional[str] = None) -> ConfigManager:
    """Process-wide configuration; arguments only apply to the first call."""
    global _config_instance
    if _config_instance is None:
        _config_instance = ConfigManager(config_dir, environment)
    return _config_instance


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() reloads (tests)."""
    global _config_instance
    _config_instance = None
