"""
Configuration file system for skos-browser.

Supports loading configuration from multiple locations, merged with precedence:
1. /etc/skos-browser/config.yaml or config.json (lowest priority)
2. ~/.config/skos-browser/config.yaml or config.json
3. ./skos-browser.yaml or ./skos-browser.json (highest priority)

All found config files are merged, with later files overriding earlier ones.
YAML is checked before JSON at each location. Environment variables
(SKOS_BROWSER_*) have the highest priority.

Example config.yaml:
    endpoint:
      url: https://publications.europa.eu/webapi/rdf/sparql
      timeout: 60
    capabilities_file: ~/.config/skos-browser/eurovoc.yaml
    language:
      preferred: fr
      priorities: [en, de]
    orphans:
      strategy: auto
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from .deprecation import DeprecationRule, load_rules

logger = logging.getLogger(__name__)

# Config filenames for current working directory (project-local config)
CONFIG_FILENAMES = ["config.yaml", "config.json", "skos-browser.yaml", "skos-browser.json"]
# Config filenames for system/user config directories
CONFIG_USER_FILENAMES = ["config.yaml", "config.json"]

ENV_PREFIX = "SKOS_BROWSER_"

DEFAULTS: dict[str, Any] = {
    "endpoint": {
        "url": None,
        "timeout": 60.0,
        "retries": 3,
        "retry_delay": 1.0,
        "headers": {},
    },
    "capabilities_file": None,
    "data_files": [],  # Local RDF files, queried with Oxigraph instead of an endpoint
    "log_level": "WARNING",
    "language": {"preferred": "en", "priorities": []},
    "pagination": {"page_size": 200, "orphan_page_size": 5000},
    "labels": {"threshold": 5, "max_language_iterations": 5},
    "orphans": {"strategy": "auto", "prefilter": False},
    "deprecation": {"rules": None},  # None: owl:deprecated and EU Vocabularies status
}


def _get_config_dirs() -> list[Path]:
    """Get list of config directories to search, in merge order (lowest priority first)."""
    return [
        Path("/etc/skos-browser"),
        Path.home() / ".config" / "skos-browser",
        Path.cwd(),
    ]


def find_config_files() -> list[Path]:
    """Find all existing config files, in merge order (lowest priority first).

    Returns list of found files. At each location, only the first found
    file (YAML before JSON) is included.
    """
    found_files = []
    for dir_path in _get_config_dirs():
        filenames = CONFIG_FILENAMES if dir_path == Path.cwd() else CONFIG_USER_FILENAMES
        for filename in filenames:
            path = dir_path / filename
            if path.exists():
                found_files.append(path)
                break  # Only use first found file at each location
    return found_files


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override into base dict, modifying base in place."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _deep_copy(d: dict) -> dict:
    """Create a deep copy of a nested dict structure."""
    result = {}
    for key, value in d.items():
        if isinstance(value, dict):
            result[key] = _deep_copy(value)
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _load_config_file(path: Path) -> dict[str, Any]:
    """Load a single config file and return its contents.

    Raises:
        yaml.YAMLError: If a YAML config file is malformed.
        json.JSONDecodeError: If a JSON config file is malformed.
    """
    if path.suffix in (".yaml", ".yml"):
        import yaml

        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load config from file(s), merging with defaults.

    Args:
        path: Optional explicit path to config file. If provided, only this
              file is loaded (plus defaults and env vars). If None, all
              standard locations are searched and merged.

    Returns:
        Merged configuration dictionary with defaults applied.
    """
    config = _deep_copy(DEFAULTS)

    paths = [path] if path is not None else find_config_files()
    for config_path in paths:
        if not config_path.exists():
            logger.debug("Config file %s not found", config_path)
            continue
        logger.debug("Loading config from %s", config_path)
        _deep_merge(config, _load_config_file(config_path))

    _apply_env_overrides(config)
    return config


def _apply_env_overrides(config: dict[str, Any]) -> None:
    """Apply environment variable overrides to config.

    Environment variables are named SKOS_BROWSER_<KEY> where nested
    keys use double underscore, e.g., SKOS_BROWSER_ENDPOINT__URL=https://...
    """
    for key, value in os.environ.items():
        if key.startswith(ENV_PREFIX):
            config_key = key[len(ENV_PREFIX) :].lower()
            _set_nested_value(config, config_key, value)


def _set_nested_value(config: dict, key: str, value: str) -> None:
    """Set a nested config value using double-underscore notation.

    e.g., "endpoint__timeout" sets config["endpoint"]["timeout"]
    """
    parts = key.split("__")
    target = config
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = _convert_value(value)


def _convert_value(value: str) -> Any:
    """Convert string value to appropriate type."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    # Comma-separated lists, e.g. SKOS_BROWSER_LANGUAGE__PRIORITIES=en,fr
    if "," in value:
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


def get_config_value(config: dict[str, Any], key: str, default: Any = None) -> Any:
    """Get a config value using dot notation.

    Args:
        config: Configuration dictionary.
        key: Dot-separated key, e.g., "endpoint.url" or "log_level".
        default: Default value if key not found.
    """
    target = config
    for part in key.split("."):
        if isinstance(target, dict) and part in target:
            target = target[part]
        else:
            return default
    return target


class Config:
    """Configuration holder with convenient access methods."""

    def __init__(self, path: Path | None = None):
        """Initialize config, loading from file(s).

        Args:
            path: Optional explicit path to config file. If provided, only
                  this file is loaded. Otherwise, all standard locations
                  are searched and merged.
        """
        if path is not None:
            self._paths = [path] if path.exists() else []
        else:
            self._paths = find_config_files()
        self._data = load_config(path)

    @property
    def path(self) -> Path | None:
        """Return the highest-priority loaded config file, or None."""
        return self._paths[-1] if self._paths else None

    @property
    def paths(self) -> list[Path]:
        return self._paths.copy()

    @property
    def data(self) -> dict[str, Any]:
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Get a config value using dot notation."""
        return get_config_value(self._data, key, default)

    @property
    def endpoint_url(self) -> str | None:
        return self.get("endpoint.url")

    @property
    def timeout(self) -> float:
        return float(self.get("endpoint.timeout", 60.0))

    @property
    def retries(self) -> int:
        return int(self.get("endpoint.retries", 3))

    @property
    def retry_delay(self) -> float:
        return float(self.get("endpoint.retry_delay", 1.0))

    @property
    def headers(self) -> dict[str, str]:
        return dict(self.get("endpoint.headers") or {})

    @property
    def capabilities_file(self) -> Path | None:
        val = self.get("capabilities_file")
        return Path(val).expanduser() if val else None

    @property
    def data_files(self) -> list[Path]:
        val = self.get("data_files") or []
        if isinstance(val, str):
            val = [val]
        return [Path(p).expanduser() for p in val]

    @property
    def log_level(self) -> str:
        return str(self.get("log_level", "WARNING")).upper()

    @property
    def preferred_language(self) -> str:
        value = self.get("language.preferred", "en")
        # YAML parses bare 'no' as boolean False; map it back to Norwegian
        if value is False:
            return "no"
        return str(value) if value else "en"

    @property
    def language_priorities(self) -> list[str] | None:
        """Endpoint language priorities, or None to derive them from the analysis.

        Example config:
            language:
              priorities: [en, fr, de]
        """
        value = self.get("language.priorities")
        if not value:
            return None
        if isinstance(value, str):
            value = [value]
        return ["no" if lang is False else str(lang) for lang in value]

    @property
    def page_size(self) -> int:
        return int(self.get("pagination.page_size", 200))

    @property
    def orphan_page_size(self) -> int:
        return int(self.get("pagination.orphan_page_size", 5000))

    @property
    def label_threshold(self) -> int:
        return int(self.get("labels.threshold", 5))

    @property
    def max_language_iterations(self) -> int:
        return int(self.get("labels.max_language_iterations", 5))

    @property
    def orphan_strategy(self) -> str:
        return str(self.get("orphans.strategy", "auto"))

    @property
    def orphan_prefilter(self) -> bool:
        return bool(self.get("orphans.prefilter", False))

    @property
    def deprecation_rules(self) -> tuple[DeprecationRule, ...]:
        """Deprecation rules; defaults apply unless rules are configured.

        Example config:
            deprecation:
              rules:
                - id: owl-deprecated
                  predicate: http://www.w3.org/2002/07/owl#deprecated
                  condition: equals
                  value: "true"
        """
        return load_rules(self.get("deprecation.rules"))

    def browser_settings(self):
        """Build SchemeBrowser settings from this config."""
        from .browser import BrowserSettings

        return BrowserSettings(
            preferred_language=self.preferred_language,
            language_priorities=self.language_priorities,
            page_size=self.page_size,
            orphan_page_size=self.orphan_page_size,
            label_threshold=self.label_threshold,
            max_language_iterations=self.max_language_iterations,
            orphan_strategy=self.orphan_strategy,
            orphan_prefilter=self.orphan_prefilter,
            deprecation_rules=self.deprecation_rules,
        )
