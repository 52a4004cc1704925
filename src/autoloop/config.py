"""YAML configuration for autoloop projects."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

DEFAULT_CONFIG_NAME = "autoloop.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "description": "",
        "repo_root": ".",
    },
    "tasks": {
        "max_attempts": 3,
        "validation_timeout": 120,
        "commit_template": "{prefix}({task_id}): {summary}",
    },
    "loop": {
        "max_iterations": None,
        "completion_promise": None,
    },
    "paths": {
        "plan": "prd.json",
        "progress_log": "autoloop-progress.md",
        "state_dir": ".autoloop",
        "agents": "AGENTS.md",
    },
}


class ConfigError(ValueError):
    """Raised when the configuration file cannot be used."""


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(config_path: Path | str) -> Dict[str, Any]:
    """Load YAML configuration layered over the defaults.

    A missing file yields the defaults.
    """
    path = Path(config_path)
    config = copy_config_template()
    if not path.exists():
        return config
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {path}: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return _merge(config, data)


def write_config(config_path: Path | str, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def resolve_repo_root(config: Mapping[str, Any], config_path: Path | str) -> Path:
    """Resolve the repository root relative to the configuration file."""
    project_cfg = config.get("project") or {}
    repo_root = Path(str(project_cfg.get("repo_root") or "."))
    if not repo_root.is_absolute():
        repo_root = (Path(config_path).resolve().parent / repo_root).resolve()
    return repo_root


def resolve_path(config: Mapping[str, Any], key: str, repo_root: Path) -> Path:
    """Return ``paths.<key>`` resolved against ``repo_root``."""
    paths_cfg = config.get("paths") or {}
    value = paths_cfg.get(key) or DEFAULT_CONFIG_TEMPLATE["paths"][key]
    candidate = Path(str(value))
    if not candidate.is_absolute():
        candidate = repo_root / candidate
    return candidate


def task_settings(config: Mapping[str, Any]) -> Dict[str, Any]:
    """Return validated task settings, falling back to defaults."""
    defaults = DEFAULT_CONFIG_TEMPLATE["tasks"]
    tasks_cfg = config.get("tasks") or {}
    max_attempts = tasks_cfg.get("max_attempts", defaults["max_attempts"])
    if not isinstance(max_attempts, int) or max_attempts < 1:
        raise ConfigError("tasks.max_attempts must be a positive integer.")
    timeout = tasks_cfg.get("validation_timeout", defaults["validation_timeout"])
    if not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigError("tasks.validation_timeout must be a positive number of seconds.")
    template = str(tasks_cfg.get("commit_template") or defaults["commit_template"])
    return {
        "max_attempts": max_attempts,
        "validation_timeout": float(timeout),
        "commit_template": template,
    }


__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "copy_config_template",
    "load_config",
    "resolve_path",
    "resolve_repo_root",
    "task_settings",
    "write_config",
]
