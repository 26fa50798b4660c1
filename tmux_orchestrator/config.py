"""Config loading/saving, merging, paths.

Configuration is a global JSON file with optional project-local overrides
(``.tmux-orchestrator.json`` in the project directory), merged and then
converted into an ``OrchestratorConfig`` with dacite.
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any

import dacite

from .exceptions import (
    ConfigLoadError,
    ConfigSaveError,
    ConfigValidationError,
    record_error,
)
from .models import DACITE_CONFIG, OrchestratorConfig, model_to_dict

logger = logging.getLogger(__name__)

# Configuration file locations
CONFIG_DIR = Path.home() / ".config" / "tmux-orchestrator"
GLOBAL_CONFIG_PATH = CONFIG_DIR / "config.json"
PROJECT_CONFIG_FILENAME = ".tmux-orchestrator.json"


def merge_configs(global_config: dict, project_config: dict) -> dict:
    """
    Merge project config into global config.

    Rules:
    - Scalars: project overrides global
    - Lists: project replaces global (no merge)
    - Dicts: recursive merge
    - None in project: removes key from global

    Args:
        global_config: The base configuration dictionary
        project_config: The override configuration dictionary

    Returns:
        Merged configuration dictionary
    """
    result = copy.deepcopy(global_config)

    for key, value in project_config.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_configs(result[key], value)
        else:
            result[key] = value

    return result


def _read_json(path: Path, label: str) -> dict[str, Any]:
    """Read a JSON object from disk, raising ConfigLoadError on failure."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.error("Invalid JSON in %s: %s", label, e)
        record_error(e)
        raise ConfigLoadError(
            f"Invalid JSON in {label} at line {e.lineno}",
            file_path=str(path),
            context={"line": e.lineno, "column": e.colno},
            cause=e,
        ) from e
    except OSError as e:
        logger.error("Failed to read %s: %s", label, e)
        record_error(e)
        raise ConfigLoadError(f"Failed to read {label}", file_path=str(path), cause=e) from e

    if not isinstance(data, dict):
        raise ConfigLoadError(f"{label} must contain a JSON object", file_path=str(path))
    logger.debug("Loaded %s from %s", label, path)
    return data


def _write_json(path: Path, data: dict[str, Any], label: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        logger.debug("Saved %s to %s", label, path)
    except OSError as e:
        logger.error("Failed to write %s: %s", label, e)
        record_error(e)
        raise ConfigSaveError(f"Failed to write {label}", file_path=str(path), cause=e) from e
    except (TypeError, ValueError) as e:
        logger.error("Failed to serialize %s to JSON: %s", label, e)
        record_error(e)
        raise ConfigSaveError(
            f"Failed to serialize {label} to JSON", file_path=str(path), cause=e
        ) from e


def config_from_dict(data: dict[str, Any]) -> OrchestratorConfig:
    """Build and validate an OrchestratorConfig from plain data.

    Raises:
        ConfigValidationError: If the data does not fit the schema.
    """
    try:
        config = dacite.from_dict(data_class=OrchestratorConfig, data=data, config=DACITE_CONFIG)
    except (dacite.DaciteError, ValueError) as e:
        logger.error("Config schema validation failed: %s", e)
        record_error(e)
        raise ConfigValidationError(f"Config schema validation failed: {e}", cause=e) from e
    validate_config(config)
    return config


def validate_config(config: OrchestratorConfig) -> None:
    """Check value ranges dacite cannot express.

    Raises:
        ConfigValidationError: On the first out-of-range value.
    """
    positive = {
        "tmux.command_timeout": config.tmux.command_timeout,
        "tmux.history_limit": config.tmux.history_limit,
        "watcher.queue_size": config.watcher.queue_size,
        "watcher.read_chunk_bytes": config.watcher.read_chunk_bytes,
        "watcher.reopen_attempts": config.watcher.reopen_attempts,
        "classifier.ring_capacity": config.classifier.ring_capacity,
        "coordinator.window_seconds": config.coordinator.window_seconds,
        "coordinator.queue_size": config.coordinator.queue_size,
        "coordinator.sweep_interval_seconds": config.coordinator.sweep_interval_seconds,
        "coordinator.delivery_timeout_seconds": config.coordinator.delivery_timeout_seconds,
        "coordinator.history_size": config.coordinator.history_size,
        "persistence.snapshot_interval_seconds": config.persistence.snapshot_interval_seconds,
        "monitor.poll_interval_seconds": config.monitor.poll_interval_seconds,
    }
    non_negative = {
        "tmux.grace_timeout": config.tmux.grace_timeout,
        "watcher.debounce_ms": config.watcher.debounce_ms,
        "coordinator.debounce_seconds": config.coordinator.debounce_seconds,
        "persistence.save_debounce_seconds": config.persistence.save_debounce_seconds,
        "log.max_bytes": config.log.max_bytes,
        "log.backup_count": config.log.backup_count,
    }
    for name, value in positive.items():
        if value <= 0:
            raise ConfigValidationError(f"{name} must be positive", field=name, value=value)
    for name, value in non_negative.items():
        if value < 0:
            raise ConfigValidationError(f"{name} must not be negative", field=name, value=value)

    if not isinstance(logging.getLevelName(config.log.level.upper()), int):
        raise ConfigValidationError("Unknown log level", field="log.level", value=config.log.level)

    rule_ids = [rule.rule_id for rule in config.coordinator.rules]
    duplicates = {rid for rid in rule_ids if rule_ids.count(rid) > 1}
    if duplicates:
        raise ConfigValidationError(
            "Duplicate trigger rule ids", field="coordinator.rules", value=sorted(duplicates)
        )


def load_global_config() -> OrchestratorConfig:
    """
    Load global configuration.

    Loads from ~/.config/tmux-orchestrator/config.json if it exists,
    otherwise returns a default OrchestratorConfig.

    Raises:
        ConfigLoadError: If the config file exists but cannot be parsed.
        ConfigValidationError: If the config does not fit the schema.
    """
    if not GLOBAL_CONFIG_PATH.exists():
        logger.debug("No global config found, using defaults")
        return OrchestratorConfig()
    return config_from_dict(_read_json(GLOBAL_CONFIG_PATH, "global config"))


def save_global_config(config: OrchestratorConfig) -> None:
    """
    Save global configuration, creating the config directory if needed.

    Raises:
        ConfigSaveError: If the config cannot be saved.
    """
    _write_json(GLOBAL_CONFIG_PATH, model_to_dict(config), "global config")


def load_project_config(project_path: str | Path) -> dict:
    """
    Load project-local configuration overrides.

    Returns:
        Dictionary of overrides, or empty dict if no config exists

    Raises:
        ConfigLoadError: If the config file exists but cannot be parsed.
    """
    config_path = get_project_config_path(project_path)
    if not config_path.exists():
        logger.debug("No project config found at %s", config_path)
        return {}
    return _read_json(config_path, "project config")


def save_project_config(project_path: str | Path, config: dict) -> None:
    """
    Save project-local configuration overrides.

    Raises:
        ConfigSaveError: If the config cannot be saved.
    """
    _write_json(get_project_config_path(project_path), config, "project config")


def load_merged_config(project_path: str | Path | None = None) -> OrchestratorConfig:
    """
    Load configuration with project-local overrides merged.

    Args:
        project_path: Optional path to project for local overrides

    Raises:
        ConfigLoadError: If configuration files cannot be read.
        ConfigValidationError: If the merged config is invalid.
    """
    if GLOBAL_CONFIG_PATH.exists():
        global_data = _read_json(GLOBAL_CONFIG_PATH, "global config")
    else:
        global_data = {}
        logger.debug("Using empty global config for merging")

    if project_path is not None:
        merged_data = merge_configs(global_data, load_project_config(project_path))
        logger.debug("Merged project config from %s", project_path)
    else:
        merged_data = global_data

    return config_from_dict(merged_data)


def get_global_config_path() -> Path:
    """Return the path to the global config file."""
    return GLOBAL_CONFIG_PATH


def get_config_dir() -> Path:
    """Return the path to the config directory."""
    return CONFIG_DIR


def get_project_config_path(project_path: str | Path) -> Path:
    """Return the path to a project's local config file."""
    return Path(project_path) / PROJECT_CONFIG_FILENAME
