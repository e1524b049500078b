"""Shared helpers for loading crawler configuration files."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

__all__ = [
    "find_task_config",
    "load_config",
    "resolve_artifact_path",
    "select_task_value",
]


def load_config(path: Optional[str]) -> Dict[str, Any]:
    """Load crawler configuration from *path*.

    When *path* is falsy or does not exist, an empty configuration dictionary is
    returned so that callers can rely on default values.
    """

    if not path:
        logger.info("No configuration file specified; using defaults")
        return {}
    if not os.path.exists(path):
        logger.info("Configuration file '%s' not found; using defaults", path)
        return {}
    logger.info("Loading configuration from %s", path)
    with open(path, "r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError("Configuration file must contain a JSON object")
    return data


def find_task_config(config: Dict[str, Any], task_name: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return the entry of ``config["tasks"]`` named *task_name*.

    Without a name the first task is used when exactly one is configured.
    """

    tasks = config.get("tasks")
    if not isinstance(tasks, list):
        return None
    candidates = [task for task in tasks if isinstance(task, dict)]
    if task_name is None:
        return candidates[0] if len(candidates) == 1 else None
    for task in candidates:
        if task.get("name") == task_name:
            return task
    raise ValueError(f"Task '{task_name}' is not configured")


def select_task_value(
    cli_value: Optional[Any],
    task_config: Optional[Dict[str, Any]],
    global_config: Optional[Dict[str, Any]],
    key: str,
    default: Optional[Any] = None,
) -> Optional[Any]:
    """Resolve configuration precedence for a task-level setting."""

    if cli_value is not None:
        return cli_value
    if task_config and key in task_config:
        return task_config[key]
    if global_config and key in global_config:
        return global_config[key]
    return default


def resolve_artifact_path(value: Optional[str], artifact_dir: str) -> Optional[str]:
    """Resolve *value* relative to the artifact directory unless absolute."""

    if value is None:
        return None
    stripped = value.strip()
    if not stripped:
        return None
    if os.path.isabs(stripped):
        return stripped
    return os.path.join(artifact_dir, stripped)
