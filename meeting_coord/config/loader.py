"""
Configuration Loader

Consolidates configuration loading into one place:
- Defaults (pydantic models)
- JSON config file
- Environment variables (.env loaded via python-dotenv, never overriding)

Environment variables use the MEETING_COORD_ prefix and a double underscore
between section and field:

    MEETING_COORD_ENVIRONMENT=production
    MEETING_COORD_MEMORY__MAX_HISTORY_LENGTH=50
    MEETING_COORD_LOGGING__LEVEL=DEBUG

Usage:
    from meeting_coord.config import load_config

    config = load_config("coord.config.json")
    print(config.memory.max_history_length)
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from dotenv import load_dotenv
from pydantic import ValidationError as PydanticValidationError

from meeting_coord.config.schema import AppConfig
from meeting_coord.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "MEETING_COORD_"


def _load_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        logger.warning(f"Config file not found: {path}")
        return {}
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in config file {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object")
    return data


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Collect MEETING_COORD_* variables into a nested dict.

    Values stay strings; pydantic coerces them to the field types.
    """
    overrides: Dict[str, Any] = {}
    for name, value in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        path = name[len(ENV_PREFIX):].lower().split("__")
        if not all(path):
            continue
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
            if not isinstance(node, dict):
                break
        else:
            node[path[-1]] = value
    return overrides


def load_config(
    path: Optional[Union[str, Path]] = None,
    env_file: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """
    Load and validate configuration.

    Args:
        path: Optional JSON config file
        env_file: Optional .env file, loaded without overriding set variables
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigurationError: If the merged configuration is invalid
    """
    if env_file is not None:
        load_dotenv(env_file, override=False)

    data: Dict[str, Any] = {}
    if path is not None:
        data = _load_json(Path(path))

    data = _deep_merge(data, _env_overrides(os.environ if environ is None else environ))

    try:
        return AppConfig(**data)
    except PydanticValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration: {e.error_count()} error(s)",
            {"errors": e.errors(include_url=False)},
        ) from e
