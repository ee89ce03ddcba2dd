"""
Configuration module.

Provides validated configuration models and the loader that merges
defaults, a JSON file and MEETING_COORD_* environment variables.
"""

from meeting_coord.config.schema import (
    AppConfig,
    CommunicationConfig,
    LoggingConfig,
    SharedMemoryConfig,
    StateRepositoryConfig,
    validate_config,
)
from meeting_coord.config.loader import load_config

__all__ = [
    "AppConfig",
    "CommunicationConfig",
    "LoggingConfig",
    "SharedMemoryConfig",
    "StateRepositoryConfig",
    "validate_config",
    "load_config",
]
