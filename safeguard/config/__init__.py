"""Configuration components for the accident monitor."""

from .defaults import (
    DEFAULT_CONFIG,
    SYSTEM_CONSTANTS,
    DEFAULT_PATHS,
    PROVIDER_SETTINGS,
    MESSAGE_TEMPLATES
)

__all__ = [
    'DEFAULT_CONFIG',
    'SYSTEM_CONSTANTS',
    'DEFAULT_PATHS',
    'PROVIDER_SETTINGS',
    'MESSAGE_TEMPLATES'
]
