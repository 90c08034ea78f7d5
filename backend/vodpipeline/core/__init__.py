"""Core module for configuration and utilities."""

from vodpipeline.core.config import Settings, get_settings
from vodpipeline.core.database import Base, get_db

__all__ = [
    "Settings",
    "get_settings",
    "Base",
    "get_db",
]
