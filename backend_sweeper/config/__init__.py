"""
Configuration management for the sweeper.

Loads and validates settings from environment variables and an optional
.env file. Exposes a single source of truth for process configuration.
"""

from backend_sweeper.config.settings import Settings, get_settings  # noqa: F401

__all__ = ["Settings", "get_settings"]
