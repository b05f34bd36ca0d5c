"""Configuration management for termbroker.

Loads and validates YAML-based configuration with Pydantic models.
Supports environment variable overrides for the listening port and
the default shell.
"""

from termbroker.config.settings import Settings, load_settings

__all__ = ["Settings", "load_settings"]
