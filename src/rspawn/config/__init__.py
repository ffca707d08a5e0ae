"""Configuration management for rspawn.

Loads and validates YAML-based configuration with Pydantic models.
Supports environment variable overrides under the ``RSPAWN_`` prefix.
"""

from rspawn.config.settings import Settings, load_settings

__all__ = ["Settings", "load_settings"]
