"""Configuration loading."""

from recurring_tasks.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
