"""Build configuration."""

from .settings import BuildSettings, get_setting, load_settings


__all__ = ["BuildSettings", "get_setting", "load_settings"]
