"""Configuration package for parking core."""
from .settings import MissingRegisterPolicy, Settings, get_settings

__all__ = ["MissingRegisterPolicy", "Settings", "get_settings"]
