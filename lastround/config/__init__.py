"""Configuration for the Last Round cup service."""

from lastround.config.cup import CupConfig
from lastround.config.settings import Settings, get_settings

__all__ = ["CupConfig", "Settings", "get_settings"]
