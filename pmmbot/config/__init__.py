"""
Configuration package: environment loading and validation.
"""

from pmmbot.config.config import ConfigError, Settings

__all__ = ["ConfigError", "Settings"]
