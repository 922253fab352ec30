"""Configuration module: exports Settings and load_config."""

from ragdesk.config.loader import load_config
from ragdesk.config.settings import Settings

__all__ = ["Settings", "load_config"]
