"""Configuration models, file loading and logging setup."""

from .config_parser import load_config
from .logging_config import init_logging
from .settings import ResolverConfig, ResponderConfig, Settings

__all__ = ["ResolverConfig", "ResponderConfig", "Settings", "init_logging", "load_config"]
