"""
Shared utilities: logging, configuration, resilience
"""
from .logger import setup_logger
from .config import Config, ConfigDefaults, load_config

__all__ = ["setup_logger", "Config", "ConfigDefaults", "load_config"]
