"""Configuration module for SupportBot."""

from supportbot.config.loader import load_config, save_config, get_config_path
from supportbot.config.schema import Config

__all__ = ["Config", "load_config", "save_config", "get_config_path"]
