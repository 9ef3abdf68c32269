from .config_manager import ConfigManager, get_config, reset_config

__all__ = ["ConfigManager", "get_config", "reset_config"]
