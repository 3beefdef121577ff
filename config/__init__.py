from .config_loader import config
from .settings import Settings, load_settings

__all__ = ['config', 'Settings', 'load_settings']
