"""
Unified Configuration Access Point

    from shared.config import AppConfig, get_settings

    topic = get_settings().kafka.purchase_created_topic
    key = AppConfig.get_home_cache_key(student_id)
"""

from .app_config import AppConfig
from .settings import ApplicationSettings, get_settings, reload_settings

__all__ = ["AppConfig", "ApplicationSettings", "get_settings", "reload_settings"]
