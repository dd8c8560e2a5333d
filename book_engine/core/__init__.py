"""
Core infrastructure: settings, the asyncpg pool, and FastAPI dependencies.

Usage:
    from book_engine.core import get_settings, get_db_pool, SettingsDep
"""

from book_engine.core.config import Settings, get_settings
from book_engine.core.database import close_db, get_db_pool, init_db
from book_engine.core.dependencies import SettingsDep, get_settings_dependency

__all__ = [
    'Settings',
    'get_settings',
    'init_db',
    'close_db',
    'get_db_pool',
    'get_settings_dependency',
    'SettingsDep',
]
