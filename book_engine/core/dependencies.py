"""
FastAPI dependencies for the Book Assignment Engine.

Routes receive Settings through SettingsDep rather than calling get_settings()
directly, so tests can swap them:

    app.dependency_overrides[get_settings_dependency] = lambda: test_settings
"""

from typing import Annotated

from fastapi import Depends

from book_engine.core.config import Settings, get_settings


def get_settings_dependency() -> Settings:
    """Cached service settings, overridable through dependency_overrides."""
    return get_settings()


# Usage: async def endpoint(settings: SettingsDep)
SettingsDep = Annotated[Settings, Depends(get_settings_dependency)]
