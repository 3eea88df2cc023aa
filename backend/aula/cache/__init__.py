"""Client-side caches kept in step with local storage."""

from .preferences_cache import UserPreferencesCache
from .session_cache import SessionCache, SessionSnapshot

__all__ = ["SessionCache", "SessionSnapshot", "UserPreferencesCache"]
