"""In-memory caches shared across backend services."""

from .session_cache import GuidedSessionCache, guided_sessions

__all__ = ["GuidedSessionCache", "guided_sessions"]
