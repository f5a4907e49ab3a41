"""AI session lifecycle."""

from .models import AISession, SessionStatus
from .service import SessionService
from .store import InMemorySessionStore, RedisSessionStore, SessionStore

__all__ = [
    "AISession",
    "InMemorySessionStore",
    "RedisSessionStore",
    "SessionService",
    "SessionStatus",
    "SessionStore",
]
