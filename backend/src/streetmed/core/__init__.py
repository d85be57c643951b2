from streetmed.core.config import settings
from streetmed.core.database import Base, async_session_maker, engine, get_db
from streetmed.core.redis import close_redis, get_redis, ping_redis

__all__ = [
    "settings",
    "Base",
    "engine",
    "async_session_maker",
    "get_db",
    "get_redis",
    "close_redis",
    "ping_redis",
]
