"""API dependencies for caller identity, database and service access.

Authentication happens upstream: the gateway forwards the verified caller as
X-User-Id and X-User-Role headers.
"""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from streetmed.core.config import settings
from streetmed.core.database import get_db
from streetmed.core.redis import get_redis
from streetmed.models.base import UserRole
from streetmed.services.redis_service import RedisService


async def get_current_user_id(
    x_user_id: Annotated[int | None, Header()] = None,
) -> int:
    """Get the calling user's ID.

    Raises:
        HTTPException: If the identity header is missing
    """
    if x_user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id


async def get_optional_user_id(
    x_user_id: Annotated[int | None, Header()] = None,
) -> int | None:
    """Caller ID, or None for guests."""
    return x_user_id


async def get_current_admin_id(
    user_id: Annotated[int, Depends(get_current_user_id)],
    x_user_role: Annotated[str | None, Header()] = None,
) -> int:
    """Get the calling user's ID and verify they are an admin.

    Raises:
        HTTPException: If the caller is not an admin
    """
    if (x_user_role or "").upper() != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return user_id


async def get_user_role(
    x_user_role: Annotated[str | None, Header()] = None,
) -> str | None:
    """Caller role, upper-cased; None when the gateway sent none."""
    return x_user_role.upper() if x_user_role else None


async def get_is_admin(
    x_user_role: Annotated[str | None, Header()] = None,
) -> bool:
    return (x_user_role or "").upper() == UserRole.ADMIN


def get_client_ip(request: Request) -> str | None:
    """Caller address, preferring the first hop in X-Forwarded-For."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def get_redis_service() -> RedisService | None:
    """Get RedisService on the shared pool, or None when Redis is disabled.

    Without Redis, order rate limiting is skipped and the pending queue is
    read straight from the database.
    """
    if not settings.REDIS_ENABLED:
        return None
    redis = await get_redis()
    return RedisService(redis)


# Type aliases for cleaner dependency injection
CurrentUserId = Annotated[int, Depends(get_current_user_id)]
OptionalUserId = Annotated[int | None, Depends(get_optional_user_id)]
CallerRole = Annotated[str | None, Depends(get_user_role)]
IsAdmin = Annotated[bool, Depends(get_is_admin)]
AdminUserId = Annotated[int, Depends(get_current_admin_id)]
ClientIp = Annotated[str | None, Depends(get_client_ip)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
RedisServiceDep = Annotated[RedisService | None, Depends(get_redis_service)]
