"""Member identity forwarded by the marketplace auth gateway."""

from __future__ import annotations

from uuid import UUID

from fastapi import Depends, Header
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from agrimarket_api.db.session import get_session
from agrimarket_api.models.user import User
from agrimarket_api.services.loyalty.errors import InvalidSession, LoyaltyNotFound, SessionRequired

SESSION_USER_HEADER = "X-Session-User"


def parse_member_id(raw: str | None) -> UUID:
    """Turn the gateway header into a user id, or raise a loyalty error for the error envelope."""

    value = (raw or "").strip()
    if not value:
        raise SessionRequired("Sign in to view loyalty rewards", header=SESSION_USER_HEADER)
    try:
        return UUID(value)
    except ValueError as error:
        raise InvalidSession("Session user must be a UUID", header=SESSION_USER_HEADER) from error


async def require_member_session(
    session_user: str | None = Header(None, alias=SESSION_USER_HEADER),
    db: AsyncSession = Depends(get_session),
) -> User:
    user_id = parse_member_id(session_user)
    user = await db.get(User, user_id)
    if user is None:
        logger.info("Rejected loyalty request for unknown member", user_id=str(user_id))
        raise LoyaltyNotFound("Member not found", resource="user", user_id=str(user_id))
    return user
