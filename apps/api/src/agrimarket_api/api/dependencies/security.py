from fastapi import Header, HTTPException, status

from agrimarket_api.core.settings import settings


def _check_key(expected: str, provided: str) -> None:
    if not expected:
        return

    if provided != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )


async def require_internal_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    """Guard collaborator calls (order/payment services)."""

    _check_key(settings.internal_api_key, x_api_key)


async def require_admin_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    _check_key(settings.admin_api_key, x_api_key)
