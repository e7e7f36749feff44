from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from agrimarket_api.db.session import get_session
from agrimarket_api.services.loyalty import get_catalog_registry


router = APIRouter()


class ReadinessPayload(BaseModel):
    status: Literal["ready", "error"]
    database: Literal["ready", "error"]
    catalogVersion: int
    detail: str | None = None


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(session: AsyncSession = Depends(get_session)) -> ReadinessPayload:
    catalog_version = get_catalog_registry().current().version
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as error:
        return ReadinessPayload(
            status="error",
            database="error",
            catalogVersion=catalog_version,
            detail=f"Database unreachable ({type(error).__name__})",
        )
    return ReadinessPayload(status="ready", database="ready", catalogVersion=catalog_version)
