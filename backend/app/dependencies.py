"""Dependency injection helpers for FastAPI."""

import hmac
from functools import lru_cache
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status

from app.core.config import Settings, get_settings
from app.services.lab_kits.repository import LabKitRepository
from app.services.lab_kits.sql_repository import SqlLabKitRepository


@lru_cache()
def get_repository() -> LabKitRepository:
    """Shared PostgreSQL repository. Tests override this with the in-memory one."""
    return SqlLabKitRepository()


async def get_actor_id(x_user_id: Optional[str] = Header(None)) -> Optional[UUID]:
    """Caller identity from the X-User-Id header.

    Authentication happens upstream; a malformed id is rejected, a missing one
    is allowed and recorded as None.
    """
    if not x_user_id:
        return None
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-User-Id must be a UUID",
        )


async def require_job_token(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Bearer token guard for batch jobs."""
    token = settings.LAB_KIT_RECOMMENDATION_JOB_TOKEN
    if not token:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfigured.",
        )
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {token}"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
