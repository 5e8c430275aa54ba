"""Health check API routes.

Provides endpoints for monitoring application health and connectivity.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mailmine.web.dependencies import get_db

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("", status_code=status.HTTP_200_OK)
async def health_check(db: AsyncSession = Depends(get_db)):
    """Check application health.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return {"status": "error", "database": "disconnected", "detail": str(e)}
    return {"status": "ok", "database": "connected"}
