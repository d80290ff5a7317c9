from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from portal.container import Container
from portal.core.database import get_db
from portal.core.deps import get_container

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(container: Container = Depends(get_container)):
    coordinator = container.coordinator
    return {
        "status": "ok",
        "syncInFlight": coordinator.in_flight,
        "currentRunId": str(coordinator.current_run_id) if coordinator.current_run_id else None,
        "credentialsConfigured": container.registry.configured(),
    }


@router.get("/health/db")
async def health_db(db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    return {"status": "ok", "database": "connected"}
