from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from app.core.database import get_db
from app.core.dependencies import get_current_active_user
from app.modules.users.models import User
from app.modules.ledger.schemas import DashboardResponse, ActivityItem
from app.modules.ledger.services import LedgerService

router = APIRouter(prefix="/api/v1/ledger", tags=["ledger"])


@router.get("/dashboard", response_model=DashboardResponse)
async def read_dashboard(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """
    Dashboard for the current user.

    - Lent and borrowed loans grouped by status
    - Progress, remaining balance and days until the next payment per loan
    - Totals, pending offers and the next payment owed
    """
    service = LedgerService(db)
    return await service.get_dashboard(current_user.id)


@router.get("/activity", response_model=List[ActivityItem])
async def read_activity(
    type: Optional[str] = Query(None, pattern="^(loan|payment)$"),
    status: Optional[str] = None,
    direction: Optional[str] = Query(None, pattern="^(sent|received)$"),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Recent loans and payments, newest first"""
    service = LedgerService(db)
    return await service.get_activity(current_user.id, type, status, direction, limit)
