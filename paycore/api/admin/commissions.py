"""
Admin Commission Endpoints.
Create and list commission rules and preview the split for a sale.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.api.deps import verify_admin_key
from paycore.database import get_db
from paycore.errors import NotFound
from paycore.fsm.states import CommissionScope
from paycore.models.commission import CommissionSetting
from paycore.models.types import utcnow
from paycore.services.commission_resolver import CommissionResolver, validate_commission_setting
from paycore.services.earnings_ledger import split_sale

router = APIRouter()
logger = logging.getLogger(__name__)


class CommissionCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    scope: CommissionScope = CommissionScope.GLOBAL
    scope_id: Optional[str] = None
    platform_rate: Decimal
    instructor_rate: Decimal
    hold_period_days: int = 14
    priority: int = 0
    minimum_sale_amount: Optional[Decimal] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    notes: Optional[str] = None


class CommissionPreviewRequest(BaseModel):
    instructor_id: str
    course_id: Optional[str] = None
    category_id: Optional[str] = None
    amount: Decimal
    sale_date: Optional[datetime] = None


def setting_view(setting: CommissionSetting) -> Dict[str, Any]:
    return {
        "id": setting.id,
        "name": setting.name,
        "scope": setting.scope,
        "scope_id": setting.scope_id,
        "platform_rate": str(setting.platform_rate),
        "instructor_rate": str(setting.instructor_rate),
        "hold_period_days": setting.hold_period_days,
        "priority": setting.priority,
        "minimum_sale_amount": str(setting.minimum_sale_amount) if setting.minimum_sale_amount is not None else None,
        "start_date": setting.start_date.isoformat() if setting.start_date else None,
        "end_date": setting.end_date.isoformat() if setting.end_date else None,
        "is_active": setting.is_active,
    }


@router.get("/commissions")
async def list_commissions(
    active_only: bool = True,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(verify_admin_key),
):
    query = select(CommissionSetting).order_by(CommissionSetting.priority.desc(), CommissionSetting.id)
    if active_only:
        query = query.where(CommissionSetting.is_active.is_(True))
    result = await db.execute(query)
    return {"commissions": [setting_view(s) for s in result.scalars().all()]}


@router.post("/commissions")
async def create_commission(
    request: CommissionCreateRequest,
    db: AsyncSession = Depends(get_db),
    admin_id: str = Depends(verify_admin_key),
):
    validate_commission_setting(
        scope=request.scope,
        scope_id=request.scope_id,
        platform_rate=request.platform_rate,
        instructor_rate=request.instructor_rate,
        hold_period_days=request.hold_period_days,
        start_date=request.start_date,
        end_date=request.end_date,
        priority=request.priority,
    )
    setting = CommissionSetting(
        name=request.name,
        scope=request.scope.value,
        scope_id=request.scope_id,
        platform_rate=request.platform_rate,
        instructor_rate=request.instructor_rate,
        hold_period_days=request.hold_period_days,
        priority=request.priority,
        minimum_sale_amount=request.minimum_sale_amount,
        start_date=request.start_date,
        end_date=request.end_date,
        notes=request.notes,
    )
    db.add(setting)
    await db.commit()

    logger.info(f"Commission '{setting.name}' ({setting.scope}:{setting.scope_id}) created by {admin_id}")
    return setting_view(setting)


@router.post("/commissions/{setting_id}/deactivate")
async def deactivate_commission(
    setting_id: int,
    db: AsyncSession = Depends(get_db),
    admin_id: str = Depends(verify_admin_key),
):
    """Rules are never edited in place; deactivate and create a new one."""
    setting = await db.get(CommissionSetting, setting_id)
    if setting is None:
        raise NotFound("Commission setting not found", details={"setting_id": setting_id})
    setting.is_active = False
    await db.commit()
    logger.info(f"Commission '{setting.name}' deactivated by {admin_id}")
    return setting_view(setting)


@router.post("/commissions/preview")
async def preview_commission(
    request: CommissionPreviewRequest,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(verify_admin_key),
):
    """Which rule a sale would get, and how it would be split."""
    sale_date = request.sale_date or utcnow()
    resolved = await CommissionResolver(db).resolve(
        instructor_id=request.instructor_id,
        course_id=request.course_id,
        category_id=request.category_id,
        sale_date=sale_date,
        sale_amount=request.amount,
    )
    instructor_share, platform_share = split_sale(request.amount, resolved.platform_rate, resolved.instructor_rate)
    return {
        "setting_id": resolved.setting_id,
        "name": resolved.name,
        "scope": resolved.scope.value,
        "is_default": resolved.is_default,
        "platform_rate": str(resolved.platform_rate),
        "instructor_rate": str(resolved.instructor_rate),
        "hold_period_days": resolved.hold_period_days,
        "instructor_amount": str(instructor_share),
        "platform_amount": str(platform_share),
        "available_at": (sale_date + timedelta(days=resolved.hold_period_days)).isoformat(),
    }
