"""
Commission Resolver - picks the one commission rule that applies to a sale.

Selection is a pure function over the candidate rows; the service only loads
candidates. The result is a snapshot copied onto the ledger so later edits to
a rule never change a recorded split.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.config import settings
from paycore.errors import ValidationError
from paycore.fsm.states import CommissionScope
from paycore.models.commission import CommissionSetting

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MAX_HOLD_PERIOD_DAYS = 365


@dataclass(frozen=True)
class ResolvedCommission:
    """Commission terms applied to one sale."""

    setting_id: Optional[int]
    name: str
    scope: CommissionScope
    platform_rate: Decimal
    instructor_rate: Decimal
    hold_period_days: int
    is_default: bool = False

    @classmethod
    def from_setting(cls, setting: CommissionSetting) -> "ResolvedCommission":
        return cls(
            setting_id=setting.id,
            name=setting.name,
            scope=CommissionScope(setting.scope),
            platform_rate=Decimal(setting.platform_rate),
            instructor_rate=Decimal(setting.instructor_rate),
            hold_period_days=setting.hold_period_days,
        )

    @classmethod
    def platform_default(cls) -> "ResolvedCommission":
        return cls(
            setting_id=None,
            name="Platform default",
            scope=CommissionScope.GLOBAL,
            platform_rate=settings.default_platform_rate,
            instructor_rate=settings.default_instructor_rate,
            hold_period_days=settings.default_hold_period_days,
            is_default=True,
        )


def _scope_matches(
    setting: CommissionSetting,
    instructor_id: Optional[str],
    course_id: Optional[str],
    category_id: Optional[str],
) -> bool:
    scope = CommissionScope(setting.scope)
    if scope == CommissionScope.GLOBAL:
        return True
    if scope == CommissionScope.INSTRUCTOR:
        return instructor_id is not None and setting.scope_id == instructor_id
    if scope == CommissionScope.COURSE:
        return course_id is not None and setting.scope_id == course_id
    return category_id is not None and setting.scope_id == category_id


def is_applicable(
    setting: CommissionSetting,
    *,
    instructor_id: Optional[str],
    course_id: Optional[str],
    category_id: Optional[str],
    sale_date: datetime,
    sale_amount: Decimal,
) -> bool:
    if not setting.is_active:
        return False
    if not _scope_matches(setting, instructor_id, course_id, category_id):
        return False
    if setting.start_date is not None and sale_date < setting.start_date:
        return False
    if setting.end_date is not None and sale_date > setting.end_date:
        return False
    if setting.minimum_sale_amount is not None and sale_amount < setting.minimum_sale_amount:
        return False
    return True


def _rank(setting: CommissionSetting) -> tuple:
    return (
        setting.priority or 0,
        CommissionScope(setting.scope).specificity,
        setting.created_at or _EPOCH,
        setting.id or 0,
    )


def select_commission(
    candidates: Iterable[CommissionSetting],
    *,
    instructor_id: Optional[str],
    course_id: Optional[str],
    category_id: Optional[str],
    sale_date: datetime,
    sale_amount: Decimal,
) -> ResolvedCommission:
    """
    Return exactly one rule for the sale.

    Ranking: priority desc, then scope specificity
    (instructor > course > category > global), then newest first. The id is
    a final key so the answer is deterministic for identical timestamps.
    Falls back to the configured platform default when nothing matches.
    """
    matching = [
        s
        for s in candidates
        if is_applicable(
            s,
            instructor_id=instructor_id,
            course_id=course_id,
            category_id=category_id,
            sale_date=sale_date,
            sale_amount=sale_amount,
        )
    ]
    if not matching:
        return ResolvedCommission.platform_default()
    return ResolvedCommission.from_setting(max(matching, key=_rank))


def validate_commission_setting(
    *,
    scope: CommissionScope,
    scope_id: Optional[str],
    platform_rate: Decimal,
    instructor_rate: Decimal,
    hold_period_days: int,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    priority: int = 0,
) -> None:
    """Write-time checks for a commission rule. Raises ValidationError."""
    if platform_rate < 0 or platform_rate > HUNDRED or instructor_rate < 0 or instructor_rate > HUNDRED:
        raise ValidationError("Commission rates must be between 0 and 100")
    if platform_rate + instructor_rate > HUNDRED:
        raise ValidationError(
            "Platform rate plus instructor rate cannot exceed 100",
            details={"platform_rate": str(platform_rate), "instructor_rate": str(instructor_rate)},
        )
    if hold_period_days < 0 or hold_period_days > MAX_HOLD_PERIOD_DAYS:
        raise ValidationError(f"Hold period must be between 0 and {MAX_HOLD_PERIOD_DAYS} days")
    if priority < 0 or priority > 100:
        raise ValidationError("Priority must be between 0 and 100")
    if start_date and end_date and end_date < start_date:
        raise ValidationError("End date must be after start date")
    if scope != CommissionScope.GLOBAL and not scope_id:
        raise ValidationError(f"A {scope.value} commission needs a scope id")
    if scope == CommissionScope.GLOBAL and scope_id:
        raise ValidationError("A global commission cannot have a scope id")


class CommissionResolver:
    """Loads candidate rules fresh on every call and selects the winner."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _candidates(
        self,
        instructor_id: Optional[str],
        course_id: Optional[str],
        category_id: Optional[str],
    ) -> List[CommissionSetting]:
        scope_filters = [CommissionSetting.scope == CommissionScope.GLOBAL.value]
        if instructor_id:
            scope_filters.append(
                and_(
                    CommissionSetting.scope == CommissionScope.INSTRUCTOR.value,
                    CommissionSetting.scope_id == instructor_id,
                )
            )
        if course_id:
            scope_filters.append(
                and_(
                    CommissionSetting.scope == CommissionScope.COURSE.value,
                    CommissionSetting.scope_id == course_id,
                )
            )
        if category_id:
            scope_filters.append(
                and_(
                    CommissionSetting.scope == CommissionScope.CATEGORY.value,
                    CommissionSetting.scope_id == category_id,
                )
            )

        result = await self.db.execute(
            select(CommissionSetting).where(
                CommissionSetting.is_active.is_(True),
                or_(*scope_filters),
            )
        )
        return list(result.scalars().all())

    async def resolve(
        self,
        instructor_id: Optional[str],
        course_id: Optional[str],
        category_id: Optional[str],
        sale_date: datetime,
        sale_amount: Decimal,
    ) -> ResolvedCommission:
        candidates = await self._candidates(instructor_id, course_id, category_id)
        resolved = select_commission(
            candidates,
            instructor_id=instructor_id,
            course_id=course_id,
            category_id=category_id,
            sale_date=sale_date,
            sale_amount=sale_amount,
        )
        if resolved.is_default:
            logger.info(f"No commission rule matched instructor {instructor_id} course {course_id}; using platform default")
        else:
            logger.info(
                f"Commission '{resolved.name}' ({resolved.scope.value}) resolved for course {course_id}: "
                f"{resolved.platform_rate}/{resolved.instructor_rate}, hold {resolved.hold_period_days}d"
            )
        return resolved
