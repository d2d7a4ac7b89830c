"""
Tests for commission rule selection.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from paycore.errors import ValidationError
from paycore.fsm.states import CommissionScope
from paycore.models.commission import CommissionSetting
from paycore.services.commission_resolver import (
    CommissionResolver,
    select_commission,
    validate_commission_setting,
)

SALE_DATE = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def rule(
    id,
    scope=CommissionScope.GLOBAL,
    scope_id=None,
    platform="30",
    instructor="70",
    hold=14,
    priority=0,
    created_at=None,
    **extra,
):
    return CommissionSetting(
        id=id,
        name=f"rule-{id}",
        scope=scope.value,
        scope_id=scope_id,
        platform_rate=Decimal(platform),
        instructor_rate=Decimal(instructor),
        hold_period_days=hold,
        priority=priority,
        is_active=extra.pop("is_active", True),
        created_at=created_at or datetime(2026, 1, 1, tzinfo=timezone.utc),
        **extra,
    )


def pick(candidates, instructor_id="inst-1", course_id="course-1", category_id="cat-1", amount="1000"):
    return select_commission(
        candidates,
        instructor_id=instructor_id,
        course_id=course_id,
        category_id=category_id,
        sale_date=SALE_DATE,
        sale_amount=Decimal(amount),
    )


class TestSelectCommission:
    """Ranking: priority, then specificity, then newest."""

    def test_falls_back_to_platform_default(self):
        resolved = pick([])
        assert resolved.is_default
        assert resolved.platform_rate + resolved.instructor_rate == Decimal("100")

    def test_more_specific_scope_wins_at_equal_priority(self):
        resolved = pick(
            [
                rule(1),
                rule(2, CommissionScope.CATEGORY, "cat-1", "25", "75"),
                rule(3, CommissionScope.INSTRUCTOR, "inst-1", "20", "80"),
                rule(4, CommissionScope.COURSE, "course-1", "22", "78"),
            ]
        )
        assert resolved.setting_id == 3
        assert resolved.instructor_rate == Decimal("80")

    def test_priority_beats_specificity(self):
        resolved = pick(
            [
                rule(1, priority=10, platform="40", instructor="60"),
                rule(2, CommissionScope.INSTRUCTOR, "inst-1", "20", "80"),
            ]
        )
        assert resolved.setting_id == 1

    def test_newest_wins_a_full_tie(self):
        resolved = pick(
            [
                rule(1, CommissionScope.COURSE, "course-1", created_at=datetime(2026, 1, 1, tzinfo=timezone.utc)),
                rule(2, CommissionScope.COURSE, "course-1", created_at=datetime(2026, 2, 1, tzinfo=timezone.utc)),
            ]
        )
        assert resolved.setting_id == 2

    def test_rules_for_other_subjects_are_ignored(self):
        resolved = pick(
            [
                rule(1),
                rule(2, CommissionScope.INSTRUCTOR, "inst-2", "10", "90"),
                rule(3, CommissionScope.COURSE, "course-9", "10", "90"),
            ]
        )
        assert resolved.setting_id == 1

    def test_date_window_and_minimum_amount(self):
        candidates = [
            rule(1),
            rule(2, CommissionScope.INSTRUCTOR, "inst-1", "20", "80", start_date=SALE_DATE + timedelta(days=1)),
            rule(3, CommissionScope.COURSE, "course-1", "15", "85", end_date=SALE_DATE - timedelta(days=1)),
            rule(4, CommissionScope.CATEGORY, "cat-1", "25", "75", minimum_sale_amount=Decimal("5000")),
        ]
        assert pick(candidates).setting_id == 1
        assert pick(candidates, amount="6000").setting_id == 4

    def test_inactive_rules_never_apply(self):
        resolved = pick([rule(1, CommissionScope.INSTRUCTOR, "inst-1", is_active=False)])
        assert resolved.is_default


class TestValidateCommissionSetting:
    def test_rates_cannot_exceed_the_sale(self):
        with pytest.raises(ValidationError):
            validate_commission_setting(
                scope=CommissionScope.GLOBAL,
                scope_id=None,
                platform_rate=Decimal("40"),
                instructor_rate=Decimal("70"),
                hold_period_days=14,
            )

    def test_scoped_rule_needs_scope_id(self):
        with pytest.raises(ValidationError):
            validate_commission_setting(
                scope=CommissionScope.INSTRUCTOR,
                scope_id=None,
                platform_rate=Decimal("20"),
                instructor_rate=Decimal("80"),
                hold_period_days=7,
            )

    def test_end_before_start_is_rejected(self):
        with pytest.raises(ValidationError):
            validate_commission_setting(
                scope=CommissionScope.GLOBAL,
                scope_id=None,
                platform_rate=Decimal("30"),
                instructor_rate=Decimal("70"),
                hold_period_days=14,
                start_date=SALE_DATE,
                end_date=SALE_DATE - timedelta(days=1),
            )

    def test_valid_rule_passes(self):
        validate_commission_setting(
            scope=CommissionScope.COURSE,
            scope_id="course-1",
            platform_rate=Decimal("25"),
            instructor_rate=Decimal("75"),
            hold_period_days=0,
        )


@pytest.mark.asyncio
async def test_resolver_loads_only_active_candidates(db):
    """Instructor 80/20 rule over a global 70/30 rule."""
    db.add_all(
        [
            CommissionSetting(
                name="Global",
                scope=CommissionScope.GLOBAL.value,
                platform_rate=Decimal("30"),
                instructor_rate=Decimal("70"),
                hold_period_days=14,
            ),
            CommissionSetting(
                name="Star instructor",
                scope=CommissionScope.INSTRUCTOR.value,
                scope_id="inst-1",
                platform_rate=Decimal("20"),
                instructor_rate=Decimal("80"),
                hold_period_days=7,
            ),
            CommissionSetting(
                name="Retired",
                scope=CommissionScope.INSTRUCTOR.value,
                scope_id="inst-1",
                platform_rate=Decimal("5"),
                instructor_rate=Decimal("95"),
                hold_period_days=0,
                priority=50,
                is_active=False,
            ),
        ]
    )
    await db.commit()

    resolved = await CommissionResolver(db).resolve(
        instructor_id="inst-1",
        course_id="course-1",
        category_id=None,
        sale_date=SALE_DATE,
        sale_amount=Decimal("1000"),
    )

    assert resolved.name == "Star instructor"
    assert resolved.instructor_rate == Decimal("80")
    assert resolved.hold_period_days == 7

    other = await CommissionResolver(db).resolve(
        instructor_id="inst-2",
        course_id="course-1",
        category_id=None,
        sale_date=SALE_DATE,
        sale_amount=Decimal("1000"),
    )
    assert other.name == "Global"
