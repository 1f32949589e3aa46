"""Unit tests for plan pricing, addon validation and amount checks."""
import pytest

from edubilling.errors import ValidationError
from edubilling.models.account import BillingCycle
from edubilling.models.plan import Plan
from edubilling.schemas.checkout import AddonSelection, PurchaseType
from edubilling.schemas.error import ErrorCode
from edubilling.services.checkout_service import amounts_agree
from edubilling.services.plan_catalog import AddonKind, addon_unit_price, base_price, price_breakdown
from edubilling.services.quota_service import validate_addons


def _plan(**overrides) -> Plan:
    values = {
        "name": "Single Class",
        "slug": "single-class",
        "price_monthly": 2500,
        "price_yearly": 24000,
        "teacher_addon_monthly": 500,
        "teacher_addon_yearly": 6000,
        "student_addon_monthly": 300,
        "student_addon_yearly": 3600,
        "max_teachers": 1,
        "max_students": 30,
        "max_classes": 1,
        "max_schools": 1,
    }
    values.update(overrides)
    return Plan(**values)


def test_monthly_breakdown_with_two_teacher_seats() -> None:
    """$25 base plus 2 teachers at $5 is $35."""
    breakdown = price_breakdown(_plan(), BillingCycle.MONTHLY, AddonSelection(teacher_seats=2))

    assert breakdown.base_price == 2500
    assert breakdown.teacher_cost == 1000
    assert breakdown.student_cost == 0
    assert breakdown.addon_cost == 1000
    assert breakdown.total == 3500
    assert breakdown.snapshot() == {
        "teacher_seats": 2,
        "student_seats": 0,
        "addon_cost": 1000,
        "total_cost": 3500,
        "base_plan_price": 2500,
    }


def test_one_time_purchases_use_yearly_prices() -> None:
    plan = _plan()

    assert base_price(plan, BillingCycle.ONE_TIME) == 24000
    assert addon_unit_price(plan, BillingCycle.ONE_TIME, AddonKind.TEACHER) == 6000
    assert addon_unit_price(plan, BillingCycle.ONE_TIME, AddonKind.STUDENT) == 3600


def test_yearly_breakdown_with_students() -> None:
    breakdown = price_breakdown(_plan(), PurchaseType.ONE_TIME.cycle, AddonSelection(teacher_seats=1, student_seats=10))

    assert breakdown.total == 24000 + 6000 + 36000


def test_plan_not_sold_monthly_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc_info:
        base_price(_plan(price_monthly=None), BillingCycle.MONTHLY)

    assert exc_info.value.code == ErrorCode.PLAN_NOT_PURCHASABLE


def test_purchase_type_maps_to_cycle_and_mode() -> None:
    assert PurchaseType.SUBSCRIPTION.cycle is BillingCycle.MONTHLY
    assert PurchaseType.ONE_TIME.cycle is BillingCycle.YEARLY
    assert PurchaseType.SUBSCRIPTION.mode.value == "subscription"
    assert PurchaseType.ONE_TIME.mode.value == "one_time"


@pytest.mark.parametrize(
    "addons",
    [
        AddonSelection(teacher_seats=1001),
        AddonSelection(student_seats=10001),
        AddonSelection(teacher_seats=-1),
    ],
)
def test_addon_counts_out_of_range_are_rejected(addons: AddonSelection) -> None:
    with pytest.raises(ValidationError) as exc_info:
        validate_addons(addons)

    assert exc_info.value.code == ErrorCode.INVALID_ADDON_COUNT


def test_addon_counts_at_the_limits_are_accepted() -> None:
    addons = AddonSelection(teacher_seats=1000, student_seats=10000)

    assert validate_addons(addons) is addons


@pytest.mark.parametrize(
    "expected,reported,agree",
    [
        (3500, 3500, True),
        (3500, 3535, True),
        (3500, 3536, False),
        (3500, 3000, False),
        (0, 0, True),
    ],
)
def test_amounts_agree_within_one_percent(expected: int, reported: int, agree: bool) -> None:
    assert amounts_agree(expected, reported, 1.0) is agree
