"""Proration of unused paid time for plan and billing-cycle changes.

Pure functions only: every calculation receives ``now`` explicitly. Cycle
lengths are a flat 30 days for a month and 365 days for a year, whatever the
calendar says. Addon seats are never prorated; only the base plan price earns
credit.

The six supported changes are listed in ``TRANSITIONS``, keyed by where the
account is billed today and the cycle it moves to.
"""
import enum
import itertools
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from edubilling.models.account import BillingCycle

MONTH_DAYS = 30
YEAR_DAYS = 365
SECONDS_PER_DAY = 86400


class BillingSource(enum.Enum):
    """What currently pays for the account."""

    TRIAL = "trial"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class ConversionType(str, enum.Enum):
    """Recorded on the ledger row so webhooks know what they settle."""

    TRIAL_TO_MONTHLY = "trial_to_monthly"
    TRIAL_TO_YEARLY = "trial_to_yearly"
    YEARLY_TO_MONTHLY = "yearly_to_monthly"
    MONTHLY_TO_YEARLY = "monthly_to_yearly"
    MONTHLY_CHANGE = "monthly_change"
    YEARLY_CHANGE = "yearly_change"


@dataclass(frozen=True)
class PriorCharge:
    """
    What the account paid for its current period.

    Attributes:
        total_paid: Amount paid in cents, addons included
        addon_cost: Part of total_paid spent on addon seats
        purchased_at: Start of the paid period
        base_plan_price: Stored base price, preferred over total_paid - addon_cost when present
    """

    total_paid: int
    addon_cost: int
    purchased_at: datetime
    base_plan_price: Optional[int] = None

    @property
    def paid_base(self) -> int:
        """Base plan part of what was paid: total minus addons."""
        return max(0, self.total_paid - self.addon_cost)

    @property
    def listed_base(self) -> int:
        """Stored base price when known, else the paid base."""
        if self.base_plan_price is not None:
            return max(0, self.base_plan_price)
        return self.paid_base


@dataclass(frozen=True)
class ProrationInput:
    """Everything a strategy needs to price a change."""

    source: BillingSource
    target_cycle: BillingCycle
    new_total: int
    prior: Optional[PriorCharge]
    now: datetime


@dataclass(frozen=True)
class ProrationQuote:
    """
    Priced plan change.

    Attributes:
        conversion_type: Which of the six changes this is
        credit: Unused-time credit in cents
        amount_due: What is charged now, never negative
        balance_remainder: Credit left over after the first invoice (yearly to monthly only)
        new_total: Full price of the new plan and addons for one cycle
        days_remaining: Unused days of the prior period, 0 for trials
    """

    conversion_type: ConversionType
    credit: int
    amount_due: int
    balance_remainder: int
    new_total: int
    days_remaining: int

    @property
    def no_payment_required(self) -> bool:
        return self.amount_due == 0


def days_used(purchased_at: datetime, now: datetime) -> int:
    """Whole days elapsed since purchase, floored and never negative."""
    elapsed = (now - purchased_at).total_seconds()
    return max(0, int(elapsed // SECONDS_PER_DAY))


def days_remaining(cycle_length_days: int, used: int) -> int:
    """Unused days left in the cycle."""
    return max(0, cycle_length_days - used)


def unused_credit(base_only: int, cycle_length_days: int, purchased_at: datetime, now: datetime) -> int:
    """
    Credit in cents for the unused part of a paid cycle.

    ``(days_remaining / cycle_length_days) * base_only``, rounded half up and
    clamped to ``[0, base_only]``.
    """
    if base_only <= 0:
        return 0
    remaining = days_remaining(cycle_length_days, days_used(purchased_at, now))
    credit = (Decimal(remaining) / Decimal(cycle_length_days) * Decimal(base_only)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return min(base_only, max(0, int(credit)))


def final_charge(new_total: int, credit: int) -> int:
    """Amount due after credit, never negative."""
    return max(0, new_total - credit)


def _full_price(conversion_type: ConversionType) -> Callable[[ProrationInput], ProrationQuote]:
    def strategy(data: ProrationInput) -> ProrationQuote:
        # a trial has no paid time to credit
        return ProrationQuote(
            conversion_type=conversion_type,
            credit=0,
            amount_due=data.new_total,
            balance_remainder=0,
            new_total=data.new_total,
            days_remaining=0,
        )

    return strategy


def _prorated(conversion_type: ConversionType, cycle_length_days: int) -> Callable[[ProrationInput], ProrationQuote]:
    def strategy(data: ProrationInput) -> ProrationQuote:
        if data.prior is None:
            credit, remaining = 0, 0
        else:
            base = data.prior.listed_base if conversion_type is ConversionType.YEARLY_CHANGE else data.prior.paid_base
            credit = unused_credit(base, cycle_length_days, data.prior.purchased_at, data.now)
            remaining = days_remaining(cycle_length_days, days_used(data.prior.purchased_at, data.now))
        due = final_charge(data.new_total, credit)
        remainder = max(0, credit - data.new_total) if conversion_type is ConversionType.YEARLY_TO_MONTHLY else 0
        return ProrationQuote(
            conversion_type=conversion_type,
            credit=credit,
            amount_due=due,
            balance_remainder=remainder,
            new_total=data.new_total,
            days_remaining=remaining,
        )

    return strategy


TARGET_CYCLES = (BillingCycle.MONTHLY, BillingCycle.YEARLY)

TRANSITIONS: dict[tuple[BillingSource, BillingCycle], Callable[[ProrationInput], ProrationQuote]] = {
    (BillingSource.TRIAL, BillingCycle.MONTHLY): _full_price(ConversionType.TRIAL_TO_MONTHLY),
    (BillingSource.TRIAL, BillingCycle.YEARLY): _full_price(ConversionType.TRIAL_TO_YEARLY),
    (BillingSource.YEARLY, BillingCycle.MONTHLY): _prorated(ConversionType.YEARLY_TO_MONTHLY, YEAR_DAYS),
    (BillingSource.MONTHLY, BillingCycle.YEARLY): _prorated(ConversionType.MONTHLY_TO_YEARLY, MONTH_DAYS),
    (BillingSource.MONTHLY, BillingCycle.MONTHLY): _prorated(ConversionType.MONTHLY_CHANGE, MONTH_DAYS),
    (BillingSource.YEARLY, BillingCycle.YEARLY): _prorated(ConversionType.YEARLY_CHANGE, YEAR_DAYS),
}

_missing = set(itertools.product(BillingSource, TARGET_CYCLES)) - TRANSITIONS.keys()
if _missing:
    raise RuntimeError(f"No proration strategy for {sorted((s.value, c.value) for s, c in _missing)}")


def quote(data: ProrationInput) -> ProrationQuote:
    """
    Price a plan change with the strategy registered for it.

    Raises:
        KeyError: If the target cycle is not monthly or yearly
    """
    return TRANSITIONS[(data.source, data.target_cycle)](data)
