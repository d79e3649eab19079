"""
VendorTal Overage and Proration

Pure money calculations. All amounts are integer cents; per-unit overage
prices are Decimal cents so sub-cent API call pricing stays exact until the
final rounding (half up).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from billing.errors import PlanNotFound, PlanNotPurchasable
from billing.plans import (
    PlanCatalog, Plan, UNLIMITED, ONE_TIME, MONTHLY, ANNUAL,
    ASSESSMENTS, API_CALLS, USERS, SBOM_SCANS,
)

BILLABLE = 'billable'
INCLUDED_KIND = 'included'
UNAVAILABLE_KIND = 'unavailable'


@dataclass(frozen=True)
class OveragePrice:
    """How consumption beyond the limit is treated for one tier/resource pair."""
    kind: str
    unit_price: Decimal = Decimal('0')

    @property
    def billable(self) -> bool:
        return self.kind == BILLABLE and self.unit_price > 0


INCLUDED = OveragePrice(INCLUDED_KIND)
UNAVAILABLE = OveragePrice(UNAVAILABLE_KIND)


def billable(unit_price_cents: Union[int, str]) -> OveragePrice:
    return OveragePrice(BILLABLE, Decimal(str(unit_price_cents)))


# Each pair states its meaning explicitly: INCLUDED is "no charge because the
# tier does not cap it", UNAVAILABLE is "cannot be bought at this tier".
# SBOM scanning is sold as the sbom_integration add-on, never per scan.
OVERAGE_PRICING = {
    'starter': {
        ASSESSMENTS: billable(1000),
        API_CALLS: billable(1),
        USERS: UNAVAILABLE,
        SBOM_SCANS: UNAVAILABLE,
    },
    'professional': {
        ASSESSMENTS: billable(500),
        API_CALLS: billable('0.5'),
        USERS: billable(2000),
        SBOM_SCANS: UNAVAILABLE,
    },
    'enterprise': {
        ASSESSMENTS: INCLUDED,
        API_CALLS: INCLUDED,
        USERS: INCLUDED,
        SBOM_SCANS: UNAVAILABLE,
    },
    'federal': {
        ASSESSMENTS: INCLUDED,
        API_CALLS: INCLUDED,
        USERS: INCLUDED,
        SBOM_SCANS: UNAVAILABLE,
    },
}


def _cents(amount: Decimal) -> int:
    return int(amount.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def _tier_plan(catalog: PlanCatalog, tier: str) -> Plan:
    """A plan id, or a tier name resolved to its first plan in catalog order."""
    plan = catalog.find_plan(tier)
    if plan is not None:
        return plan
    for plan in catalog:
        if plan.tier == tier:
            return plan
    raise PlanNotFound(tier)


def get_overage_price(tier: Optional[str], resource: str) -> Optional[OveragePrice]:
    """Configured overage treatment, or None when nothing is configured."""
    return OVERAGE_PRICING.get(tier or '', {}).get(resource)


def overage_charge(catalog: PlanCatalog, tier: str, resource: str, quantity: int) -> int:
    """
    Charge for consumption beyond a tier's included limit.

    Args:
        catalog: Plan catalog
        tier: Tier name or plan id ('starter', 'professional_annual', ...)
        resource: Metered resource
        quantity: Total quantity consumed in the period

    Returns:
        max(0, quantity - limit) * unit price in cents; 0 when the resource
        is unlimited or has no billable overage price at that tier
    """
    plan = _tier_plan(catalog, tier)
    limit = plan.limit(resource)
    if limit == UNLIMITED:
        return 0

    price = get_overage_price(plan.tier, resource)
    if price is None or not price.billable:
        return 0

    over = max(0, quantity - limit)
    return _cents(price.unit_price * over)


def _micros(delta: timedelta) -> int:
    return (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds


def _require_recurring(plan: Plan):
    # one-time products have no billing period to weight against
    if plan.cadence == ONE_TIME:
        raise ValueError(f'{plan.id} is a one-time product and cannot be prorated')
    if plan.price is None:
        raise PlanNotPurchasable(plan.id, contact_sales=True)


def full_period_charge(plan: Plan) -> int:
    """Price of one full billing period of the plan."""
    _require_recurring(plan)
    return plan.price


def full_period_credit(plan: Plan) -> int:
    """Credit for an entirely unused billing period of the plan."""
    _require_recurring(plan)
    return plan.price


def remaining_fraction(now: datetime, period_start: datetime, period_end: datetime) -> Decimal:
    """Share of the period still ahead of now, clamped to [0, 1]."""
    total = _micros(period_end - period_start)
    if total <= 0:
        return Decimal('0')
    now = min(max(now, period_start), period_end)
    return Decimal(_micros(period_end - now)) / Decimal(total)


def prorate(old_plan: Plan, new_plan: Plan, now: datetime, period_start: datetime, period_end: datetime) -> int:
    """
    Net amount for switching plans at now.

    Linear time weighting: charge for the new plan over the remaining part
    of the period minus credit for the unused part of the old plan. Positive
    means the tenant owes money, negative is a credit.

    Returns 0 for a degenerate period (end <= start) and at period end;
    at period start it equals full_period_charge(new) - full_period_credit(old).
    """
    if period_end <= period_start:
        return 0

    fraction = remaining_fraction(now, period_start, period_end)
    charge = _cents(Decimal(full_period_charge(new_plan)) * fraction)
    credit = _cents(Decimal(full_period_credit(old_plan)) * fraction)
    return charge - credit


@dataclass(frozen=True)
class PlanChangeQuote:
    old_plan_id: str
    new_plan_id: str
    amount: int
    effective_at: datetime
    prorated: bool

    def to_dict(self):
        return {
            'old_plan': self.old_plan_id,
            'new_plan': self.new_plan_id,
            'amount': self.amount,
            'effective_at': self.effective_at.isoformat(),
            'prorated': self.prorated,
        }


def quote_plan_change(old_plan: Plan, new_plan: Plan, now: datetime,
                      period_start: datetime, period_end: datetime) -> PlanChangeQuote:
    """
    Quote a plan change.

    Changes on the same cadence take effect immediately and are prorated.
    Switching between monthly and annual billing takes effect at renewal
    (period_end) with nothing charged now.
    """
    cadences = {old_plan.cadence, new_plan.cadence}
    if old_plan.cadence != new_plan.cadence and cadences <= {MONTHLY, ANNUAL}:
        return PlanChangeQuote(old_plan.id, new_plan.id, 0, period_end, False)

    amount = prorate(old_plan, new_plan, now, period_start, period_end)
    effective = min(max(now, period_start), period_end) if period_end > period_start else now
    return PlanChangeQuote(old_plan.id, new_plan.id, amount, effective, True)
