"""
VendorTal Billing Records

Subscription and usage records shared by the stores, the gate and the
reconciler, plus the subscription status state machine.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple


TRIALING = 'trialing'
ACTIVE = 'active'
PAST_DUE = 'past_due'
CANCELED = 'canceled'

STATUSES = (TRIALING, ACTIVE, PAST_DUE, CANCELED)

# Statuses whose plan still grants entitlements. past_due keeps access while
# the processor retries the payment.
ACCESS_STATUSES = frozenset({TRIALING, ACTIVE, PAST_DUE})

# (from, to) pairs allowed by the lifecycle. None is "no subscription yet".
TRANSITIONS = frozenset({
    (None, ACTIVE),
    (None, TRIALING),
    (TRIALING, ACTIVE),
    # A trial deleted in Stripe ends access immediately
    (TRIALING, CANCELED),
    (ACTIVE, PAST_DUE),
    (ACTIVE, CANCELED),
    (PAST_DUE, ACTIVE),
    (PAST_DUE, CANCELED),
})

# Stripe subscription status -> local status. Statuses mapped to None carry
# no lifecycle information and leave the local status untouched.
PROCESSOR_STATUS_MAP = {
    'trialing': TRIALING,
    'active': ACTIVE,
    'past_due': PAST_DUE,
    'unpaid': PAST_DUE,
    'canceled': CANCELED,
    'incomplete_expired': CANCELED,
    'incomplete': None,
    'paused': None,
}


def can_transition(current: Optional[str], target: str) -> bool:
    """Status changes must appear in TRANSITIONS; staying put is always fine."""
    if current == target:
        return True
    return (current, target) in TRANSITIONS


def map_processor_status(processor_status: Optional[str]) -> Optional[str]:
    return PROCESSOR_STATUS_MAP.get(processor_status or '')


@dataclass(frozen=True)
class Subscription:
    tenant_id: str
    plan_id: str
    status: str
    stripe_subscription_id: str
    stripe_customer_id: Optional[str] = None
    addon_ids: Tuple[str, ...] = ()
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    last_event_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def grants_access(self) -> bool:
        return self.status in ACCESS_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['addon_ids'] = list(self.addon_ids)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Subscription':
        """Build from a database row (RealDictCursor)."""
        return cls(
            tenant_id=str(row['tenant_id']),
            plan_id=row['plan_id'],
            status=row['status'],
            stripe_subscription_id=row['stripe_subscription_id'],
            stripe_customer_id=row.get('stripe_customer_id'),
            addon_ids=tuple(row.get('addon_ids') or ()),
            current_period_start=row.get('current_period_start'),
            current_period_end=row.get('current_period_end'),
            cancel_at_period_end=bool(row.get('cancel_at_period_end')),
            last_event_at=row.get('last_event_at'),
            canceled_at=row.get('canceled_at'),
            created_at=row.get('created_at'),
            updated_at=row.get('updated_at'),
        )


@dataclass(frozen=True)
class UsageRecord:
    tenant_id: str
    resource: str
    quantity: int
    period_start: datetime
    period_end: datetime
    dedup_key: str
    recorded_at: Optional[datetime] = None

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.period_start < end and start < self.period_end


@dataclass(frozen=True)
class Invoice:
    stripe_invoice_id: str
    tenant_id: Optional[str]
    stripe_subscription_id: Optional[str]
    amount_paid: int
    currency: str
    status: str
    paid_at: Optional[datetime] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
