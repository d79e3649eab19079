"""
VendorTal Usage Tracking

Append-only usage ledger per tenant, resource and billing period:
- Vendors and users under management
- Assessments, API calls and SBOM scans per period

"Used so far" is always the sum of the ledger records overlapping the
period, never a mutable counter, so replays are harmless as long as each
write carries its dedup key.
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple

from billing.entitlements import resolve_entitlements
from billing.models import Subscription, UsageRecord, utcnow
from billing.plans import PlanCatalog, RESOURCES, UNLIMITED


def month_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """Calendar month containing now, as [start, end) in UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def billing_period(subscription: Optional[Subscription], now: datetime) -> Tuple[datetime, datetime]:
    """
    Metering period for a tenant at a point in time.

    Args:
        subscription: Current subscription (may be None)
        now: Reference time

    Returns:
        The subscription's current period when it contains now, otherwise
        the calendar month containing now
    """
    if subscription is not None and subscription.grants_access:
        start = subscription.current_period_start
        end = subscription.current_period_end
        if start is not None and end is not None and start <= now < end:
            return start, end
    return month_bounds(now)


def new_dedup_key() -> str:
    return uuid.uuid4().hex


class UsageLedger:
    """Record and aggregate metered usage."""

    def __init__(self, store):
        self.store = store

    @staticmethod
    def _validate(quantity: int, period_start: datetime, period_end: datetime):
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValueError(f'Usage quantity must be a positive integer, got {quantity!r}')
        if period_end <= period_start:
            raise ValueError('Usage period must end after it starts')

    def build_record(
        self,
        tenant_id: str,
        resource: str,
        quantity: int,
        period_start: datetime,
        period_end: datetime,
        dedup_key: Optional[str] = None
    ) -> UsageRecord:
        self._validate(quantity, period_start, period_end)
        return UsageRecord(
            tenant_id=tenant_id,
            resource=resource,
            quantity=quantity,
            period_start=period_start,
            period_end=period_end,
            dedup_key=dedup_key or new_dedup_key(),
            recorded_at=utcnow(),
        )

    def record_usage(
        self,
        tenant_id: str,
        resource: str,
        quantity: int,
        period_start: datetime,
        period_end: datetime,
        dedup_key: str
    ) -> bool:
        """
        Append a usage record.

        Args:
            tenant_id: The tenant identifier
            resource: Metered resource ('vendors', 'assessments', ...)
            quantity: Units consumed (positive)
            period_start: Billing period start
            period_end: Billing period end
            dedup_key: Caller-supplied unique token for this logical action

        Returns:
            True if recorded, False if the dedup key was already recorded
            (a replay; nothing is counted twice)
        """
        record = self.build_record(tenant_id, resource, quantity, period_start, period_end, dedup_key)
        created = self.store.insert_usage_record(record)
        if not created:
            print(f"[USAGE] Duplicate usage write ignored: tenant={tenant_id}, resource={resource}, key={dedup_key}", flush=True)
        return created

    def get_usage(self, tenant_id: str, resource: str, period_start: datetime, period_end: datetime) -> int:
        """Total quantity of records overlapping the period."""
        return self.store.sum_usage(tenant_id, resource, period_start, period_end)


def get_usage_summary(catalog: PlanCatalog, store, tenant_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Get full usage summary with plan limits and percentages.

    Args:
        catalog: Plan catalog
        store: Billing store
        tenant_id: The tenant identifier
        now: Reference time (defaults to current UTC time)

    Returns:
        Dictionary with plan, period, usage, limits, percentages and at-limit flags
    """
    now = now or utcnow()
    subscription = store.get_subscription(tenant_id)
    entitlements = resolve_entitlements(catalog, subscription)
    period_start, period_end = billing_period(subscription, now)

    usage = {
        resource: store.sum_usage(tenant_id, resource, period_start, period_end)
        for resource in RESOURCES
    }
    limits = {resource: entitlements.limit_for(resource) for resource in RESOURCES}

    def calc_pct(current, limit):
        if limit == UNLIMITED:
            return 0
        return min(100, round((current / max(limit, 1)) * 100, 1))

    return {
        'plan': {
            'id': entitlements.plan_id,
            'name': entitlements.plan_name,
            'tier': entitlements.tier,
        },
        'status': subscription.status if subscription else None,
        'period': {
            'start': period_start.isoformat(),
            'end': period_end.isoformat(),
        },
        'usage': usage,
        'limits': limits,
        'percentages': {r: calc_pct(usage[r], limits[r]) for r in RESOURCES},
        'at_limit': {
            r: limits[r] != UNLIMITED and usage[r] >= limits[r]
            for r in RESOURCES
        },
    }
