"""
VendorTal Usage Enforcement

Quota gate consulted before any quota-consuming action:
- Resolves the tenant's limit, compares it with the ledger and records the
  usage in the same critical section
- Denials carry an upgrade prompt (402 Payment Required over HTTP) with the
  overage price where the tier allows paying per unit instead of upgrading
"""

import os
from dataclasses import dataclass
from datetime import datetime
from functools import wraps
from typing import Optional, Dict, Any

from flask import request, jsonify, g

from billing.entitlements import resolve_entitlements
from billing.models import utcnow
from billing.plans import PlanCatalog, UNLIMITED, get_upgrade_recommendation, is_purchasable
from billing.pricing import get_overage_price
from billing.usage import UsageLedger, billing_period

# Base URL for upgrade links
BASE_URL = os.environ.get('BASE_URL', 'http://localhost:5000')
CONTACT_SALES_URL = os.environ.get('CONTACT_SALES_URL', f'{BASE_URL}/contact')


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    used: int
    limit: int
    remaining: int
    resource: str
    plan_id: str
    tier: Optional[str]
    period_start: datetime
    period_end: datetime
    recorded: bool = False

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed': self.allowed,
            'used': self.used,
            'limit': self.limit,
            'remaining': self.remaining,
            'resource': self.resource,
            'plan': self.plan_id,
            'period_start': self.period_start.isoformat(),
            'period_end': self.period_end.isoformat(),
            'recorded': self.recorded,
        }


class EnforcementGate:
    """Allow/deny quota-consuming actions and record the usage they consume."""

    def __init__(self, catalog: PlanCatalog, store, clock=None):
        self.catalog = catalog
        self.store = store
        self.ledger = UsageLedger(store)
        self.clock = clock or utcnow

    def check_and_maybe_record(
        self,
        tenant_id: str,
        resource: str,
        quantity: int = 1,
        record: bool = True,
        dedup_key: Optional[str] = None
    ) -> GateResult:
        """
        Check a quota and, if allowed, record the usage.

        Args:
            tenant_id: The tenant identifier
            resource: Metered resource
            quantity: Units the action consumes
            record: False for a dry-run check that never writes
            dedup_key: Idempotency token; a replayed key is reported as
                allowed without being counted again

        Returns:
            GateResult. used and remaining describe the ledger before this
            action. Unlimited resources report limit and remaining as -1.
        """
        now = self.clock()
        subscription = self.store.get_subscription(tenant_id)
        entitlements = resolve_entitlements(self.catalog, subscription)
        period_start, period_end = billing_period(subscription, now)
        limit = entitlements.limit_for(resource)

        usage = self.ledger.build_record(tenant_id, resource, quantity, period_start, period_end, dedup_key)

        def result(allowed, used, recorded):
            remaining = UNLIMITED if limit == UNLIMITED else max(0, limit - used)
            return GateResult(
                allowed=allowed,
                used=used,
                limit=limit,
                remaining=remaining,
                resource=resource,
                plan_id=entitlements.plan_id,
                tier=entitlements.tier,
                period_start=period_start,
                period_end=period_end,
                recorded=recorded,
            )

        if limit == UNLIMITED:
            used = self.ledger.get_usage(tenant_id, resource, period_start, period_end)
            recorded = self.store.insert_usage_record(usage) if record else False
            return result(True, used, recorded)

        if record:
            allowed, used, recorded = self.store.check_and_record_usage(usage, limit)
        else:
            used = self.ledger.get_usage(tenant_id, resource, period_start, period_end)
            allowed, recorded = used + quantity <= limit, False

        if not allowed:
            # Log the limit hit for analytics
            print(f"[BILLING] {resource} limit hit: tenant={tenant_id}, plan={entitlements.plan_id}, usage={used}/{limit}", flush=True)
        return result(allowed, used, recorded)


def build_upgrade_prompt(catalog: PlanCatalog, result: GateResult) -> Dict[str, Any]:
    """
    Payload shown to the user when a quota check is denied.

    Args:
        catalog: Plan catalog
        result: The denied gate result

    Returns:
        Dict with the resource, current tier, usage, limit, recommended
        upgrade and, when the tier bills overage for the resource, the
        per-unit overage price (cents) as an alternative to upgrading
    """
    plan = catalog.find_plan(result.plan_id) or catalog.fallback_plan
    upgrade_id = get_upgrade_recommendation(plan.id, catalog)
    upgrade_plan = catalog.find_plan(upgrade_id) if upgrade_id else None

    upgrade_url = None
    contact_sales = False
    if upgrade_plan is not None:
        if is_purchasable(upgrade_plan):
            # Paid tiers already have a subscription to change
            path = "checkout" if plan.id == catalog.fallback_plan.id else "subscription"
            upgrade_url = f"{BASE_URL}/v2/billing/{path}"
        else:
            contact_sales = True
            upgrade_url = CONTACT_SALES_URL

    overage = get_overage_price(plan.tier, result.resource)
    overage_price = str(overage.unit_price) if overage is not None and overage.billable else None

    if result.limit == 0:
        message = f'{result.resource} is not included in the {plan.name} plan.'
    else:
        message = f'{plan.name} {result.resource} limit reached ({result.used}/{result.limit}). Upgrade to continue.'

    return {
        'error': 'Limit exceeded',
        'message': message,
        'feature': result.resource,
        'plan': plan.id,
        'tier_name': plan.name,
        'current': result.used,
        'limit': result.limit,
        'upgrade_to': upgrade_id,
        'upgrade_url': upgrade_url,
        'contact_sales': contact_sales,
        'overage_unit_price': overage_price,
    }


def limit_exceeded_response(prompt: Dict[str, Any]):
    """
    Generate a 402 Payment Required response with upgrade info.

    Returns:
        Flask response tuple (jsonify, status_code)
    """
    return jsonify(prompt), 402


def require_quota(get_gate, resource: str, quantity: int = 1):
    """
    Decorator factory to check (and consume) a quota before a view runs.

    Args:
        get_gate: Function returning the EnforcementGate
        resource: Metered resource the view consumes
        quantity: Units consumed per call

    Returns:
        Decorator function. The gate result is left on g.quota.
    """
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            from auth import get_request_tenant

            tenant_id = get_request_tenant()
            if not tenant_id:
                return jsonify({'error': 'Tenant identification required'}), 401

            gate = get_gate()
            try:
                result = gate.check_and_maybe_record(
                    tenant_id, resource, quantity,
                    dedup_key=request.headers.get('Idempotency-Key')
                )
            except Exception as e:
                print(f"[BILLING] Error checking {resource} limit: {e}", flush=True)
                # Fail closed
                return jsonify({'error': 'Quota check unavailable', 'retryable': True}), 503

            if not result.allowed:
                return limit_exceeded_response(build_upgrade_prompt(gate.catalog, result))

            g.quota = result
            return f(*args, **kwargs)

        return decorated
    return decorator
