"""
VendorTal Entitlement Resolver

Derives a tenant's effective features and resource limits from its
subscription plan and add-ons. Nothing here is persisted; entitlements are
recomputed on every call so a reconciled plan change is picked up at once.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Optional, Iterable, Mapping, FrozenSet, Tuple, Dict, Any

from billing.errors import EntitlementResolutionError
from billing.models import Subscription
from billing.plans import PlanCatalog, Plan, ADDON, MAIN, BUNDLE, ALL_FEATURES, UNLIMITED


@dataclass(frozen=True)
class Entitlements:
    plan_id: str
    tier: Optional[str]
    features: FrozenSet[str]
    limits: Mapping[str, int]
    addon_ids: Tuple[str, ...] = ()
    # True when an unknown plan forced the fallback tier
    degraded: bool = False
    plan_name: str = field(default='', compare=False)

    def has_feature(self, feature: str) -> bool:
        return ALL_FEATURES in self.features or feature in self.features

    def limit_for(self, resource: str) -> int:
        """Resolved limit; resources the plan does not list are not available (0)."""
        return self.limits.get(resource, 0)

    def is_unlimited(self, resource: str) -> bool:
        return self.limit_for(resource) == UNLIMITED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'plan': {'id': self.plan_id, 'name': self.plan_name, 'tier': self.tier},
            'features': sorted(self.features),
            'all_features': ALL_FEATURES in self.features,
            'limits': dict(self.limits),
            'addons': list(self.addon_ids),
            'degraded': self.degraded,
        }


def merge_limit(existing: int, incoming: int) -> int:
    """Combine two limits for the same resource. Unlimited always wins."""
    if existing == UNLIMITED or incoming == UNLIMITED:
        return UNLIMITED
    return max(existing, incoming)


def _lookup(catalog: PlanCatalog, plan_id: str, role: str) -> Plan:
    plan = catalog.find_plan(plan_id)
    if plan is None:
        raise EntitlementResolutionError(plan_id, role)
    if role == 'plan' and plan.product_type not in (MAIN, BUNDLE):
        raise EntitlementResolutionError(plan_id, role)
    if role == 'add-on' and (plan.product_type != ADDON or not plan.is_recurring):
        raise EntitlementResolutionError(plan_id, role)
    return plan


def resolve_entitlements(
    catalog: PlanCatalog,
    subscription: Optional[Subscription],
    addons: Optional[Iterable[str]] = None
) -> Entitlements:
    """
    Compute effective features and limits.

    Args:
        catalog: Plan catalog
        subscription: The tenant's current subscription, or None
        addons: Add-on plan ids; defaults to the subscription's add-ons

    Returns:
        Entitlements. A missing or canceled subscription resolves to the
        catalog's fallback tier. Unknown plans never grant more than the
        fallback tier; unknown add-ons are ignored.
    """
    degraded = False

    if subscription is not None and subscription.grants_access:
        base_id = subscription.plan_id
        if addons is None:
            addons = subscription.addon_ids
    else:
        base_id = catalog.fallback_plan.id
        if addons is None:
            addons = ()

    try:
        base = _lookup(catalog, base_id, 'plan')
    except EntitlementResolutionError as e:
        tenant = subscription.tenant_id if subscription else '?'
        print(f"[BILLING] {e} for tenant {tenant}; falling back to {catalog.fallback_plan.id}", flush=True)
        base = catalog.fallback_plan
        degraded = True

    features = set(catalog.inherited_features(base.id))
    limits = dict(base.limits)
    applied = []

    for addon_id in addons:
        try:
            addon = _lookup(catalog, addon_id, 'add-on')
        except EntitlementResolutionError as e:
            print(f"[BILLING] {e}; add-on ignored", flush=True)
            continue
        features |= catalog.inherited_features(addon.id)
        for resource, value in addon.limits.items():
            limits[resource] = merge_limit(limits.get(resource, 0), value)
        applied.append(addon.id)

    return Entitlements(
        plan_id=base.id,
        tier=base.tier,
        features=frozenset(features),
        limits=MappingProxyType(limits),
        addon_ids=tuple(applied),
        degraded=degraded,
        plan_name=base.name,
    )


def resolve_for_tenant(catalog: PlanCatalog, store, tenant_id: str) -> Entitlements:
    """Resolve entitlements from the tenant's stored subscription."""
    return resolve_entitlements(catalog, store.get_subscription(tenant_id))
