"""
VendorTal Billing Module

This module handles:
- Plan catalog, add-ons, bundles and pricing
- Entitlement resolution and usage limit enforcement
- Stripe integration (webhooks, checkout and portal sessions)
"""

from billing.plans import CATALOG, Plan, PlanCatalog, get_plan, list_plans, get_plan_by_stripe_price
from billing.entitlements import Entitlements, resolve_entitlements
from billing.errors import BillingError

__all__ = [
    'CATALOG', 'Plan', 'PlanCatalog', 'get_plan', 'list_plans', 'get_plan_by_stripe_price',
    'Entitlements', 'resolve_entitlements', 'BillingError',
]
