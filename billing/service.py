"""
Billing service wiring: one place that builds the catalog-bound components
on top of a store so the app and the tests assemble them the same way.
"""

from dataclasses import dataclass
from typing import Optional

from billing.checkout import CheckoutService
from billing.db import DATABASE_URL, MemoryBillingStore, PostgresBillingStore
from billing.enforce import EnforcementGate
from billing.plans import CATALOG, PlanCatalog
from billing.processor import StripeProcessor, WEBHOOK_SECRET
from billing.reconciler import SubscriptionReconciler, TRIAL_PERIOD_DAYS
from billing.usage import UsageLedger


@dataclass
class BillingServices:
    catalog: PlanCatalog
    store: object
    processor: StripeProcessor
    ledger: UsageLedger
    gate: EnforcementGate
    reconciler: SubscriptionReconciler
    checkout: CheckoutService
    webhook_secret: Optional[str] = None


def build_services(
    store=None,
    catalog: PlanCatalog = CATALOG,
    processor: Optional[StripeProcessor] = None,
    webhook_secret: Optional[str] = WEBHOOK_SECRET,
    trial_period_days: int = TRIAL_PERIOD_DAYS,
    clock=None
) -> BillingServices:
    """
    Assemble the billing services.

    Without an explicit store, Postgres is used when DATABASE_URL is set and
    the in-memory store otherwise.
    """
    if store is None:
        if DATABASE_URL:
            store = PostgresBillingStore(DATABASE_URL)
        else:
            print("[STARTUP] DATABASE_URL not set, using in-memory billing store", flush=True)
            store = MemoryBillingStore()

    processor = processor or StripeProcessor()
    return BillingServices(
        catalog=catalog,
        store=store,
        processor=processor,
        ledger=UsageLedger(store),
        gate=EnforcementGate(catalog, store, clock=clock),
        reconciler=SubscriptionReconciler(
            catalog, store, processor=processor if processor.configured else None,
            trial_period_days=trial_period_days, clock=clock,
        ),
        checkout=CheckoutService(catalog, store, processor=processor, trial_period_days=trial_period_days),
        webhook_secret=webhook_secret,
    )
