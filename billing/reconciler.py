"""
VendorTal Subscription Reconciler

Applies Stripe webhook events to local subscription state:
- checkout.session.completed: create the subscription for the tenant
- customer.subscription.created/updated/deleted: sync plan, add-ons, period, status
- invoice.payment_succeeded: record the invoice, recover past_due subscriptions
- invoice.payment_failed: active -> past_due

Stripe delivers events at least once and in no particular order. Replays are
skipped by event id and every write is a conditional update that refuses
events older than the last one applied.
"""

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple, List

from billing.errors import UnknownSubscriptionReference, InvalidTransition
from billing.models import (
    Subscription, Invoice, TRIALING, ACTIVE, PAST_DUE, CANCELED,
    can_transition, map_processor_status, utcnow,
)
from billing.plans import PlanCatalog, MAIN, BUNDLE, ADDON

TRIAL_PERIOD_DAYS = int(os.environ.get('TRIAL_PERIOD_DAYS', 14))

APPLIED = 'applied'
DUPLICATE = 'duplicate'
STALE = 'stale'
REJECTED = 'rejected'
SKIPPED = 'skipped'
IGNORED = 'ignored'

# Conditional writes that lose a race are re-read and retried this many times
MAX_WRITE_ATTEMPTS = 3


@dataclass(frozen=True)
class ReconcileResult:
    event_id: str
    event_type: str
    outcome: str
    subscription: Optional[Subscription] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'event_type': self.event_type,
            'outcome': self.outcome,
            'subscription': self.subscription.to_dict() if self.subscription else None,
        }


def _timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get('metadata') or {}


def _items(sub_obj: Dict[str, Any]) -> List[Dict[str, Any]]:
    return (sub_obj.get('items') or {}).get('data') or []


def _period(sub_obj: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Current period, read from the subscription or (newer API versions) its first item."""
    start = sub_obj.get('current_period_start')
    end = sub_obj.get('current_period_end')
    if start is None or end is None:
        items = _items(sub_obj)
        if items:
            start = items[0].get('current_period_start')
            end = items[0].get('current_period_end')
    return _timestamp(start), _timestamp(end)


def _invoice_subscription(invoice: Dict[str, Any]) -> Optional[str]:
    ref = invoice.get('subscription')
    if ref is None:
        details = (invoice.get('parent') or {}).get('subscription_details') or {}
        ref = details.get('subscription')
    if isinstance(ref, dict):
        ref = ref.get('id')
    return ref


class SubscriptionReconciler:
    """Keeps local subscriptions in step with the payment processor."""

    def __init__(self, catalog: PlanCatalog, store, processor=None,
                 trial_period_days: int = TRIAL_PERIOD_DAYS, clock=None):
        self.catalog = catalog
        self.store = store
        self.processor = processor
        self.trial_period_days = trial_period_days
        self.clock = clock or utcnow
        self.handlers = {
            'checkout.session.completed': self.handle_checkout_completed,
            'customer.subscription.created': self.handle_subscription_created,
            'customer.subscription.updated': self.handle_subscription_updated,
            'customer.subscription.deleted': self.handle_subscription_deleted,
            'invoice.payment_succeeded': self.handle_payment_succeeded,
            'invoice.payment_failed': self.handle_payment_failed,
        }

    def handle_event(self, event: Dict[str, Any]) -> ReconcileResult:
        """
        Apply one webhook event.

        Args:
            event: Parsed Stripe event ({'id', 'type', 'created', 'data': {'object': ...}})

        Returns:
            ReconcileResult with the outcome and the subscription row after
            the event (None when the event touched no subscription)

        Processor outages and store errors propagate so the webhook answers
        with an error and Stripe redelivers. The event id is only marked as
        processed once the event has been fully handled.
        """
        event_id = event.get('id')
        event_type = event.get('type')
        if not event_id or not event_type:
            raise ValueError('Event is missing id or type')

        if self.store.is_event_processed(event_id):
            print(f"[STRIPE] Duplicate event {event_id} ({event_type}) skipped", flush=True)
            return ReconcileResult(event_id, event_type, DUPLICATE)

        handler = self.handlers.get(event_type)
        if handler is None:
            print(f"[STRIPE] Unhandled event type: {event_type}", flush=True)
            return ReconcileResult(event_id, event_type, IGNORED)

        obj = (event.get('data') or {}).get('object') or {}
        event_at = _timestamp(event.get('created')) or self.clock()

        try:
            outcome, subscription = handler(obj, event_at)
        except UnknownSubscriptionReference as e:
            print(f"[STRIPE] {event_type} {event_id}: {e}, skipping", flush=True)
            outcome, subscription = SKIPPED, None

        self.store.mark_event_processed(event_id, event_type)
        print(f"[STRIPE] {event_type} {event_id}: {outcome}", flush=True)
        return ReconcileResult(event_id, event_type, outcome, subscription)

    # ------------------------------------------------------------------
    # Price -> plan mapping
    # ------------------------------------------------------------------

    def _plans_from_items(self, sub_obj: Dict[str, Any]) -> Tuple[Optional[str], Tuple[str, ...]]:
        """Split subscription items into (base plan id, add-on ids)."""
        base_id = None
        addons = []
        for item in _items(sub_obj):
            price = item.get('price') or {}
            price_id = price.get('id') if isinstance(price, dict) else price
            plan = self.catalog.get_plan_by_stripe_price(price_id) if price_id else None
            if plan is None:
                print(f"[STRIPE] Unmapped price {price_id} on subscription {sub_obj.get('id')}", flush=True)
                continue
            if plan.product_type == ADDON:
                if plan.id not in addons:
                    addons.append(plan.id)
            elif plan.product_type in (MAIN, BUNDLE) and base_id is None:
                base_id = plan.id

        if base_id is None:
            base_id = _metadata(sub_obj).get('plan_id')
        return base_id, tuple(addons)

    def _resolve_tenant(self, obj: Dict[str, Any], reference: str) -> str:
        tenant_id = _metadata(obj).get('tenant_id') or obj.get('client_reference_id')
        if not tenant_id:
            tenant_id = self.store.find_tenant_by_customer(obj.get('customer'))
        if not tenant_id:
            raise UnknownSubscriptionReference(reference)
        return tenant_id

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _create(self, subscription: Subscription) -> Tuple[str, Optional[Subscription]]:
        if not can_transition(None, subscription.status):
            print(f"[STRIPE] Rejected new subscription {subscription.stripe_subscription_id} "
                  f"with status {subscription.status}", flush=True)
            return REJECTED, None

        row, created = self.store.create_subscription(subscription, now=self.clock())
        if created:
            print(f"[STRIPE] Subscription {row.stripe_subscription_id} created for tenant "
                  f"{row.tenant_id}: {row.plan_id} ({row.status})", flush=True)
            return APPLIED, row
        return self._transition(row.stripe_subscription_id, subscription.status,
                                self._sync_changes(subscription), subscription.last_event_at)

    @staticmethod
    def _sync_changes(subscription: Subscription) -> Dict[str, Any]:
        changes = {
            'plan_id': subscription.plan_id,
            'addon_ids': subscription.addon_ids,
            'cancel_at_period_end': subscription.cancel_at_period_end,
        }
        if subscription.current_period_start and subscription.current_period_end:
            changes['current_period_start'] = subscription.current_period_start
            changes['current_period_end'] = subscription.current_period_end
        if subscription.stripe_customer_id:
            changes['stripe_customer_id'] = subscription.stripe_customer_id
        return changes

    def _transition(
        self,
        reference: str,
        target: Optional[str],
        changes: Dict[str, Any],
        event_at: datetime
    ) -> Tuple[str, Optional[Subscription]]:
        """
        Move a subscription to target status (None keeps the current status)
        and apply field changes, guarded by status and event ordering.
        """
        current = None
        for _ in range(MAX_WRITE_ATTEMPTS):
            current = self.store.get_subscription_by_ref(reference)
            if current is None:
                raise UnknownSubscriptionReference(reference)

            if current.last_event_at is not None and event_at < current.last_event_at:
                print(f"[STRIPE] Stale event for {reference} "
                      f"({event_at.isoformat()} < {current.last_event_at.isoformat()})", flush=True)
                return STALE, current

            status = target or current.status
            if not can_transition(current.status, status):
                print(f"[STRIPE] Rejected: {InvalidTransition(current.status, status)} on {reference}", flush=True)
                return REJECTED, current

            values = dict(changes)
            if status != current.status:
                values['status'] = status
                if status == CANCELED:
                    values['canceled_at'] = event_at

            row = self.store.update_subscription_if_newer(
                reference, current.status, values, event_at, now=self.clock()
            )
            if row is not None:
                if status != current.status:
                    print(f"[STRIPE] Subscription {reference}: {current.status} -> {status}", flush=True)
                return APPLIED, row

        return STALE, current

    # ------------------------------------------------------------------
    # Handlers: each returns (outcome, subscription)
    # ------------------------------------------------------------------

    def handle_checkout_completed(self, session: Dict[str, Any], event_at: datetime):
        """
        Handle successful checkout completion.

        Creates the tenant's subscription. Items and period come from the
        processor when one is configured, otherwise from the session metadata.
        """
        if session.get('mode') == 'payment':
            print(f"[STRIPE] One-time purchase {session.get('id')} completed: "
                  f"{_metadata(session).get('plan_id')}", flush=True)
            return IGNORED, None

        reference = session.get('subscription')
        if isinstance(reference, dict):
            reference = reference.get('id')
        if not reference:
            print(f"[STRIPE] Checkout {session.get('id')} has no subscription", flush=True)
            return IGNORED, None

        tenant_id = self._resolve_tenant(session, reference)
        customer_id = session.get('customer')

        plan_id = _metadata(session).get('plan_id')
        addon_ids = tuple(a for a in (_metadata(session).get('addon_ids') or '').split(',') if a)
        period_start = period_end = None
        cancel_at_period_end = False
        processor_status = None

        if self.processor is not None:
            sub_obj = self.processor.retrieve_subscription(reference)
            item_plan, addon_ids = self._plans_from_items(sub_obj)
            plan_id = item_plan or plan_id
            period_start, period_end = _period(sub_obj)
            cancel_at_period_end = bool(sub_obj.get('cancel_at_period_end'))
            processor_status = map_processor_status(sub_obj.get('status'))
            customer_id = customer_id or sub_obj.get('customer')

        if not plan_id:
            print(f"[STRIPE] Checkout {session.get('id')} carries no plan", flush=True)
            return REJECTED, None

        plan = self.catalog.find_plan(plan_id)
        trial = bool(self.trial_period_days) and plan is not None and plan.product_type == MAIN
        status = TRIALING if processor_status == TRIALING or (processor_status is None and trial) else ACTIVE

        return self._create(Subscription(
            tenant_id=tenant_id,
            plan_id=plan_id,
            status=status,
            stripe_subscription_id=reference,
            stripe_customer_id=customer_id,
            addon_ids=addon_ids,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=cancel_at_period_end,
            last_event_at=event_at,
        ))

    def _subscription_from_object(self, sub_obj: Dict[str, Any], event_at: datetime,
                                  fallback_plan: Optional[str] = None) -> Subscription:
        reference = sub_obj.get('id')
        existing = self.store.get_subscription_by_ref(reference)
        tenant_id = existing.tenant_id if existing else self._resolve_tenant(sub_obj, reference)
        plan_id, addon_ids = self._plans_from_items(sub_obj)
        period_start, period_end = _period(sub_obj)
        return Subscription(
            tenant_id=tenant_id,
            plan_id=plan_id or fallback_plan or (existing.plan_id if existing else None),
            status=map_processor_status(sub_obj.get('status')),
            stripe_subscription_id=reference,
            stripe_customer_id=sub_obj.get('customer'),
            addon_ids=addon_ids,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=bool(sub_obj.get('cancel_at_period_end')),
            last_event_at=event_at,
        )

    def handle_subscription_created(self, sub_obj: Dict[str, Any], event_at: datetime):
        subscription = self._subscription_from_object(sub_obj, event_at)
        if subscription.status is None:
            print(f"[STRIPE] Subscription {subscription.stripe_subscription_id} created with "
                  f"status {sub_obj.get('status')}, waiting for activation", flush=True)
            return IGNORED, None
        if not subscription.plan_id:
            print(f"[STRIPE] Subscription {subscription.stripe_subscription_id} carries no plan", flush=True)
            return REJECTED, None
        return self._create(subscription)

    def handle_subscription_updated(self, sub_obj: Dict[str, Any], event_at: datetime):
        """Plan, add-on, period and status changes from the processor."""
        reference = sub_obj.get('id')
        if self.store.get_subscription_by_ref(reference) is None:
            raise UnknownSubscriptionReference(reference)
        subscription = self._subscription_from_object(sub_obj, event_at)
        changes = self._sync_changes(subscription)
        if not changes['plan_id']:
            del changes['plan_id']
        return self._transition(reference, subscription.status, changes, event_at)

    def handle_subscription_deleted(self, sub_obj: Dict[str, Any], event_at: datetime):
        reference = sub_obj.get('id')
        return self._transition(reference, CANCELED, {'cancel_at_period_end': False}, event_at)

    def handle_payment_failed(self, invoice: Dict[str, Any], event_at: datetime):
        reference = _invoice_subscription(invoice)
        if not reference:
            return IGNORED, None
        print(f"[STRIPE] Payment failed for subscription {reference}", flush=True)
        return self._transition(reference, PAST_DUE, {}, event_at)

    def handle_payment_succeeded(self, invoice: Dict[str, Any], event_at: datetime):
        """
        Record the paid invoice and bring a past_due subscription back to active.
        """
        reference = _invoice_subscription(invoice)
        existing = self.store.get_subscription_by_ref(reference) if reference else None
        if reference and existing is None:
            raise UnknownSubscriptionReference(reference)

        tenant_id = existing.tenant_id if existing else self.store.find_tenant_by_customer(invoice.get('customer'))
        paid_at = _timestamp((invoice.get('status_transitions') or {}).get('paid_at')) or event_at
        recorded = False
        if invoice.get('id'):
            recorded = self.store.record_invoice(Invoice(
                stripe_invoice_id=invoice['id'],
                tenant_id=tenant_id,
                stripe_subscription_id=reference,
                amount_paid=int(invoice.get('amount_paid') or 0),
                currency=invoice.get('currency') or 'usd',
                status=invoice.get('status') or 'paid',
                paid_at=paid_at,
            ))

        if existing is None:
            return (APPLIED if recorded else IGNORED), None
        if existing.status == PAST_DUE:
            return self._transition(reference, ACTIVE, {}, event_at)
        return (APPLIED if recorded else IGNORED), existing
