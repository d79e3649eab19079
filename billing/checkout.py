"""
VendorTal Checkout

Starts hosted checkout and customer-portal sessions and changes the plan of
a live subscription. Nothing local changes here: the subscription only
exists (or moves) once the processor confirms it through the webhook.
"""

import os
from dataclasses import dataclass
from typing import Optional, Iterable, Dict, Any, Tuple

from billing.errors import PlanNotPurchasable, BillingAccountNotFound, SubscriptionExists
from billing.plans import PlanCatalog, Plan, MAIN, ADDON, ONE_TIME, is_purchasable
from billing.processor import StripeProcessor
from billing.reconciler import TRIAL_PERIOD_DAYS

BASE_URL = os.environ.get('BASE_URL', 'http://localhost:5000')
CHECKOUT_SUCCESS_URL = os.environ.get(
    'CHECKOUT_SUCCESS_URL', f'{BASE_URL}/billing/success?session_id={{CHECKOUT_SESSION_ID}}'
)
CHECKOUT_CANCEL_URL = os.environ.get('CHECKOUT_CANCEL_URL', f'{BASE_URL}/pricing')
PORTAL_RETURN_URL = os.environ.get('PORTAL_RETURN_URL', f'{BASE_URL}/settings/billing')


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    redirect_url: str


@dataclass(frozen=True)
class PortalSession:
    redirect_url: str


@dataclass(frozen=True)
class PlanChange:
    stripe_subscription_id: str
    plan_id: str
    addon_ids: Tuple[str, ...]
    proration_behavior: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'subscription_id': self.stripe_subscription_id,
            'plan_id': self.plan_id,
            'addon_ids': list(self.addon_ids),
            'proration_behavior': self.proration_behavior,
        }


class CheckoutService:

    def __init__(
        self,
        catalog: PlanCatalog,
        store,
        processor: Optional[StripeProcessor] = None,
        success_url: str = CHECKOUT_SUCCESS_URL,
        cancel_url: str = CHECKOUT_CANCEL_URL,
        portal_return_url: str = PORTAL_RETURN_URL,
        trial_period_days: int = TRIAL_PERIOD_DAYS
    ):
        self.catalog = catalog
        self.store = store
        self.processor = processor or StripeProcessor()
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.portal_return_url = portal_return_url
        self.trial_period_days = trial_period_days

    def _purchasable(self, plan_id: str) -> Plan:
        plan = self.catalog.get_plan(plan_id)
        if not is_purchasable(plan):
            raise PlanNotPurchasable(plan.id, contact_sales=plan.contact_sales)
        return plan

    def _addons(self, plan: Plan, addon_ids: Iterable[str]):
        addons = []
        for addon_id in addon_ids:
            addon = self._purchasable(addon_id)
            if addon.product_type != ADDON or addon.cadence == ONE_TIME:
                raise ValueError(f'{addon_id} is not a recurring add-on')
            if addon.cadence != plan.cadence:
                raise ValueError(f'{addon_id} is billed {addon.cadence}, {plan.id} is billed {plan.cadence}')
            if addon not in addons:
                addons.append(addon)
        return addons

    def build_session_params(
        self,
        tenant_id: str,
        plan_id: str,
        customer_email: Optional[str] = None,
        addon_ids: Iterable[str] = ()
    ) -> Dict[str, Any]:
        """
        Validate a purchase and build the Stripe checkout parameters.

        Raises:
            PlanNotFound: unknown plan or add-on
            PlanNotPurchasable: free tier or contact-sales pricing
            SubscriptionExists: recurring purchase while a subscription is live
            ValueError: add-ons on a one-time purchase or a different cadence
        """
        plan = self._purchasable(plan_id)
        metadata = {'tenant_id': tenant_id, 'plan_id': plan.id}
        existing = self.store.get_subscription(tenant_id)

        if plan.cadence == ONE_TIME:
            if addon_ids:
                raise ValueError('Add-ons cannot be bought with a one-time product')
            line_items = [{'price': plan.stripe_price_id, 'quantity': 1}]
            mode = 'payment'
        else:
            # A second subscription would keep billing the first one
            if existing is not None and existing.grants_access:
                raise SubscriptionExists(tenant_id, existing.stripe_subscription_id)
            addons = self._addons(plan, addon_ids)
            line_items = [{'price': p.stripe_price_id, 'quantity': 1} for p in [plan] + addons]
            mode = 'subscription'
            if addons:
                metadata['addon_ids'] = ','.join(a.id for a in addons)

        params = {
            'mode': mode,
            'line_items': line_items,
            'success_url': self.success_url,
            'cancel_url': self.cancel_url,
            'client_reference_id': tenant_id,
            'metadata': metadata,
            'allow_promotion_codes': True,
            'billing_address_collection': 'required',
        }

        # Reuse the tenant's Stripe customer when we already have one
        if existing is not None and existing.stripe_customer_id:
            params['customer'] = existing.stripe_customer_id
        elif customer_email:
            params['customer_email'] = customer_email

        if mode == 'subscription':
            subscription_data = {'metadata': metadata}
            # Trials are for first subscriptions only
            if self.trial_period_days and plan.product_type == MAIN and existing is None:
                subscription_data['trial_period_days'] = self.trial_period_days
            params['subscription_data'] = subscription_data

        return params

    def create_checkout_session(
        self,
        tenant_id: str,
        plan_id: str,
        customer_email: Optional[str] = None,
        addon_ids: Iterable[str] = ()
    ) -> CheckoutSession:
        """
        Create a Stripe checkout session for a plan (and optional add-ons).

        Args:
            tenant_id: The tenant identifier
            plan_id: Plan to purchase
            customer_email: Prefill for first-time customers
            addon_ids: Recurring add-ons on the plan's cadence

        Returns:
            CheckoutSession with the hosted checkout URL

        Raises:
            PlanNotFound, PlanNotPurchasable, SubscriptionExists, ValueError
            before any network call;
            PaymentProcessorUnavailable / PaymentProcessorError from Stripe
        """
        addon_ids = tuple(addon_ids or ())
        params = self.build_session_params(tenant_id, plan_id, customer_email, addon_ids)
        session = self.processor.create_checkout_session(**params)
        print(f"[CHECKOUT] Session {session['id']} for tenant {tenant_id}: {plan_id} "
              f"{list(addon_ids) if addon_ids else ''}".rstrip(), flush=True)
        return CheckoutSession(session_id=session['id'], redirect_url=session['url'])

    def create_portal_session(self, tenant_id: str) -> PortalSession:
        """Customer portal session for managing payment methods and invoices."""
        subscription = self.store.get_subscription(tenant_id)
        if subscription is None or not subscription.stripe_customer_id:
            raise BillingAccountNotFound(tenant_id)

        session = self.processor.create_portal_session(
            customer=subscription.stripe_customer_id,
            return_url=self.portal_return_url,
        )
        return PortalSession(redirect_url=session['url'])

    def change_plan(self, tenant_id: str, plan_id: str, addon_ids: Iterable[str] = ()) -> PlanChange:
        """
        Move the tenant's live subscription to another plan and add-on set.

        Items that are no longer wanted are deleted and new prices added on
        the same Stripe subscription, prorated. The local row changes when
        the resulting customer.subscription.updated webhook arrives.

        Raises:
            BillingAccountNotFound: no live subscription to change
            PlanNotFound, PlanNotPurchasable: as for checkout
            ValueError: not a recurring plan, a monthly/annual switch
                (scheduled through the portal) or nothing to change
        """
        subscription = self.store.get_subscription(tenant_id)
        if subscription is None or not subscription.grants_access:
            raise BillingAccountNotFound(tenant_id)

        plan = self._purchasable(plan_id)
        if plan.cadence == ONE_TIME or plan.product_type == ADDON:
            raise ValueError(f'{plan.id} is not a subscription plan')
        current = self.catalog.find_plan(subscription.plan_id)
        if current is not None and current.cadence != plan.cadence:
            raise ValueError('Switching between monthly and annual billing is scheduled through the customer portal')
        addons = self._addons(plan, tuple(addon_ids or ()))

        wanted = [p.stripe_price_id for p in [plan] + addons]
        stripe_sub = self.processor.retrieve_subscription(subscription.stripe_subscription_id)
        items = []
        kept = set()
        for item in (stripe_sub.get('items') or {}).get('data') or []:
            price_id = (item.get('price') or {}).get('id')
            if price_id in wanted and price_id not in kept:
                kept.add(price_id)
            else:
                items.append({'id': item['id'], 'deleted': True})
        items.extend({'price': p, 'quantity': 1} for p in wanted if p not in kept)
        if not items:
            raise ValueError(f'Subscription is already on {plan.id}')

        metadata = {'tenant_id': tenant_id, 'plan_id': plan.id,
                    'addon_ids': ','.join(a.id for a in addons)}
        self.processor.modify_subscription(
            subscription.stripe_subscription_id,
            items=items,
            proration_behavior='create_prorations',
            metadata=metadata,
        )
        print(f"[CHECKOUT] Tenant {tenant_id} changing {subscription.stripe_subscription_id}: "
              f"{subscription.plan_id} -> {plan.id}", flush=True)
        return PlanChange(
            stripe_subscription_id=subscription.stripe_subscription_id,
            plan_id=plan.id,
            addon_ids=tuple(a.id for a in addons),
            proration_behavior='create_prorations',
        )
