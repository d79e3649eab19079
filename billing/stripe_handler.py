"""
VendorTal Billing Routes

POST /v2/billing/webhook      - Stripe webhook (signature verified)
POST /v2/billing/checkout     - Start a hosted checkout session
POST /v2/billing/portal       - Open the customer portal
POST /v2/billing/subscription - Change the plan of the live subscription
GET  /v2/billing/plans        - Plan catalog
GET  /v2/billing/entitlements - Resolved features and limits for the tenant
GET  /v2/billing/usage        - Usage summary for the current period
POST /v2/billing/usage/check  - Quota check (and record)
POST /v2/billing/quote        - Quote a plan change
GET  /v2/billing/invoices     - Paid invoices for the tenant
GET  /v2/billing/health       - Module health
"""

from flask import Blueprint, request, jsonify, g

from auth import require_tenant
from billing.enforce import build_upgrade_prompt, limit_exceeded_response
from billing.entitlements import resolve_entitlements
from billing.errors import (
    PlanNotFound,
    PlanNotPurchasable,
    BillingAccountNotFound,
    PaymentProcessorError,
    PaymentProcessorUnavailable,
    SubscriptionExists,
    WebhookVerificationError,
)
from billing.plans import RESOURCES
from billing.pricing import quote_plan_change
from billing.processor import verify_webhook
from billing.usage import get_usage_summary, billing_period


def _processor_error(e: PaymentProcessorError):
    print(f"[STRIPE] {e}", flush=True)
    if isinstance(e, PaymentProcessorUnavailable):
        return jsonify({'error': 'Payment processor unavailable', 'retryable': True}), 503
    return jsonify({'error': 'Payment processor rejected the request', 'retryable': False}), 502


def init_billing(services):
    """Create the billing blueprint bound to the given BillingServices."""

    billing_bp = Blueprint('billing', __name__, url_prefix='/v2/billing')

    # ------------------------------------------------------------------
    # POST /v2/billing/webhook
    # ------------------------------------------------------------------

    @billing_bp.route('/webhook', methods=['POST'])
    def stripe_webhook():
        """
        Handle Stripe webhook events.

        Stripe sends events to this endpoint when subscription changes occur.
        We verify the signature and hand the event to the reconciler.
        Anything other than a 2xx makes Stripe redeliver the event.
        """
        if not services.webhook_secret:
            print("[STRIPE] WARNING: STRIPE_WEBHOOK_SECRET not configured", flush=True)
            return jsonify({'error': 'Webhook secret not configured'}), 500

        try:
            event = verify_webhook(
                request.get_data(),
                request.headers.get('Stripe-Signature'),
                services.webhook_secret
            )
        except WebhookVerificationError as e:
            print(f"[STRIPE] {e}", flush=True)
            return jsonify({'error': 'Invalid webhook'}), 400

        print(f"[STRIPE] Received event: {event['type']} ({event['id']})", flush=True)

        try:
            result = services.reconciler.handle_event(event)
        except Exception as e:
            print(f"[STRIPE] Error processing {event['type']}: {e}", flush=True)
            return jsonify({'error': 'Event processing failed'}), 500

        return jsonify({'status': 'success', 'outcome': result.outcome}), 200

    # ------------------------------------------------------------------
    # Checkout and portal
    # ------------------------------------------------------------------

    @billing_bp.route('/checkout', methods=['POST'])
    @require_tenant
    def create_checkout():
        """
        Start a checkout session.

        Request body:
            {"plan_id": "professional", "addon_ids": ["sbom_integration"], "email": "..."}

        Returns 200:
            {"session_id": "cs_...", "url": "https://checkout.stripe.com/..."}
        """
        data = request.get_json(silent=True) or {}
        plan_id = data.get('plan_id')
        if not plan_id:
            return jsonify({'error': 'plan_id is required'}), 400
        addon_ids = data.get('addon_ids') or []
        if not isinstance(addon_ids, list):
            return jsonify({'error': 'addon_ids must be a list'}), 400

        try:
            session = services.checkout.create_checkout_session(
                g.tenant_id, plan_id, customer_email=data.get('email'), addon_ids=addon_ids
            )
        except PlanNotFound as e:
            return jsonify({'error': str(e)}), 404
        except PlanNotPurchasable as e:
            return jsonify({'error': str(e), 'contact_sales': e.contact_sales}), 422
        except SubscriptionExists as e:
            return jsonify({
                'error': str(e),
                'subscription_id': e.stripe_subscription_id,
                'change_plan_url': '/v2/billing/subscription',
                'portal_url': '/v2/billing/portal'
            }), 409
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        except PaymentProcessorError as e:
            return _processor_error(e)

        return jsonify({'session_id': session.session_id, 'url': session.redirect_url}), 200

    @billing_bp.route('/subscription', methods=['POST'])
    @require_tenant
    def change_subscription():
        """
        Change the plan and add-ons of the tenant's live subscription.

        Request body:
            {"plan_id": "professional", "addon_ids": ["sbom_integration"]}

        Returns 200 with the requested change; the subscription itself is
        updated when Stripe's webhook confirms it.
        """
        data = request.get_json(silent=True) or {}
        plan_id = data.get('plan_id')
        if not plan_id:
            return jsonify({'error': 'plan_id is required'}), 400
        addon_ids = data.get('addon_ids') or []
        if not isinstance(addon_ids, list):
            return jsonify({'error': 'addon_ids must be a list'}), 400

        try:
            change = services.checkout.change_plan(g.tenant_id, plan_id, addon_ids)
        except (PlanNotFound, BillingAccountNotFound) as e:
            return jsonify({'error': str(e)}), 404
        except PlanNotPurchasable as e:
            return jsonify({'error': str(e), 'contact_sales': e.contact_sales}), 422
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        except PaymentProcessorError as e:
            return _processor_error(e)

        return jsonify(change.to_dict()), 200

    @billing_bp.route('/portal', methods=['POST'])
    @require_tenant
    def create_portal():
        try:
            session = services.checkout.create_portal_session(g.tenant_id)
        except BillingAccountNotFound as e:
            return jsonify({'error': str(e)}), 404
        except PaymentProcessorError as e:
            return _processor_error(e)
        return jsonify({'url': session.redirect_url}), 200

    # ------------------------------------------------------------------
    # Catalog, entitlements and usage
    # ------------------------------------------------------------------

    @billing_bp.route('/plans', methods=['GET'])
    def list_plans():
        plans = services.catalog.list_plans(
            product_type=request.args.get('type'),
            cadence=request.args.get('cadence')
        )
        return jsonify({'plans': [p.to_dict() for p in plans]})

    @billing_bp.route('/entitlements', methods=['GET'])
    @require_tenant
    def get_entitlements():
        subscription = services.store.get_subscription(g.tenant_id)
        entitlements = resolve_entitlements(services.catalog, subscription)
        return jsonify({
            'tenant_id': g.tenant_id,
            'subscription': subscription.to_dict() if subscription else None,
            'entitlements': entitlements.to_dict(),
        })

    @billing_bp.route('/usage', methods=['GET'])
    @require_tenant
    def get_usage():
        return jsonify(get_usage_summary(services.catalog, services.store, g.tenant_id, now=services.gate.clock()))

    @billing_bp.route('/usage/check', methods=['POST'])
    @require_tenant
    def check_usage():
        """
        Check a quota and, unless record is false, consume it.

        Request body:
            {"resource": "assessments", "quantity": 1, "record": true, "dedup_key": "..."}

        Returns 200 with the gate result, or 402 with an upgrade prompt.
        """
        data = request.get_json(silent=True) or {}
        resource = data.get('resource')
        if resource not in RESOURCES:
            return jsonify({'error': f'resource must be one of {list(RESOURCES)}'}), 400

        quantity = data.get('quantity', 1)
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            return jsonify({'error': 'quantity must be a positive integer'}), 400

        result = services.gate.check_and_maybe_record(
            g.tenant_id, resource, quantity,
            record=bool(data.get('record', True)),
            dedup_key=data.get('dedup_key') or request.headers.get('Idempotency-Key')
        )
        if not result.allowed:
            return limit_exceeded_response(build_upgrade_prompt(services.catalog, result))
        return jsonify(result.to_dict()), 200

    @billing_bp.route('/quote', methods=['POST'])
    @require_tenant
    def quote():
        """Quote switching the tenant's current plan to plan_id."""
        data = request.get_json(silent=True) or {}
        subscription = services.store.get_subscription(g.tenant_id)
        if subscription is None or not subscription.grants_access:
            return jsonify({'error': 'No active subscription'}), 404

        try:
            old_plan = services.catalog.get_plan(subscription.plan_id)
            new_plan = services.catalog.get_plan(data.get('plan_id') or '')
        except PlanNotFound as e:
            return jsonify({'error': str(e)}), 404

        now = services.gate.clock()
        period_start, period_end = billing_period(subscription, now)
        try:
            result = quote_plan_change(old_plan, new_plan, now, period_start, period_end)
        except PlanNotPurchasable as e:
            return jsonify({'error': str(e), 'contact_sales': e.contact_sales}), 422
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        return jsonify(result.to_dict()), 200

    @billing_bp.route('/invoices', methods=['GET'])
    @require_tenant
    def list_invoices():
        invoices = services.store.list_invoices(g.tenant_id)
        return jsonify({'invoices': [
            {
                'id': inv.stripe_invoice_id,
                'subscription': inv.stripe_subscription_id,
                'amount_paid': inv.amount_paid,
                'currency': inv.currency,
                'status': inv.status,
                'paid_at': inv.paid_at.isoformat() if inv.paid_at else None,
            }
            for inv in invoices
        ]})

    # Health check endpoint for billing module
    @billing_bp.route('/health', methods=['GET'])
    def billing_health():
        """Health check for billing module."""
        return jsonify({
            'status': 'ok',
            'module': 'billing',
            'store': type(services.store).__name__,
            'plans': len(services.catalog),
            'stripe_configured': services.processor.configured,
            'webhook_secret_configured': bool(services.webhook_secret)
        })

    return billing_bp
