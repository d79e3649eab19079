import hashlib
import hmac
import json
import time

import pytest

from app import create_app
from auth import generate_jwt
from billing.errors import PaymentProcessorUnavailable
from billing.service import build_services

from conftest import NOW, WEBHOOK_SECRET

TENANT = {'X-Tenant-ID': 'tenant-1'}


@pytest.fixture
def services(store, processor, clock):
    return build_services(store=store, processor=processor, webhook_secret=WEBHOOK_SECRET,
                          trial_period_days=0, clock=clock)


@pytest.fixture
def client(services):
    app = create_app(services)
    app.config['TESTING'] = True
    return app.test_client()


def signed_post(client, event, secret=WEBHOOK_SECRET):
    payload = json.dumps(event)
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f'{timestamp}.{payload}'.encode(), hashlib.sha256).hexdigest()
    return client.post(
        '/v2/billing/webhook',
        data=payload,
        content_type='application/json',
        headers={'Stripe-Signature': f't={timestamp},v1={signature}'},
    )


def checkout_event(catalog, processor, event_id='evt_1', plan_id='starter'):
    price = catalog.get_plan(plan_id).stripe_price_id
    processor.subscriptions['sub_1'] = {
        'id': 'sub_1', 'customer': 'cus_1', 'status': 'active',
        'items': {'data': [{'price': {'id': price}}]},
    }
    return {
        'id': event_id,
        'type': 'checkout.session.completed',
        'created': int(NOW.timestamp()),
        'data': {'object': {
            'id': 'cs_1', 'mode': 'subscription', 'subscription': 'sub_1',
            'customer': 'cus_1', 'client_reference_id': 'tenant-1',
            'metadata': {'tenant_id': 'tenant-1', 'plan_id': plan_id},
        }},
    }


class TestWebhook:

    def test_applies_event(self, client, catalog, processor, store):
        resp = signed_post(client, checkout_event(catalog, processor))
        assert resp.status_code == 200
        assert resp.get_json()['outcome'] == 'applied'
        assert store.get_subscription('tenant-1').plan_id == 'starter'

        replay = signed_post(client, checkout_event(catalog, processor))
        assert replay.status_code == 200
        assert replay.get_json()['outcome'] == 'duplicate'

    def test_bad_signature(self, client, catalog, processor, store):
        resp = signed_post(client, checkout_event(catalog, processor), secret='whsec_wrong')
        assert resp.status_code == 400
        assert store.get_subscription('tenant-1') is None

    def test_missing_signature(self, client):
        resp = client.post('/v2/billing/webhook', data='{}', content_type='application/json')
        assert resp.status_code == 400

    def test_secret_not_configured(self, store, processor, clock):
        app = create_app(build_services(store=store, processor=processor, webhook_secret=None, clock=clock))
        resp = app.test_client().post('/v2/billing/webhook', data='{}')
        assert resp.status_code == 500

    def test_processing_failure_asks_for_redelivery(self, client, catalog, processor, store):
        event = checkout_event(catalog, processor)
        processor.error = PaymentProcessorUnavailable('Subscription.retrieve: timeout')
        assert signed_post(client, event).status_code == 500

        processor.error = None
        resp = signed_post(client, event)
        assert resp.status_code == 200
        assert resp.get_json()['outcome'] == 'applied'


class TestCheckoutRoutes:

    def test_requires_tenant(self, client):
        assert client.post('/v2/billing/checkout', json={'plan_id': 'starter'}).status_code == 401

    def test_checkout(self, client, processor):
        resp = client.post('/v2/billing/checkout', json={'plan_id': 'starter'}, headers=TENANT)
        assert resp.status_code == 200
        assert resp.get_json() == {'session_id': 'cs_test_1', 'url': 'https://checkout.stripe.test/c/1'}

    def test_missing_plan(self, client):
        assert client.post('/v2/billing/checkout', json={}, headers=TENANT).status_code == 400

    def test_unknown_plan(self, client):
        assert client.post('/v2/billing/checkout', json={'plan_id': 'platinum'}, headers=TENANT).status_code == 404

    def test_contact_sales(self, client):
        resp = client.post('/v2/billing/checkout', json={'plan_id': 'federal'}, headers=TENANT)
        assert resp.status_code == 422
        assert resp.get_json()['contact_sales'] is True

    def test_processor_unavailable(self, client, processor):
        processor.error = PaymentProcessorUnavailable('checkout.Session.create: timeout')
        resp = client.post('/v2/billing/checkout', json={'plan_id': 'starter'}, headers=TENANT)
        assert resp.status_code == 503
        assert resp.get_json()['retryable'] is True

    def test_live_subscription_gets_409(self, client, processor, make_subscription):
        make_subscription(plan_id='starter')
        resp = client.post('/v2/billing/checkout', json={'plan_id': 'professional'}, headers=TENANT)
        assert resp.status_code == 409
        data = resp.get_json()
        assert data['subscription_id'] == 'sub_1'
        assert data['change_plan_url'] == '/v2/billing/subscription'
        assert processor.checkout_calls == []

    def test_change_plan(self, client, catalog, processor, make_subscription):
        make_subscription(plan_id='starter')
        processor.subscriptions['sub_1'] = {'id': 'sub_1', 'items': {'data': [
            {'id': 'si_1', 'price': {'id': catalog.get_plan('starter').stripe_price_id}},
        ]}}
        resp = client.post('/v2/billing/subscription', json={'plan_id': 'professional'}, headers=TENANT)
        assert resp.status_code == 200
        assert resp.get_json() == {'subscription_id': 'sub_1', 'plan_id': 'professional',
                                   'addon_ids': [], 'proration_behavior': 'create_prorations'}
        assert processor.modify_calls[0]['items'][0] == {'id': 'si_1', 'deleted': True}

    def test_change_plan_without_subscription(self, client):
        resp = client.post('/v2/billing/subscription', json={'plan_id': 'professional'}, headers=TENANT)
        assert resp.status_code == 404

    def test_portal_without_account(self, client):
        assert client.post('/v2/billing/portal', headers=TENANT).status_code == 404

    def test_portal(self, client, make_subscription):
        make_subscription()
        resp = client.post('/v2/billing/portal', headers=TENANT)
        assert resp.status_code == 200
        assert resp.get_json()['url'] == 'https://billing.stripe.test/p/1'


class TestTenantAuth:

    def test_jwt_tenant(self, client, make_subscription):
        make_subscription(plan_id='professional')
        token = generate_jwt('user-1', 'tenant-1', email='a@example.com')
        resp = client.get('/v2/billing/entitlements', headers={'Authorization': f'Bearer {token}'})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['tenant_id'] == 'tenant-1'
        assert data['entitlements']['plan']['id'] == 'professional'

    def test_invalid_token_does_not_fall_back(self, client):
        headers = {'Authorization': 'Bearer not-a-token', 'X-Tenant-ID': 'tenant-1'}
        assert client.get('/v2/billing/entitlements', headers=headers).status_code == 401


class TestUsageRoutes:

    def test_free_tier_vendor_limit(self, client):
        for _ in range(5):
            resp = client.post('/v2/billing/usage/check', json={'resource': 'vendors'}, headers=TENANT)
            assert resp.status_code == 200

        resp = client.post('/v2/billing/usage/check', json={'resource': 'vendors'}, headers=TENANT)
        assert resp.status_code == 402
        prompt = resp.get_json()
        assert prompt['plan'] == 'free'
        assert prompt['current'] == 5
        assert prompt['limit'] == 5
        assert prompt['upgrade_to'] == 'starter'
        assert prompt['upgrade_url'].endswith('/v2/billing/checkout')

    def test_dry_run(self, client):
        resp = client.post('/v2/billing/usage/check', json={'resource': 'vendors', 'record': False}, headers=TENANT)
        assert resp.status_code == 200
        assert resp.get_json()['recorded'] is False

        usage = client.get('/v2/billing/usage', headers=TENANT).get_json()
        assert usage['usage']['vendors'] == 0

    def test_dedup_key(self, client):
        body = {'resource': 'assessments', 'dedup_key': 'req-1'}
        assert client.post('/v2/billing/usage/check', json=body, headers=TENANT).get_json()['recorded'] is True
        assert client.post('/v2/billing/usage/check', json=body, headers=TENANT).get_json()['recorded'] is False
        assert client.get('/v2/billing/usage', headers=TENANT).get_json()['usage']['assessments'] == 1

    @pytest.mark.parametrize('body', [
        {'resource': 'widgets'},
        {'resource': 'vendors', 'quantity': 0},
        {'resource': 'vendors', 'quantity': 'two'},
    ])
    def test_bad_request(self, client, body):
        assert client.post('/v2/billing/usage/check', json=body, headers=TENANT).status_code == 400


class TestCatalogRoutes:

    def test_plans_filter(self, client):
        resp = client.get('/v2/billing/plans?type=bundle&cadence=monthly')
        ids = [p['id'] for p in resp.get_json()['plans']]
        assert ids == ['compliance_suite', 'enterprise_plus']

    def test_quote(self, client, make_subscription):
        make_subscription(plan_id='starter')
        resp = client.post('/v2/billing/quote', json={'plan_id': 'professional'}, headers=TENANT)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['prorated'] is True
        assert 0 < data['amount'] < 10000

    def test_quote_without_subscription(self, client):
        assert client.post('/v2/billing/quote', json={'plan_id': 'professional'}, headers=TENANT).status_code == 404

    def test_invoices(self, client, catalog, processor):
        signed_post(client, checkout_event(catalog, processor))
        signed_post(client, {
            'id': 'evt_2', 'type': 'invoice.payment_succeeded', 'created': int(NOW.timestamp()) + 60,
            'data': {'object': {'id': 'in_1', 'subscription': 'sub_1', 'customer': 'cus_1',
                                'amount_paid': 4900, 'currency': 'usd', 'status': 'paid'}},
        })
        invoices = client.get('/v2/billing/invoices', headers=TENANT).get_json()['invoices']
        assert [i['id'] for i in invoices] == ['in_1']

    def test_health(self, client):
        data = client.get('/v2/billing/health').get_json()
        assert data['status'] == 'ok'
        assert data['store'] == 'MemoryBillingStore'
        assert data['webhook_secret_configured'] is True
        assert client.get('/v2/health').status_code == 200


class TestRequireQuota:

    @pytest.fixture
    def quota_client(self, services):
        from flask import Flask, g, jsonify
        from billing.enforce import require_quota

        app = Flask(__name__)

        @app.route('/assessments', methods=['POST'])
        @require_quota(lambda: services.gate, 'assessments')
        def create_assessment():
            return jsonify({'remaining': g.quota.remaining}), 201

        return app.test_client()

    def test_consumes_quota(self, quota_client):
        resp = quota_client.post('/assessments', headers=TENANT)
        assert resp.status_code == 201
        assert resp.get_json()['remaining'] == 1

        resp = quota_client.post('/assessments', headers=TENANT)
        assert resp.status_code == 402
        assert resp.get_json()['feature'] == 'assessments'

    def test_idempotency_key_replay(self, quota_client, store):
        headers = dict(TENANT, **{'Idempotency-Key': 'create-1'})
        assert quota_client.post('/assessments', headers=headers).status_code == 201
        assert quota_client.post('/assessments', headers=headers).status_code == 201

    def test_requires_tenant(self, quota_client):
        assert quota_client.post('/assessments').status_code == 401

    def test_fails_closed(self, quota_client, services, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError('database unavailable')
        monkeypatch.setattr(services.store, 'check_and_record_usage', broken)
        resp = quota_client.post('/assessments', headers=TENANT)
        assert resp.status_code == 503
        assert resp.get_json()['retryable'] is True
