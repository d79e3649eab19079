from unittest.mock import patch

import pytest
import stripe

from billing.checkout import CheckoutService
from billing.models import ACTIVE, TRIALING, PAST_DUE, CANCELED
from billing.errors import (
    PlanNotFound, PlanNotPurchasable, BillingAccountNotFound,
    PaymentProcessorError, PaymentProcessorUnavailable, SubscriptionExists,
)
from billing.processor import StripeProcessor


@pytest.fixture
def checkout(catalog, store, processor):
    return CheckoutService(
        catalog, store, processor=processor,
        success_url='https://app.test/success', cancel_url='https://app.test/pricing',
        portal_return_url='https://app.test/billing', trial_period_days=14,
    )


def test_subscription_checkout(checkout, processor, catalog):
    session = checkout.create_checkout_session('tenant-1', 'starter', customer_email='a@example.com')

    assert session.session_id == 'cs_test_1'
    assert session.redirect_url.startswith('https://checkout.stripe.test/')

    params = processor.checkout_calls[0]
    assert params['mode'] == 'subscription'
    assert params['line_items'] == [{'price': catalog.get_plan('starter').stripe_price_id, 'quantity': 1}]
    assert params['client_reference_id'] == 'tenant-1'
    assert params['metadata'] == {'tenant_id': 'tenant-1', 'plan_id': 'starter'}
    assert params['customer_email'] == 'a@example.com'
    assert params['subscription_data']['trial_period_days'] == 14
    assert params['allow_promotion_codes'] is True
    assert params['billing_address_collection'] == 'required'


def test_existing_customer_is_reused(checkout, processor, make_subscription):
    make_subscription(plan_id='starter', status=CANCELED, stripe_customer_id='cus_existing')
    checkout.create_checkout_session('tenant-1', 'professional', customer_email='a@example.com')
    params = processor.checkout_calls[0]
    assert params['customer'] == 'cus_existing'
    assert 'customer_email' not in params
    # Returning subscribers do not get a second trial
    assert 'trial_period_days' not in params['subscription_data']


@pytest.mark.parametrize('status', [ACTIVE, TRIALING, PAST_DUE])
def test_live_subscription_blocks_second_checkout(checkout, processor, make_subscription, status):
    make_subscription(plan_id='starter', status=status, ref='sub_old')
    with pytest.raises(SubscriptionExists) as exc:
        checkout.create_checkout_session('tenant-1', 'professional')
    assert exc.value.stripe_subscription_id == 'sub_old'
    assert processor.checkout_calls == []


def test_one_time_purchase_alongside_subscription(checkout, processor, make_subscription):
    make_subscription(plan_id='starter')
    checkout.create_checkout_session('tenant-1', 'nist_compliance_audit')
    assert processor.checkout_calls[0]['mode'] == 'payment'


def test_addons_share_the_line_items(checkout, processor, catalog):
    checkout.create_checkout_session('tenant-1', 'professional', addon_ids=['sbom_integration'])
    params = processor.checkout_calls[0]
    assert [item['price'] for item in params['line_items']] == [
        catalog.get_plan('professional').stripe_price_id,
        catalog.get_plan('sbom_integration').stripe_price_id,
    ]
    assert params['metadata']['addon_ids'] == 'sbom_integration'


def test_addon_cadence_must_match(checkout, processor):
    with pytest.raises(ValueError):
        checkout.create_checkout_session('tenant-1', 'professional', addon_ids=['sbom_integration_annual'])
    with pytest.raises(ValueError):
        checkout.create_checkout_session('tenant-1', 'professional', addon_ids=['starter'])
    assert processor.checkout_calls == []


def test_bundle_has_no_trial(checkout, processor):
    checkout.create_checkout_session('tenant-1', 'compliance_suite')
    assert 'trial_period_days' not in processor.checkout_calls[0]['subscription_data']


def test_one_time_service_uses_payment_mode(checkout, processor):
    checkout.create_checkout_session('tenant-1', 'nist_compliance_audit')
    params = processor.checkout_calls[0]
    assert params['mode'] == 'payment'
    assert 'subscription_data' not in params


def test_contact_sales_plan(checkout, processor):
    with pytest.raises(PlanNotPurchasable) as exc:
        checkout.create_checkout_session('tenant-1', 'federal')
    assert exc.value.contact_sales is True
    assert processor.checkout_calls == []


def test_free_plan_not_purchasable(checkout):
    with pytest.raises(PlanNotPurchasable) as exc:
        checkout.create_checkout_session('tenant-1', 'free')
    assert exc.value.contact_sales is False


def test_unknown_plan(checkout, processor):
    with pytest.raises(PlanNotFound):
        checkout.create_checkout_session('tenant-1', 'platinum')
    assert processor.checkout_calls == []


def test_portal_requires_customer(checkout):
    with pytest.raises(BillingAccountNotFound):
        checkout.create_portal_session('tenant-1')


def test_portal_session(checkout, processor, make_subscription):
    make_subscription(stripe_customer_id='cus_42')
    session = checkout.create_portal_session('tenant-1')
    assert session.redirect_url == 'https://billing.stripe.test/p/1'
    assert processor.portal_calls == [('cus_42', 'https://app.test/billing')]


class TestChangePlan:

    @pytest.fixture
    def live(self, catalog, processor, make_subscription):
        """tenant-1 on starter with the sbom add-on, mirrored in Stripe."""
        make_subscription(plan_id='starter', addon_ids=('sbom_integration',))
        processor.subscriptions['sub_1'] = {
            'id': 'sub_1',
            'status': 'active',
            'items': {'data': [
                {'id': 'si_starter', 'price': {'id': catalog.get_plan('starter').stripe_price_id}},
                {'id': 'si_sbom', 'price': {'id': catalog.get_plan('sbom_integration').stripe_price_id}},
            ]},
        }

    def test_swaps_items_on_the_same_subscription(self, checkout, processor, catalog, store, live):
        change = checkout.change_plan('tenant-1', 'professional', ['sbom_integration'])

        assert change.stripe_subscription_id == 'sub_1'
        assert change.plan_id == 'professional'
        assert change.addon_ids == ('sbom_integration',)
        call = processor.modify_calls[0]
        assert call['id'] == 'sub_1'
        assert call['items'] == [
            {'id': 'si_starter', 'deleted': True},
            {'price': catalog.get_plan('professional').stripe_price_id, 'quantity': 1},
        ]
        assert call['proration_behavior'] == 'create_prorations'
        assert call['metadata'] == {'tenant_id': 'tenant-1', 'plan_id': 'professional',
                                    'addon_ids': 'sbom_integration'}
        assert processor.checkout_calls == []
        # The webhook moves the local row
        assert store.get_subscription('tenant-1').plan_id == 'starter'

    def test_dropping_an_addon(self, checkout, processor, live):
        checkout.change_plan('tenant-1', 'starter')
        assert processor.modify_calls[0]['items'] == [{'id': 'si_sbom', 'deleted': True}]

    def test_nothing_to_change(self, checkout, processor, live):
        with pytest.raises(ValueError):
            checkout.change_plan('tenant-1', 'starter', ['sbom_integration'])
        assert processor.modify_calls == []

    def test_cadence_switch_goes_through_portal(self, checkout, processor, live):
        with pytest.raises(ValueError):
            checkout.change_plan('tenant-1', 'professional_annual')
        assert processor.modify_calls == []

    def test_requires_live_subscription(self, checkout, processor, make_subscription):
        with pytest.raises(BillingAccountNotFound):
            checkout.change_plan('tenant-1', 'professional')
        make_subscription(status=CANCELED)
        with pytest.raises(BillingAccountNotFound):
            checkout.change_plan('tenant-1', 'professional')
        assert processor.modify_calls == []

    def test_contact_sales_plan(self, checkout, live):
        with pytest.raises(PlanNotPurchasable):
            checkout.change_plan('tenant-1', 'federal')

    def test_processor_outage_changes_nothing(self, checkout, processor, store, live):
        processor.error = PaymentProcessorUnavailable('Subscription.retrieve: timeout')
        with pytest.raises(PaymentProcessorUnavailable):
            checkout.change_plan('tenant-1', 'professional')
        assert store.get_subscription('tenant-1').plan_id == 'starter'


class TestStripeErrors:

    def test_connection_error_is_retryable(self):
        with patch.object(stripe.checkout.Session, 'create', side_effect=stripe.APIConnectionError('network down')):
            with pytest.raises(PaymentProcessorUnavailable) as exc:
                StripeProcessor(api_key='sk_test').create_checkout_session(mode='subscription')
        assert exc.value.retryable

    def test_rate_limit_is_retryable(self):
        with patch.object(stripe.billing_portal.Session, 'create', side_effect=stripe.RateLimitError('slow down')):
            with pytest.raises(PaymentProcessorUnavailable):
                StripeProcessor(api_key='sk_test').create_portal_session('cus_1', 'https://app.test')

    def test_invalid_request_is_not_retryable(self):
        error = stripe.InvalidRequestError('No such price', 'line_items')
        with patch.object(stripe.checkout.Session, 'create', side_effect=error):
            with pytest.raises(PaymentProcessorError) as exc:
                StripeProcessor(api_key='sk_test').create_checkout_session(mode='subscription')
        assert not isinstance(exc.value, PaymentProcessorUnavailable)
        assert not exc.value.retryable

    def test_retrieve_subscription(self):
        with patch.object(stripe.Subscription, 'retrieve', return_value={'id': 'sub_1'}) as retrieve:
            assert StripeProcessor(api_key='sk_test').retrieve_subscription('sub_1') == {'id': 'sub_1'}
        retrieve.assert_called_once_with('sub_1', api_key='sk_test')

    def test_checkout_returns_id_and_url(self):
        fake = {'id': 'cs_1', 'url': 'https://checkout.stripe.com/c/cs_1', 'object': 'checkout.session'}
        with patch.object(stripe.checkout.Session, 'create', return_value=fake) as create:
            result = StripeProcessor(api_key='sk_test').create_checkout_session(mode='payment')
        assert result == {'id': 'cs_1', 'url': 'https://checkout.stripe.com/c/cs_1'}
        create.assert_called_once_with(api_key='sk_test', mode='payment')

    def test_modify_subscription(self):
        items = [{'id': 'si_1', 'deleted': True}, {'price': 'price_pro', 'quantity': 1}]
        with patch.object(stripe.Subscription, 'modify', return_value={'id': 'sub_1', 'status': 'active'}) as modify:
            result = StripeProcessor(api_key='sk_test').modify_subscription(
                'sub_1', items=items, proration_behavior='create_prorations', metadata={'plan_id': 'professional'}
            )
        assert result == {'id': 'sub_1', 'status': 'active'}
        modify.assert_called_once_with('sub_1', api_key='sk_test', items=items,
                                       proration_behavior='create_prorations', metadata={'plan_id': 'professional'})

    def test_modify_card_error_is_not_retryable(self):
        error = stripe.CardError('Your card was declined.', None, 'card_declined')
        with patch.object(stripe.Subscription, 'modify', side_effect=error):
            with pytest.raises(PaymentProcessorError) as exc:
                StripeProcessor(api_key='sk_test').modify_subscription('sub_1', [], 'create_prorations')
        assert not exc.value.retryable
