import os
import sys
from datetime import datetime, timezone

# Set required environment variables for testing
# These must be set before importing any module that reads configuration
os.environ.pop("DATABASE_URL", None)
os.environ.pop("INTERNAL_SECRET", None)
os.environ.pop("STRIPE_SECRET_KEY", None)
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("BASE_URL", "https://app.vendortal.test")

# Ensure project root is in pythonpath
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest  # noqa: E402

from billing.db import MemoryBillingStore  # noqa: E402
from billing.models import Subscription, ACTIVE  # noqa: E402
from billing.plans import CATALOG  # noqa: E402

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
PERIOD_START = datetime(2025, 3, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2025, 4, 1, tzinfo=timezone.utc)
WEBHOOK_SECRET = "whsec_test_secret"


class FakeProcessor:
    """Stands in for StripeProcessor; records calls and serves canned subscriptions."""

    configured = True

    def __init__(self):
        self.subscriptions = {}
        self.checkout_calls = []
        self.portal_calls = []
        self.modify_calls = []
        self.error = None

    def create_checkout_session(self, **params):
        if self.error:
            raise self.error
        self.checkout_calls.append(params)
        n = len(self.checkout_calls)
        return {'id': f'cs_test_{n}', 'url': f'https://checkout.stripe.test/c/{n}'}

    def create_portal_session(self, customer, return_url):
        if self.error:
            raise self.error
        self.portal_calls.append((customer, return_url))
        return {'id': 'bps_test_1', 'url': 'https://billing.stripe.test/p/1'}

    def retrieve_subscription(self, subscription_id):
        if self.error:
            raise self.error
        return self.subscriptions[subscription_id]

    def modify_subscription(self, subscription_id, items, proration_behavior, metadata=None):
        if self.error:
            raise self.error
        self.modify_calls.append({'id': subscription_id, 'items': items,
                                  'proration_behavior': proration_behavior, 'metadata': metadata})
        return {'id': subscription_id, 'status': 'active'}


@pytest.fixture
def catalog():
    return CATALOG


@pytest.fixture
def store():
    return MemoryBillingStore()


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def make_subscription(store):
    """Insert a subscription straight into the store."""
    def _make(tenant_id='tenant-1', plan_id='starter', status=ACTIVE, ref='sub_1', **kwargs):
        kwargs.setdefault('stripe_customer_id', f'cus_{tenant_id}')
        kwargs.setdefault('current_period_start', PERIOD_START)
        kwargs.setdefault('current_period_end', PERIOD_END)
        kwargs.setdefault('last_event_at', PERIOD_START)
        row, _ = store.create_subscription(Subscription(
            tenant_id=tenant_id,
            plan_id=plan_id,
            status=status,
            stripe_subscription_id=ref,
            **kwargs
        ), now=PERIOD_START)
        return row
    return _make
