"""
Billing Database Functions

Persistence for subscriptions, the usage ledger, processed webhook events
and paid invoices. Two interchangeable stores:

- PostgresBillingStore: production, psycopg2 against the schema created by
  run_schema.py
- MemoryBillingStore: local development and tests

Every write is idempotent: usage records dedupe on (tenant, resource,
dedup_key), subscriptions upsert on the Stripe subscription id and only move
forward in event time, events and invoices dedupe on their Stripe ids.
"""

import os
import threading
import zlib
from collections import namedtuple
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple

import psycopg2
import psycopg2.extras

from billing.models import Subscription, UsageRecord, Invoice, CANCELED, utcnow

DATABASE_URL = os.environ.get('DATABASE_URL')

# Outcome of an atomic quota check. used is the total before this request.
UsageCheck = namedtuple('UsageCheck', ['allowed', 'used', 'recorded'])

# Fixed pool of quota locks for the memory store, picked by key hash
USAGE_LOCK_STRIPES = 64

# Columns the reconciler may change on an existing subscription
UPDATABLE_COLUMNS = (
    'plan_id',
    'status',
    'addon_ids',
    'current_period_start',
    'current_period_end',
    'cancel_at_period_end',
    'canceled_at',
    'stripe_customer_id',
)


def usage_lock_key(tenant_id: str, resource: str, period_start: datetime) -> str:
    """Critical-section key: one quota check at a time per tenant, resource and period."""
    return f'{tenant_id}:{resource}:{period_start.isoformat()}'


class MemoryBillingStore:
    """In-process store with the same semantics as the Postgres schema."""

    def __init__(self):
        self._lock = threading.RLock()
        self._subscriptions: Dict[str, Subscription] = {}
        self._usage: List[UsageRecord] = []
        self._usage_keys = set()
        self._usage_locks = [threading.Lock() for _ in range(USAGE_LOCK_STRIPES)]
        self._events: Dict[str, str] = {}
        self._invoices: Dict[str, Invoice] = {}

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def get_subscription(self, tenant_id: str) -> Optional[Subscription]:
        """Non-canceled subscription for the tenant, else its most recent canceled one."""
        with self._lock:
            rows = [s for s in self._subscriptions.values() if s.tenant_id == tenant_id]
        if not rows:
            return None
        live = [s for s in rows if s.status != CANCELED]
        if live:
            return live[0]
        return max(rows, key=lambda s: s.updated_at)

    def get_subscription_by_ref(self, stripe_subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(stripe_subscription_id)

    def find_tenant_by_customer(self, stripe_customer_id: str) -> Optional[str]:
        if not stripe_customer_id:
            return None
        with self._lock:
            for sub in self._subscriptions.values():
                if sub.stripe_customer_id == stripe_customer_id:
                    return sub.tenant_id
        return None

    def create_subscription(self, subscription: Subscription, now: Optional[datetime] = None) -> Tuple[Subscription, bool]:
        """
        Insert a subscription unless its Stripe id is already known.

        Any other non-canceled subscription of the tenant is superseded
        (canceled) so a tenant never holds two live subscriptions.

        Returns:
            (row, created)
        """
        now = now or utcnow()
        with self._lock:
            existing = self._subscriptions.get(subscription.stripe_subscription_id)
            if existing is not None:
                return existing, False

            for ref, other in list(self._subscriptions.items()):
                if other.tenant_id == subscription.tenant_id and other.status != CANCELED:
                    self._subscriptions[ref] = replace(other, status=CANCELED, canceled_at=now, updated_at=now)

            row = replace(subscription, created_at=subscription.created_at or now, updated_at=now)
            self._subscriptions[row.stripe_subscription_id] = row
            return row, True

    def update_subscription_if_newer(
        self,
        stripe_subscription_id: str,
        expected_status: str,
        changes: Dict[str, Any],
        event_at: datetime,
        now: Optional[datetime] = None
    ) -> Optional[Subscription]:
        """
        Apply changes only if the row still has expected_status and no newer
        event has been applied. Returns the updated row, or None when the
        guard rejected the write (or the row does not exist).
        """
        unknown = set(changes) - set(UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f'Cannot update subscription columns: {sorted(unknown)}')

        now = now or utcnow()
        with self._lock:
            current = self._subscriptions.get(stripe_subscription_id)
            if current is None or current.status != expected_status:
                return None
            if current.last_event_at is not None and event_at < current.last_event_at:
                return None
            values = dict(changes)
            if 'addon_ids' in values:
                values['addon_ids'] = tuple(values['addon_ids'])
            row = replace(current, last_event_at=event_at, updated_at=now, **values)
            self._subscriptions[stripe_subscription_id] = row
            return row

    # ------------------------------------------------------------------
    # Usage ledger
    # ------------------------------------------------------------------

    def insert_usage_record(self, record: UsageRecord) -> bool:
        """Append a usage record. False (and no write) if the dedup key was seen."""
        key = (record.tenant_id, record.resource, record.dedup_key)
        with self._lock:
            if key in self._usage_keys:
                return False
            self._usage_keys.add(key)
            self._usage.append(replace(record, recorded_at=record.recorded_at or utcnow()))
            return True

    def sum_usage(self, tenant_id: str, resource: str, period_start: datetime, period_end: datetime) -> int:
        with self._lock:
            return sum(
                r.quantity for r in self._usage
                if r.tenant_id == tenant_id and r.resource == resource
                and r.overlaps(period_start, period_end)
            )

    @contextmanager
    def usage_lock(self, tenant_id: str, resource: str, period_start: datetime):
        key = usage_lock_key(tenant_id, resource, period_start)
        lock = self._usage_locks[zlib.crc32(key.encode()) % USAGE_LOCK_STRIPES]
        with lock:
            yield

    def check_and_record_usage(self, record: UsageRecord, limit: int) -> UsageCheck:
        """Atomically allow and record the usage iff used + quantity <= limit."""
        with self.usage_lock(record.tenant_id, record.resource, record.period_start):
            used = self.sum_usage(record.tenant_id, record.resource, record.period_start, record.period_end)
            with self._lock:
                if (record.tenant_id, record.resource, record.dedup_key) in self._usage_keys:
                    return UsageCheck(True, used, False)
            if used + record.quantity > limit:
                return UsageCheck(False, used, False)
            return UsageCheck(True, used, self.insert_usage_record(record))

    # ------------------------------------------------------------------
    # Webhook events and invoices
    # ------------------------------------------------------------------

    def is_event_processed(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._events

    def mark_event_processed(self, event_id: str, event_type: str) -> bool:
        with self._lock:
            if event_id in self._events:
                return False
            self._events[event_id] = event_type
            return True

    def record_invoice(self, invoice: Invoice) -> bool:
        with self._lock:
            if invoice.stripe_invoice_id in self._invoices:
                return False
            self._invoices[invoice.stripe_invoice_id] = invoice
            return True

    def list_invoices(self, tenant_id: str) -> List[Invoice]:
        with self._lock:
            return [i for i in self._invoices.values() if i.tenant_id == tenant_id]


class PostgresBillingStore:
    """Store backed by the billing tables in Postgres."""

    def __init__(self, database_url: Optional[str] = None, connect=None):
        self.database_url = database_url or DATABASE_URL
        self._connect = connect or self._default_connect

    def _default_connect(self):
        if not self.database_url:
            raise Exception("DATABASE_URL environment variable not set")
        return psycopg2.connect(self.database_url, connect_timeout=10)

    @contextmanager
    def transaction(self):
        """Cursor inside one transaction: commit on success, rollback on error."""
        conn = self._connect()
        conn.autocommit = False
        cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        try:
            yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            conn.close()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def get_subscription(self, tenant_id: str) -> Optional[Subscription]:
        with self.transaction() as cur:
            cur.execute(
                '''SELECT * FROM subscriptions
                   WHERE tenant_id = %s
                   ORDER BY (status <> 'canceled') DESC, updated_at DESC
                   LIMIT 1''',
                (tenant_id,)
            )
            row = cur.fetchone()
        return Subscription.from_row(row) if row else None

    def get_subscription_by_ref(self, stripe_subscription_id: str) -> Optional[Subscription]:
        with self.transaction() as cur:
            cur.execute(
                'SELECT * FROM subscriptions WHERE stripe_subscription_id = %s',
                (stripe_subscription_id,)
            )
            row = cur.fetchone()
        return Subscription.from_row(row) if row else None

    def find_tenant_by_customer(self, stripe_customer_id: str) -> Optional[str]:
        if not stripe_customer_id:
            return None
        with self.transaction() as cur:
            cur.execute(
                '''SELECT tenant_id FROM subscriptions
                   WHERE stripe_customer_id = %s
                   ORDER BY updated_at DESC
                   LIMIT 1''',
                (stripe_customer_id,)
            )
            row = cur.fetchone()
        return str(row['tenant_id']) if row else None

    def create_subscription(self, subscription: Subscription, now: Optional[datetime] = None) -> Tuple[Subscription, bool]:
        now = now or utcnow()
        with self.transaction() as cur:
            cur.execute(
                'SELECT * FROM subscriptions WHERE stripe_subscription_id = %s FOR UPDATE',
                (subscription.stripe_subscription_id,)
            )
            row = cur.fetchone()
            if row:
                return Subscription.from_row(row), False

            # Only one live subscription per tenant (partial unique index)
            cur.execute(
                '''UPDATE subscriptions
                   SET status = 'canceled', canceled_at = %s, updated_at = %s
                   WHERE tenant_id = %s AND status <> 'canceled'
                   AND stripe_subscription_id <> %s''',
                (now, now, subscription.tenant_id, subscription.stripe_subscription_id)
            )

            cur.execute(
                '''INSERT INTO subscriptions
                   (tenant_id, plan_id, status, stripe_subscription_id, stripe_customer_id,
                    addon_ids, current_period_start, current_period_end, cancel_at_period_end,
                    last_event_at, created_at, updated_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                   ON CONFLICT (stripe_subscription_id) DO NOTHING
                   RETURNING *''',
                (subscription.tenant_id, subscription.plan_id, subscription.status,
                 subscription.stripe_subscription_id, subscription.stripe_customer_id,
                 list(subscription.addon_ids), subscription.current_period_start,
                 subscription.current_period_end, subscription.cancel_at_period_end,
                 subscription.last_event_at, now, now)
            )
            row = cur.fetchone()
            if row:
                return Subscription.from_row(row), True

            # Lost a race with a concurrent insert of the same subscription
            cur.execute(
                'SELECT * FROM subscriptions WHERE stripe_subscription_id = %s',
                (subscription.stripe_subscription_id,)
            )
            return Subscription.from_row(cur.fetchone()), False

    def update_subscription_if_newer(
        self,
        stripe_subscription_id: str,
        expected_status: str,
        changes: Dict[str, Any],
        event_at: datetime,
        now: Optional[datetime] = None
    ) -> Optional[Subscription]:
        unknown = set(changes) - set(UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f'Cannot update subscription columns: {sorted(unknown)}')

        # Build dynamic UPDATE
        updates = []
        params = []
        for column in UPDATABLE_COLUMNS:
            if column in changes:
                value = changes[column]
                if column == 'addon_ids':
                    value = list(value)
                updates.append(f'{column} = %s')
                params.append(value)

        updates.append('last_event_at = %s')
        params.append(event_at)
        updates.append('updated_at = %s')
        params.append(now or utcnow())
        params.extend([stripe_subscription_id, expected_status, event_at])

        sql = f'''UPDATE subscriptions
                  SET {', '.join(updates)}
                  WHERE stripe_subscription_id = %s
                  AND status = %s
                  AND (last_event_at IS NULL OR last_event_at <= %s)
                  RETURNING *'''

        with self.transaction() as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
        return Subscription.from_row(row) if row else None

    # ------------------------------------------------------------------
    # Usage ledger
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_usage(cur, record: UsageRecord) -> bool:
        cur.execute(
            '''INSERT INTO usage_records
               (tenant_id, resource, quantity, period_start, period_end, dedup_key, recorded_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s)
               ON CONFLICT (tenant_id, resource, dedup_key) DO NOTHING
               RETURNING id''',
            (record.tenant_id, record.resource, record.quantity, record.period_start,
             record.period_end, record.dedup_key, record.recorded_at or utcnow())
        )
        return cur.fetchone() is not None

    @staticmethod
    def _sum_usage(cur, tenant_id: str, resource: str, period_start: datetime, period_end: datetime) -> int:
        cur.execute(
            '''SELECT COALESCE(SUM(quantity), 0) AS used FROM usage_records
               WHERE tenant_id = %s AND resource = %s
               AND period_start < %s AND period_end > %s''',
            (tenant_id, resource, period_end, period_start)
        )
        row = cur.fetchone()
        return int(row['used']) if row else 0

    def insert_usage_record(self, record: UsageRecord) -> bool:
        with self.transaction() as cur:
            return self._insert_usage(cur, record)

    def sum_usage(self, tenant_id: str, resource: str, period_start: datetime, period_end: datetime) -> int:
        with self.transaction() as cur:
            return self._sum_usage(cur, tenant_id, resource, period_start, period_end)

    def check_and_record_usage(self, record: UsageRecord, limit: int) -> UsageCheck:
        with self.transaction() as cur:
            # Serializes concurrent checks for this tenant/resource/period until commit
            cur.execute(
                'SELECT pg_advisory_xact_lock(hashtext(%s))',
                (usage_lock_key(record.tenant_id, record.resource, record.period_start),)
            )
            used = self._sum_usage(cur, record.tenant_id, record.resource, record.period_start, record.period_end)

            cur.execute(
                '''SELECT 1 FROM usage_records
                   WHERE tenant_id = %s AND resource = %s AND dedup_key = %s''',
                (record.tenant_id, record.resource, record.dedup_key)
            )
            if cur.fetchone():
                return UsageCheck(True, used, False)

            if used + record.quantity > limit:
                return UsageCheck(False, used, False)
            return UsageCheck(True, used, self._insert_usage(cur, record))

    # ------------------------------------------------------------------
    # Webhook events and invoices
    # ------------------------------------------------------------------

    def is_event_processed(self, event_id: str) -> bool:
        with self.transaction() as cur:
            cur.execute('SELECT 1 FROM webhook_events WHERE event_id = %s', (event_id,))
            return cur.fetchone() is not None

    def mark_event_processed(self, event_id: str, event_type: str) -> bool:
        with self.transaction() as cur:
            cur.execute(
                '''INSERT INTO webhook_events (event_id, event_type, processed_at)
                   VALUES (%s, %s, NOW())
                   ON CONFLICT (event_id) DO NOTHING
                   RETURNING event_id''',
                (event_id, event_type)
            )
            return cur.fetchone() is not None

    def record_invoice(self, invoice: Invoice) -> bool:
        with self.transaction() as cur:
            cur.execute(
                '''INSERT INTO invoices
                   (stripe_invoice_id, tenant_id, stripe_subscription_id, amount_paid,
                    currency, status, paid_at, created_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, NOW())
                   ON CONFLICT (stripe_invoice_id) DO NOTHING
                   RETURNING stripe_invoice_id''',
                (invoice.stripe_invoice_id, invoice.tenant_id, invoice.stripe_subscription_id,
                 invoice.amount_paid, invoice.currency, invoice.status, invoice.paid_at)
            )
            return cur.fetchone() is not None

    def list_invoices(self, tenant_id: str) -> List[Invoice]:
        with self.transaction() as cur:
            cur.execute(
                '''SELECT * FROM invoices WHERE tenant_id = %s ORDER BY paid_at DESC NULLS LAST''',
                (tenant_id,)
            )
            rows = cur.fetchall()
        return [
            Invoice(
                stripe_invoice_id=row['stripe_invoice_id'],
                tenant_id=str(row['tenant_id']) if row.get('tenant_id') else None,
                stripe_subscription_id=row.get('stripe_subscription_id'),
                amount_paid=row['amount_paid'],
                currency=row['currency'],
                status=row['status'],
                paid_at=row.get('paid_at'),
            )
            for row in rows
        ]
