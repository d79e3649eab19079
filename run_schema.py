#!/usr/bin/env python3
"""Run the Postgres schema for the VendorTal billing tables"""

import os
import sys

import psycopg2

DATABASE_URL = os.environ.get('DATABASE_URL')

# Define each SQL statement explicitly
STATEMENTS = [
    # PART 1: SUBSCRIPTIONS
    ('Create subscriptions table', '''
CREATE TABLE IF NOT EXISTS subscriptions (
  id SERIAL PRIMARY KEY,
  tenant_id TEXT NOT NULL,
  plan_id VARCHAR(64) NOT NULL,
  status VARCHAR(20) NOT NULL CHECK (status IN ('trialing', 'active', 'past_due', 'canceled')),
  stripe_subscription_id VARCHAR(255) NOT NULL UNIQUE,
  stripe_customer_id VARCHAR(255),
  addon_ids TEXT[] NOT NULL DEFAULT '{}',
  current_period_start TIMESTAMPTZ,
  current_period_end TIMESTAMPTZ,
  cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
  last_event_at TIMESTAMPTZ,
  canceled_at TIMESTAMPTZ,
  created_at TIMESTAMPTZ DEFAULT NOW(),
  updated_at TIMESTAMPTZ DEFAULT NOW()
)'''),

    # At most one non-canceled subscription per tenant
    ('Create one-live-subscription index',
     "CREATE UNIQUE INDEX IF NOT EXISTS idx_subscriptions_live_tenant ON subscriptions(tenant_id) WHERE status <> 'canceled'"),
    ('Create subscriptions customer index',
     'CREATE INDEX IF NOT EXISTS idx_subscriptions_customer ON subscriptions(stripe_customer_id)'),

    # PART 2: USAGE LEDGER
    ('Create usage_records table', '''
CREATE TABLE IF NOT EXISTS usage_records (
  id BIGSERIAL PRIMARY KEY,
  tenant_id TEXT NOT NULL,
  resource VARCHAR(32) NOT NULL,
  quantity INTEGER NOT NULL CHECK (quantity > 0),
  period_start TIMESTAMPTZ NOT NULL,
  period_end TIMESTAMPTZ NOT NULL,
  dedup_key VARCHAR(255) NOT NULL,
  recorded_at TIMESTAMPTZ DEFAULT NOW(),
  CHECK (period_end > period_start),
  UNIQUE (tenant_id, resource, dedup_key)
)'''),
    ('Create usage_records period index',
     'CREATE INDEX IF NOT EXISTS idx_usage_records_period ON usage_records(tenant_id, resource, period_start, period_end)'),

    # PART 3: WEBHOOK IDEMPOTENCY
    ('Create webhook_events table', '''
CREATE TABLE IF NOT EXISTS webhook_events (
  event_id VARCHAR(255) PRIMARY KEY,
  event_type VARCHAR(100) NOT NULL,
  processed_at TIMESTAMPTZ DEFAULT NOW()
)'''),

    # PART 4: INVOICES
    ('Create invoices table', '''
CREATE TABLE IF NOT EXISTS invoices (
  stripe_invoice_id VARCHAR(255) PRIMARY KEY,
  tenant_id TEXT,
  stripe_subscription_id VARCHAR(255),
  amount_paid INTEGER NOT NULL DEFAULT 0,
  currency VARCHAR(10) NOT NULL DEFAULT 'usd',
  status VARCHAR(20) NOT NULL,
  paid_at TIMESTAMPTZ,
  created_at TIMESTAMPTZ DEFAULT NOW()
)'''),
    ('Create invoices tenant index',
     'CREATE INDEX IF NOT EXISTS idx_invoices_tenant ON invoices(tenant_id)'),
]


def run(cur):
    """Execute every statement; returns (success_count, error_count)."""
    success_count = 0
    error_count = 0

    for desc, sql in STATEMENTS:
        print(f"  {desc}...", end=" ")
        try:
            cur.execute(sql)
            print("OK")
            success_count += 1
        except psycopg2.Error as e:
            print(f"ERROR: {e}")
            error_count += 1

    return success_count, error_count


if __name__ == '__main__':
    if not DATABASE_URL:
        print("DATABASE_URL environment variable not set")
        sys.exit(1)

    print("Connecting to Postgres...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Running schema...\n")
    success_count, error_count = run(cur)
    print(f"\nSchema execution complete! {success_count} succeeded, {error_count} errors")

    # Verify tables
    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables created: {[t[0] for t in tables]}")

    cur.close()
    conn.close()
    print("\nConnection closed.")
    sys.exit(1 if error_count else 0)
