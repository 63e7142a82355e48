"""
Create the reconciliation tables in Postgres.

  catalog_entries  — (source item name, size) → POS SKU
  order_ledger     — one row per GloriaFood order, never deleted
  promo_records    — promotion type id → POS discount id
  catalog_sku_seq  — SKU counter, seeded from the highest numeric SKU

Idempotent: safe to run on every deploy.

Usage: DATABASE_URL=postgresql://... python infra/create_tables.py
"""

import os
import sys

import psycopg

DDL = [
    """
    CREATE TABLE IF NOT EXISTS catalog_entries (
        sku               TEXT PRIMARY KEY,
        canonical_name    TEXT NOT NULL,
        category          TEXT NOT NULL,
        source_item_name  TEXT NOT NULL,
        size              TEXT,
        price             NUMERIC(12, 2) NOT NULL,
        created_at        TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_catalog_entries_lookup
    ON catalog_entries (source_item_name, (COALESCE(size, '')))
    """,
    """
    CREATE TABLE IF NOT EXISTS order_ledger (
        order_id            TEXT PRIMARY KEY,
        raw_order           JSONB NOT NULL,
        pos_receipt_id      TEXT,
        pos_receipt_number  TEXT,
        status              TEXT NOT NULL DEFAULT 'pending'
                            CHECK (status IN ('pending', 'processed', 'failed', 'duplicate')),
        attempts            INTEGER NOT NULL DEFAULT 0,
        last_error          TEXT,
        customer_name       TEXT,
        customer_phone      TEXT,
        customer_email      TEXT,
        order_type          TEXT,
        subtotal            NUMERIC(12, 2) NOT NULL DEFAULT 0,
        tax                 NUMERIC(12, 2) NOT NULL DEFAULT 0,
        delivery_fee        NUMERIC(12, 2) NOT NULL DEFAULT 0,
        total               NUMERIC(12, 2) NOT NULL DEFAULT 0,
        line_items          JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
        processed_at        TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_order_ledger_status_updated
    ON order_ledger (status, updated_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_order_ledger_created
    ON order_ledger (created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS promo_records (
        promo_id         TEXT PRIMARY KEY,
        pos_discount_id  TEXT,
        kind             TEXT NOT NULL CHECK (kind IN ('percent_of_total', 'fixed_amount')),
        value            NUMERIC(12, 2) NOT NULL,
        name             TEXT NOT NULL,
        updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS catalog_sku_seq START WITH 10001",
]

# Move the counter past any numeric SKU already in the table (seeded or imported)
SEED_SEQUENCE = """
    SELECT setval(
        'catalog_sku_seq',
        GREATEST(
            (SELECT COALESCE(MAX(sku::bigint), 10000)
             FROM catalog_entries WHERE sku ~ '^[0-9]{1,12}$'),
            (SELECT last_value FROM catalog_sku_seq)
        )
    )
"""


def main():
    conninfo = os.environ.get("DATABASE_URL")
    if not conninfo:
        print("DATABASE_URL is not set", file=sys.stderr)
        sys.exit(1)

    print("Connecting to Postgres...")
    with psycopg.connect(conninfo, autocommit=True) as conn:
        with conn.cursor() as cur:
            for statement in DDL:
                first_line = statement.strip().splitlines()[0]
                print(f"  {first_line}")
                cur.execute(statement)

            cur.execute(SEED_SEQUENCE)
            print(f"  catalog_sku_seq at {cur.fetchone()[0]}")

    print("✅ Schema ready")


if __name__ == "__main__":
    main()
