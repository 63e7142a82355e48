#!/usr/bin/env python3
"""
Seed catalog_entries from a JSON file of existing POS items.

File format: [{"sku": "10001", "canonical_name": "...", "category": "...",
               "source_item_name": "...", "size": null, "price": 25.0}, ...]

Existing (name, size) keys are left untouched. The SKU sequence is moved past
the highest numeric SKU afterwards.

Usage: DATABASE_URL=postgresql://... python scripts/seed_catalog.py items.json
"""
import json
import os
import sys
from decimal import Decimal

import psycopg


def main():
    if len(sys.argv) != 2:
        print(__doc__)
        sys.exit(1)

    conninfo = os.environ.get("DATABASE_URL")
    if not conninfo:
        print("DATABASE_URL is not set", file=sys.stderr)
        sys.exit(1)

    with open(sys.argv[1], encoding="utf-8") as f:
        entries = json.load(f)

    print(f"Seeding {len(entries)} catalog entries...")
    inserted = 0
    with psycopg.connect(conninfo) as conn:
        with conn.cursor() as cur:
            for entry in entries:
                cur.execute(
                    """
                    INSERT INTO catalog_entries
                        (sku, canonical_name, category, source_item_name, size, price)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (
                        str(entry["sku"]),
                        entry.get("canonical_name") or entry["source_item_name"],
                        entry.get("category") or "مشروبات",
                        entry["source_item_name"],
                        entry.get("size") or None,
                        Decimal(str(entry.get("price", 0))),
                    ),
                )
                inserted += cur.rowcount

            cur.execute(
                """
                SELECT setval('catalog_sku_seq', GREATEST(
                    (SELECT COALESCE(MAX(sku::bigint), 10000)
                     FROM catalog_entries WHERE sku ~ '^[0-9]{1,12}$'),
                    (SELECT last_value FROM catalog_sku_seq)))
                """
            )
            seq = cur.fetchone()[0]
        conn.commit()

    print(f"✅ Inserted {inserted}, skipped {len(entries) - inserted} existing")
    print(f"   catalog_sku_seq at {seq}")


if __name__ == "__main__":
    main()
