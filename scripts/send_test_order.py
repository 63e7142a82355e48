#!/usr/bin/env python3
"""
Post a sample GloriaFood order to the webhook, signed the way GloriaFood
signs it, and post it again to show the duplicate handling.

Usage: python scripts/send_test_order.py [order_id]
"""
import hashlib
import hmac
import json
import os
import sys
import time

import requests

app_url = os.environ.get("SYNC_APP_URL", "http://localhost:8000")
secret = os.environ.get("GLORIAFOOD_WEBHOOK_SECRET", "")

order_id = sys.argv[1] if len(sys.argv) > 1 else f"TEST-{int(time.time())}"

order = {
    "id": order_id,
    "type": "pickup",
    "status": "accepted",
    "client_first_name": "Test",
    "client_last_name": "Customer",
    "client_phone": "+201000000000",
    "client_email": "test.customer@example.com",
    "instructions": "Sample order from send_test_order.py",
    "total_price": 95.0,
    "items": [
        {"id": 1, "name": "قهوة تركي", "type": "item", "price": 30.0, "quantity": 2,
         "options": [{"name": "كبير", "group_name": "Size", "price": 5.0}]},
        {"id": 2, "name": "Mango Juice Large", "type": "item", "price": 35.0, "quantity": 1},
    ],
}

body = json.dumps({"orders": [order]}).encode()
headers = {"Content-Type": "application/json"}
if secret:
    headers["X-GloriaFood-Signature"] = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()

for attempt in ("first delivery", "replayed delivery"):
    print("=" * 80)
    print(f"POST /webhook — order {order_id} ({attempt})")
    print("=" * 80)
    try:
        resp = requests.post(f"{app_url}/webhook", data=body, headers=headers, timeout=60)
        print(f"Status Code: {resp.status_code}")
        print(json.dumps(resp.json(), indent=2, ensure_ascii=False))
    except (requests.RequestException, ValueError) as e:
        print(f"Error: {e}")
