#!/usr/bin/env python3
"""Check the sync service health endpoint and ledger stats"""
import os

import requests

app_url = os.environ.get("SYNC_APP_URL", "http://localhost:8000")

print("Checking app health...")
try:
    resp = requests.get(f"{app_url}/health", timeout=10)
    print(f"Status Code: {resp.status_code}")
    print(f"Response:\n{resp.text}")
except requests.RequestException as e:
    print(f"Error: {e}")

print("\nLedger stats...")
try:
    resp = requests.get(f"{app_url}/orders/stats", timeout=10)
    print(f"Status Code: {resp.status_code}")
    print(f"Response:\n{resp.text}")
except requests.RequestException as e:
    print(f"Error: {e}")
