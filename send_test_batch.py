#!/usr/bin/env python3
"""
Send a signed job batch to a DriveHR sync webhook.

Usage: python send_test_batch.py jobs.json
Reads DRIVEHR_WEBHOOK_URL and DRIVEHR_WEBHOOK_SECRET from the environment.
"""
import json
import os
import sys
import time
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

from webhook_security import compute_signature


def sign_payload(body: bytes, secret: str, timestamp: Optional[int] = None) -> Dict[str, str]:
    """Headers the webhook expects for body"""
    if timestamp is None:
        timestamp = int(time.time())
    return {
        'Content-Type': 'application/json',
        'X-Webhook-Signature': compute_signature(body, secret),
        'X-Webhook-Timestamp': str(timestamp),
    }


def encode_batch(jobs: List[Dict[str, Any]]) -> bytes:
    return json.dumps({'jobs': jobs}, ensure_ascii=False).encode('utf-8')


def send_batch(url: str, jobs: List[Dict[str, Any]], secret: str, timeout: int = 30,
               session: Optional[requests.Session] = None) -> requests.Response:
    body = encode_batch(jobs)
    sender = session or requests
    return sender.post(url, data=body, headers=sign_payload(body, secret), timeout=timeout)


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    argv = sys.argv[1:] if argv is None else argv

    if len(argv) != 1:
        print("Usage: send_test_batch.py <jobs.json>")
        return 2

    url = os.getenv('DRIVEHR_WEBHOOK_URL', 'http://localhost:8000/webhook/drivehr-sync')
    secret = os.getenv('DRIVEHR_WEBHOOK_SECRET', '')
    if not secret:
        print("❌ DRIVEHR_WEBHOOK_SECRET is not set")
        return 1

    with open(argv[0], 'r', encoding='utf-8') as f:
        data = json.load(f)
    jobs = data['jobs'] if isinstance(data, dict) else data

    print(f"📤 Sending {len(jobs)} jobs to {url}")
    try:
        response = send_batch(url, jobs, secret)
    except requests.RequestException as e:
        print(f"❌ Request failed: {e}")
        return 1

    print(f"📥 {response.status_code}: {response.text}")
    return 0 if response.ok else 1


if __name__ == "__main__":
    sys.exit(main())
