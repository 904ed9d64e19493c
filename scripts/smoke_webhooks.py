"""
Smoke tests against a running app instance.

- GET /health
- POST /api/webhooks/stripe without a signature (expects 400)
- GET /api/webhooks/stripe (expects 405)
- POST /api/webhooks/stripe with a signed no-op event (expects 200),
  only when STRIPE_WEBHOOK_SECRET is set in the environment

The signed event has a type no handler acts on, so it leaves no side
effects beyond an idempotency ledger row.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import sys
import time
import uuid
from pathlib import Path

import httpx

# Allow running from any directory (e.g. `python scripts/smoke_webhooks.py`)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.core.logging import get_logger, setup_logging  # noqa: E402


logger = get_logger(__name__)

WEBHOOK_PATH = "/api/webhooks/stripe"


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _smoke_event() -> dict:
    return {
        "id": f"evt_smoke_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": "smoke.test",
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": {"id": "smoke_object"}},
    }


def sign_payload(payload: str, secret: str, timestamp: int | None = None) -> str:
    """Build a ``stripe-signature`` header value for ``payload``"""
    ts = timestamp if timestamp is not None else int(time.time())
    signed = f"{ts}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def _check_status(resp: httpx.Response, expected: int) -> None:
    if resp.status_code != expected:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} (wanted {expected}) for "
            f"{resp.request.method} {resp.request.url}. Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False)

    base_url = _base_url()
    timeout = _timeout_seconds()
    webhook_url = f"{base_url}{WEBHOOK_PATH}"

    logger.info("Starting smoke tests", extra_data={"base_url": base_url, "timeout_seconds": timeout})

    with httpx.Client(timeout=timeout) as client:
        resp = client.get(f"{base_url}/health")
        _check_status(resp, 200)

        logger.info("Posting unsigned webhook", extra_data={"url": webhook_url})
        resp = client.post(webhook_url, content=json.dumps(_smoke_event()))
        _check_status(resp, 400)

        resp = client.get(webhook_url)
        _check_status(resp, 405)

        secret = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
        if secret:
            payload = json.dumps(_smoke_event())
            logger.info("Posting signed no-op webhook", extra_data={"url": webhook_url})
            resp = client.post(
                webhook_url,
                content=payload,
                headers={"stripe-signature": sign_payload(payload, secret)},
            )
            _check_status(resp, 200)
        else:
            logger.warning("STRIPE_WEBHOOK_SECRET not set, skipping signed webhook check")

    logger.info("Smoke tests completed successfully")


if __name__ == "__main__":
    main()
