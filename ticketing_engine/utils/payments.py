# ticketing_engine/utils/payments.py
"""Razorpay-style payment gateway client: order creation and signature checks."""
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

RAZORPAY_API = "https://api.razorpay.com/v1"


class PaymentGatewayError(Exception):
    """The gateway refused or failed to create a payment order."""


class PaymentGateway:
    def __init__(self, key_id: str, key_secret: str, base_url: str = RAZORPAY_API,
                 timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def create_order(self, amount: int, currency: str, receipt: str,
                           notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Create a gateway order. ``amount`` is in the smallest currency unit."""
        if not self.is_configured:
            logger.info("[Razorpay] Not configured, returning mock order for %s", receipt)
            return {
                "id": f"order_mock_{receipt}",
                "amount": amount,
                "currency": currency,
                "receipt": receipt,
                "status": "created",
                "created_at": int(time.time()),
            }

        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                     auth=(self.key_id, self.key_secret),
                                     transport=self.transport) as client:
            try:
                response = await client.post("/orders", json={
                    "amount": amount,
                    "currency": currency,
                    "receipt": receipt,
                    "notes": notes or {},
                })
            except httpx.HTTPError as e:
                logger.error("[Razorpay] Order creation failed for %s: %s", receipt, e)
                raise PaymentGatewayError("Failed to create payment order") from e

        if response.status_code >= 400:
            error = response.json().get("error", {}) if response.content else {}
            logger.error("[Razorpay] Order creation rejected for %s: %s", receipt, error)
            raise PaymentGatewayError(error.get("description") or "Failed to create payment order")
        return response.json()

    def expected_signature(self, gateway_order_id: str, payment_id: str) -> str:
        payload = f"{gateway_order_id}|{payment_id}".encode()
        return hmac.new(self.key_secret.encode(), payload, hashlib.sha256).hexdigest()

    def verify_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        """Recompute the signature locally. Without a secret nothing verifies."""
        if not self.key_secret:
            logger.error("[Razorpay] No key secret configured, rejecting payment %s", payment_id)
            return False
        return hmac.compare_digest(self.expected_signature(gateway_order_id, payment_id), signature)
