import hashlib
import hmac
import logging
import os
from typing import Any, Dict, Optional
from uuid import uuid4

import httpx

logger = logging.getLogger(__name__)


class PaymentGatewayError(RuntimeError):
    pass


class PaymentGatewayNotConfiguredError(PaymentGatewayError):
    pass


class PaymentGateway:
    """Razorpay order creation and checkout-signature verification."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.key_id = key_id
        self._key_secret = key_secret
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self._key_secret)

    def create_order(self, amount: float, currency: str = "INR", receipt: Optional[str] = None) -> Dict[str, Any]:
        """Create a gateway order for ``amount`` (in rupees) and return its payload.

        Amounts go over the wire in paise. Raises ``PaymentGatewayError`` when
        credentials are missing or the gateway rejects the call.
        """
        if not self.configured:
            raise PaymentGatewayNotConfiguredError("Payment gateway is not configured")
        if amount <= 0:
            raise PaymentGatewayError("Payment amount must be positive")

        payload = {
            "amount": int(round(amount * 100)),
            "currency": currency,
            "receipt": receipt or f"receipt_{uuid4().hex[:8]}",
        }
        try:
            with httpx.Client(
                base_url=self._base_url,
                auth=(self.key_id, self._key_secret),
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = client.post("/v1/orders", json=payload)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.exception("Payment order creation failed")
            raise PaymentGatewayError("Error creating payment order") from exc

        if not isinstance(data, dict):
            logger.error("Payment gateway returned a %s instead of an order object", type(data).__name__)
            raise PaymentGatewayError("Payment gateway returned a malformed order")
        if not data.get("id"):
            raise PaymentGatewayError("Payment gateway returned no order id")
        return data

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not self._key_secret:
            raise PaymentGatewayNotConfiguredError("Payment gateway is not configured")
        message = f"{order_id}|{payment_id}".encode("utf-8")
        expected = hmac.new(self._key_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8", "replace"))


payment_gateway = PaymentGateway(
    key_id=os.getenv("RAZORPAY_KEY_ID", ""),
    key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
    base_url=os.getenv("RAZORPAY_API_BASE", "https://api.razorpay.com"),
)
