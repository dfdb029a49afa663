import base64
import hashlib
import hmac
import logging
import os
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


def format_amount(amount: Any) -> str:
    """Render an amount the way the gateway signs it (499.0 -> "499")."""
    if isinstance(amount, str):
        return amount
    if isinstance(amount, float) and amount.is_integer():
        return str(int(amount))
    return str(amount)


class CashfreeService:
    """Cashfree PG helper for order creation, order lookup and signatures."""

    def __init__(self) -> None:
        self.environment = os.getenv("CF_ENV", "PROD").strip().upper() or "PROD"
        self.client_id = os.getenv("CF_CLIENT_ID", "").strip()
        self.secret = os.getenv("CF_SECRET", "").strip()
        self.api_version = os.getenv("CF_API_VERSION", "2023-08-01").strip()
        self.timeout_seconds = float(os.getenv("CF_TIMEOUT_SECONDS", "30"))

        self.base_url = (
            "https://sandbox.cashfree.com/pg"
            if self.environment in {"TEST", "SANDBOX"}
            else "https://api.cashfree.com/pg"
        )

    @property
    def enabled(self) -> bool:
        return bool(self.client_id and self.secret)

    @property
    def is_production(self) -> bool:
        return self.environment not in {"TEST", "SANDBOX"}

    def _headers(self) -> Dict[str, str]:
        return {
            "x-client-id": self.client_id,
            "x-client-secret": self.secret,
            "x-api-version": self.api_version,
            "Content-Type": "application/json",
        }

    @staticmethod
    def build_order_id(student_id: str, now_ms: int) -> str:
        short = student_id[-8:] if len(student_id) > 8 else student_id
        return f"order_{short}_{now_ms}"

    async def create_order(self, order_data: Dict[str, Any]) -> Dict[str, Any]:
        if not self.enabled:
            return {"success": False, "error": "Cashfree credentials are not configured"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(f"{self.base_url}/orders", json=order_data, headers=self._headers())
                data = response.json()
        except Exception as exc:
            logger.error("cashfree_create_order_failed order_id=%s error=%s", order_data.get("order_id"), exc)
            return {"success": False, "error": "Failed to create payment order", "transport": True}

        if response.status_code >= 400:
            logger.error(
                "cashfree_create_order_rejected order_id=%s status=%s response=%s",
                order_data.get("order_id"),
                response.status_code,
                data,
            )
            return {
                "success": False,
                "error": data.get("message") or "Failed to create payment order",
                "response": data,
            }
        return {"success": True, "order": data}

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        if not self.enabled:
            return {"success": False, "error": "Cashfree credentials are not configured"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.get(f"{self.base_url}/orders/{order_id}", headers=self._headers())
                data = response.json()
        except Exception as exc:
            logger.error("cashfree_get_order_failed order_id=%s error=%s", order_id, exc)
            return {"success": False, "error": "Unable to reach payment gateway", "transport": True}

        if response.status_code >= 400:
            logger.error("cashfree_get_order_rejected order_id=%s status=%s response=%s", order_id, response.status_code, data)
            return {"success": False, "error": data.get("message") or "Unable to fetch order", "response": data}
        return {"success": True, "order": data}

    def _sign(self, message: bytes) -> str:
        digest = hmac.new(self.secret.encode("utf-8"), message, hashlib.sha256).digest()
        return base64.b64encode(digest).decode("utf-8")

    def sign_payment(self, order_id: str, amount: Any, reference_id: str, tx_status: str) -> str:
        return self._sign(f"{order_id}{format_amount(amount)}{reference_id}{tx_status}".encode("utf-8"))

    def verify_payment_signature(
        self,
        order_id: str,
        amount: Any,
        reference_id: str,
        tx_status: str,
        signature: Optional[str],
    ) -> bool:
        if not signature or not self.secret:
            return False
        expected = self.sign_payment(order_id, amount, reference_id, tx_status)
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))

    def verify_webhook_signature(self, timestamp: Optional[str], raw_body: bytes, signature: Optional[str]) -> bool:
        if not timestamp or not signature or not self.secret:
            return False
        # Signed over the exact bytes received; the body may not be valid UTF-8.
        expected = self._sign(timestamp.encode("utf-8") + raw_body)
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
