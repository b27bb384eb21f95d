"""
Midtrans backend: Snap for payment sessions, Core API for status queries,
SHA-512 signature_key for HTTP notifications.
"""

from __future__ import annotations
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from ..errors import GatewayUnavailable, NotificationRejected
from ..model.domain import Order
from ._base import GatewayStatus, PaymentAdapter, PaymentSession

logger = logging.getLogger(__name__)

SNAP_URL = {
    False: "https://app.sandbox.midtrans.com/snap/v1/transactions",
    True: "https://app.midtrans.com/snap/v1/transactions",
}
CORE_URL = {
    False: "https://api.sandbox.midtrans.com/v2",
    True: "https://api.midtrans.com/v2",
}


def signature_key(order_id: str, status_code: str, gross_amount: str,
                  server_key: str) -> str:
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode()).hexdigest()


class Midtrans(PaymentAdapter):
    name = "midtrans"

    def __init__(
        self,
        *,
        server_key: str,
        http: httpx.AsyncClient,
        is_production: bool = False,
        timeout: float = 10.0,
    ) -> None:
        if not server_key:
            raise RuntimeError("Midtrans server key not configured")
        self.server_key = server_key
        self.http = http
        self.is_production = is_production
        self.timeout = timeout

    async def _request(self, method: str, url: str,
                       body: Dict[str, Any] | None = None) -> Dict[str, Any]:
        try:
            r = await self.http.request(
                method, url,
                json=body,
                auth=(self.server_key, ""),
                headers={"accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.error("midtrans %s %s failed: %s", method, url, e)
            raise GatewayUnavailable(f"transport: {e.__class__.__name__}")
        if r.status_code >= 500:
            logger.error("midtrans %s %s -> %s", method, url, r.status_code)
            raise GatewayUnavailable(f"http {r.status_code}")
        try:
            data = r.json()
        except ValueError:
            raise GatewayUnavailable("malformed response")
        if not isinstance(data, dict):
            raise GatewayUnavailable("malformed response")
        data["_http_status"] = r.status_code
        return data

    async def create_session(
        self, order: Order, *, item_name: str
    ) -> PaymentSession:
        fd = order.form_data
        params = {
            "transaction_details": {
                "order_id": order.order_number,
                "gross_amount": order.total_price,
            },
            "customer_details": {
                "first_name": fd.get("name") or "",
                "email": fd.get("email") or "",
                "phone": fd.get("phone") or "",
            },
            "item_details": [{
                "id": str(order.ticket_id),
                "price": order.unit_price,
                "quantity": order.quantity,
                "name": item_name[:50],
            }],
        }
        data = await self._request("POST", SNAP_URL[self.is_production],
                                   params)
        token = data.get("token")
        if data["_http_status"] >= 400 or not token:
            logger.error("snap token creation failed",
                         extra={"order_number": order.order_number})
            raise GatewayUnavailable(
                "; ".join(data.get("error_messages") or ["no token"])
            )
        return PaymentSession(token=token,
                              redirect_url=data.get("redirect_url"))

    async def query_status(self, order_number: str) -> Optional[GatewayStatus]:
        url = f"{CORE_URL[self.is_production]}/{order_number}/status"
        data = await self._request("GET", url)
        # Core API reports its own status code in the body
        if str(data.get("status_code")) == "404":
            return None
        if data["_http_status"] >= 400 or not data.get("transaction_status"):
            raise GatewayUnavailable(
                f"status query returned {data.get('status_code')}"
            )
        data.pop("_http_status", None)
        return GatewayStatus.from_payload(data)

    def verify_notification(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> GatewayStatus:
        try:
            body = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise NotificationRejected("invalid JSON")
        if not isinstance(body, dict):
            raise NotificationRejected("invalid body")
        given = body.get("signature_key")
        if not given:
            raise NotificationRejected("missing signature_key")
        expected = signature_key(
            str(body.get("order_id", "")),
            str(body.get("status_code", "")),
            str(body.get("gross_amount", "")),
            self.server_key,
        )
        if not hmac.compare_digest(expected, str(given)):
            raise NotificationRejected("invalid signature")
        return GatewayStatus.from_payload(body)
