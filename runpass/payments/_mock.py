import base64
import hashlib
import hmac
import json
import uuid
from typing import Dict, Mapping, Optional, Tuple

from ..errors import NotificationRejected
from ..model.domain import Order
from ._base import GatewayStatus, PaymentAdapter, PaymentSession

SIGNATURE_HEADER = "x-mockpay-signature"


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    Local stand-in for the processor. Notifications use the Midtrans body
    shape and are signed with base64(HMAC-SHA256(secret, body)).
    """

    name = "mock"

    def __init__(self, secret: str) -> None:
        self.secret = secret
        # last status emitted per order number, served by query_status
        self._statuses: Dict[str, GatewayStatus] = {}

    async def create_session(
        self, order: Order, *, item_name: str
    ) -> PaymentSession:
        token = f"mock_{uuid.uuid4().hex}"
        return PaymentSession(
            token=token, redirect_url=f"/mockpay/{order.order_number}"
        )

    async def query_status(self, order_number: str) -> Optional[GatewayStatus]:
        return self._statuses.get(order_number)

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_notification(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> GatewayStatus:
        sig = headers.get(SIGNATURE_HEADER)
        if not sig or not hmac.compare_digest(self.sign(payload), sig):
            raise NotificationRejected("invalid signature")
        try:
            body = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise NotificationRejected("invalid JSON")
        if not isinstance(body, dict):
            raise NotificationRejected("invalid body")
        return GatewayStatus.from_payload(body)

    def build_notification(
        self,
        order: Order,
        transaction_status: str,
        *,
        fraud_status: Optional[str] = None,
        payment_type: str = "mockpay",
        transaction_id: Optional[str] = None,
    ) -> Tuple[bytes, Dict[str, str]]:
        """Signed body + headers, as the processor would post them."""
        event = {
            "order_id": order.order_number,
            "transaction_status": transaction_status,
            "fraud_status": fraud_status,
            "payment_type": payment_type,
            "transaction_id": transaction_id or f"txn_{uuid.uuid4().hex}",
            "gross_amount": f"{order.total_price}.00",
            "status_code": "200",
        }
        self._statuses[order.order_number] = GatewayStatus.from_payload(event)
        payload = json.dumps(event).encode()
        return payload, {
            SIGNATURE_HEADER: self.sign(payload),
            "content-type": "application/json",
        }
