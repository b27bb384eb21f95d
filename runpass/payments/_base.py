from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from ..model.domain import Order


@dataclass(frozen=True)
class PaymentSession:
    token: str
    redirect_url: Optional[str] = None


@dataclass(frozen=True)
class GatewayStatus:
    """What the processor reports for one order, notification or query."""

    order_number: str
    transaction_status: str
    fraud_status: Optional[str] = None
    payment_type: Optional[str] = None
    transaction_id: Optional[str] = None
    gross_amount: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, body: Mapping[str, Any]) -> "GatewayStatus":
        return cls(
            order_number=str(body.get("order_id") or ""),
            transaction_status=str(body.get("transaction_status") or ""),
            fraud_status=body.get("fraud_status"),
            payment_type=body.get("payment_type"),
            transaction_id=body.get("transaction_id"),
            gross_amount=(
                str(body["gross_amount"])
                if body.get("gross_amount") is not None else None
            ),
            raw=dict(body),
        )


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    """
    Boundary to the payment processor. Implementations never touch local
    state; every transport or protocol failure is raised as
    GatewayUnavailable and authentication failures as NotificationRejected.
    """

    name: str = "abstract"

    @abstractmethod
    async def create_session(
        self, order: Order, *, item_name: str
    ) -> PaymentSession: ...

    # None when the processor has no transaction for this order yet
    @abstractmethod
    async def query_status(
        self, order_number: str
    ) -> Optional[GatewayStatus]: ...

    @abstractmethod
    def verify_notification(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> GatewayStatus: ...

    async def aclose(self) -> None:
        return None
