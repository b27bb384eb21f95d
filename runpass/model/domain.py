"""Domain models representing persisted state.

Plain values handed between the ledger, the order store and the services.
SQLAlchemy models live in runpass/model/orm.py (persistence layer).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from ..helpers import to_iso


class OrderStatus(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    DENIED = "denied"
    CHALLENGE = "challenge"


# no further gateway-driven movement expected (operators may still override)
TERMINAL_STATUSES = frozenset({
    OrderStatus.CANCELLED, OrderStatus.EXPIRED, OrderStatus.DENIED,
})

# outranked by paid and every terminal status
SOFT_STATUSES = frozenset({
    OrderStatus.AWAITING_PAYMENT, OrderStatus.PENDING, OrderStatus.CHALLENGE,
})

# a payment session can be (re)issued only from these
PAYABLE_STATUSES = frozenset({
    OrderStatus.AWAITING_PAYMENT, OrderStatus.PENDING,
})


class ReservationPolicy(str, Enum):
    CREATION = "creation"
    PAYMENT = "payment"


def holds_stock(status: OrderStatus, policy: ReservationPolicy) -> bool:
    """Whether an order in `status` counts against its ticket's stock."""
    if policy is ReservationPolicy.PAYMENT:
        return status is OrderStatus.PAID
    return status not in TERMINAL_STATUSES


@dataclass(frozen=True)
class Ticket:
    id: int
    name: str
    description: Optional[str]
    unit_price: int
    stock: int
    sold: int
    is_active: bool
    sale_start: Optional[float]
    sale_end: Optional[float]

    @property
    def available(self) -> int:
        return self.stock - self.sold

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Ticket:
        return cls(
            id=int(row["id"]),
            name=row["name"],
            description=row.get("description"),
            unit_price=int(row["unit_price"]),
            stock=int(row["stock"]),
            sold=int(row["sold"]),
            is_active=bool(row["is_active"]),
            sale_start=row.get("sale_start"),
            sale_end=row.get("sale_end"),
        )

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "unit_price": self.unit_price,
            "stock": self.stock,
            "sold": self.sold,
            "available": self.available,
            "is_active": self.is_active,
            "sale_start": to_iso(self.sale_start),
            "sale_end": to_iso(self.sale_end),
        }


@dataclass(frozen=True)
class Order:
    id: int
    order_number: str
    bib_number: Optional[str]
    ticket_id: int
    quantity: int
    unit_price: int
    total_price: int
    status: OrderStatus
    payment_method: Optional[str]
    payment_reference: Optional[str]
    paid_at: Optional[float]
    notes: Optional[str]
    race_pack_collected: bool
    race_pack_collected_at: Optional[float]
    race_pack_collected_by: Optional[str]
    form_data: dict[str, Any] = field(default_factory=dict)
    identity_value: Optional[str] = None
    stock_held: bool = False
    version: int = 1
    created_at: float = 0.0
    updated_at: float = 0.0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Order:
        return cls(
            id=int(row["id"]),
            order_number=row["order_number"],
            bib_number=row["bib_number"],
            ticket_id=int(row["ticket_id"]),
            quantity=int(row["quantity"]),
            unit_price=int(row["unit_price"]),
            total_price=int(row["total_price"]),
            status=OrderStatus(row["status"]),
            payment_method=row["payment_method"],
            payment_reference=row["payment_reference"],
            paid_at=row["paid_at"],
            notes=row["notes"],
            race_pack_collected=bool(row["race_pack_collected"]),
            race_pack_collected_at=row["race_pack_collected_at"],
            race_pack_collected_by=row["race_pack_collected_by"],
            form_data=dict(row["form_data"] or {}),
            identity_value=row["identity_value"],
            stock_held=bool(row["stock_held"]),
            version=int(row["version"]),
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
        )

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "bib_number": self.bib_number,
            "ticket_id": self.ticket_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
            "status": self.status.value,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "paid_at": to_iso(self.paid_at),
            "notes": self.notes,
            "race_pack_collected": self.race_pack_collected,
            "race_pack_collected_at": to_iso(self.race_pack_collected_at),
            "race_pack_collected_by": self.race_pack_collected_by,
            "form_data": self.form_data,
            "created_at": to_iso(self.created_at),
        }


@dataclass(frozen=True)
class FormFieldSpec:
    """One externally defined form field. Read-only to this package."""

    name: str
    label: str
    type: str
    is_required: bool = False
    options: tuple[str, ...] = ()
    # mapping form ({"min": 3}) or pipe text form ("min:3|max:100")
    validation_rule: Any = None

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> FormFieldSpec:
        return cls(
            name=d["name"],
            label=d.get("label") or d["name"],
            type=d.get("type", "text"),
            is_required=bool(d.get("is_required", False)),
            options=tuple(str(o) for o in (d.get("options") or ())),
            validation_rule=(
                d.get("validation_rule")
                or d.get("validation_rules")
                or d.get("validation_rules_text")
            ),
        )
