# model/orders.py
"""
Order store and status state machine.

Every status change goes through OrderStateMachine.transition, which runs
inside the caller's transaction and keeps three things in step with the
status:

- bib_number / paid_at: set on entering paid, cleared on leaving it
- stock: the order's `stock_held` flag follows the reservation policy, and
  the ledger is touched only when the flag flips
- identity claim: dropped on entering a terminal status, re-taken on
  leaving one

Rows are written with compare-and-set on `version`; a miss means another
writer got there first, so the order is re-read and the rules re-applied.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy import insert, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    DuplicateIdentity, InvalidStateForOperation, OrderNotFound,
)
from ..helpers import now_ts
from . import inventory, orm
from .domain import (
    TERMINAL_STATUSES, Order, OrderStatus, ReservationPolicy, Ticket,
    holds_stock,
)
from .identifiers import IdentifierGenerator

logger = logging.getLogger(__name__)

T = orm.Order.__table__

# re-reads allowed after a lost compare-and-set
CAS_ATTEMPTS = 5


# ------------------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------------------

async def get_order(db: AsyncSession, order_id: int) -> Optional[Order]:
    row = (await db.execute(
        select(T).where(T.c.id == order_id)
    )).mappings().first()
    return Order.from_row(row) if row else None


async def get_by_number(
    db: AsyncSession, order_number: str
) -> Optional[Order]:
    row = (await db.execute(
        select(T).where(T.c.order_number == order_number)
    )).mappings().first()
    return Order.from_row(row) if row else None


async def _require(db: AsyncSession, order_id: int) -> Order:
    order = await get_order(db, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


# ------------------------------------------------------------------------------
# Identity claims
# ------------------------------------------------------------------------------

async def identity_in_use(db: AsyncSession, identity_value: str) -> bool:
    row = (await db.execute(text("""
        SELECT 1 FROM identity_claims WHERE identity_value = :v
    """), {"v": identity_value})).first()
    return row is not None


async def claim_identity(
    db: AsyncSession, identity_value: str, order_id: int
) -> bool:
    """True if `order_id` now owns the claim (fresh or already its own)."""
    row = (await db.execute(text("""
        INSERT INTO identity_claims(identity_value, order_id)
        VALUES(:v, :o)
        ON CONFLICT (identity_value) DO NOTHING
        RETURNING identity_value
    """), {"v": identity_value, "o": order_id})).first()
    if row is not None:
        return True
    owner = (await db.execute(text("""
        SELECT order_id FROM identity_claims WHERE identity_value = :v
    """), {"v": identity_value})).scalar_one_or_none()
    return owner == order_id


async def release_identity(
    db: AsyncSession, identity_value: str, order_id: int
) -> None:
    await db.execute(text("""
        DELETE FROM identity_claims
        WHERE identity_value = :v AND order_id = :o
    """), {"v": identity_value, "o": order_id})


# ------------------------------------------------------------------------------
# Writes
# ------------------------------------------------------------------------------

async def insert_order(
    db: AsyncSession,
    *,
    order_number: str,
    ticket: Ticket,
    status: OrderStatus,
    form_data: Dict[str, Any],
    identity_value: Optional[str] = None,
    payment_method: Optional[str] = None,
    bib_number: Optional[str] = None,
    paid_at: Optional[float] = None,
    stock_held: bool = False,
) -> Order:
    quantity = 1  # one ticket per order
    ts = now_ts()
    row = (await db.execute(
        insert(T).values(
            order_number=order_number,
            bib_number=bib_number,
            ticket_id=ticket.id,
            quantity=quantity,
            unit_price=ticket.unit_price,
            total_price=ticket.unit_price * quantity,
            status=status.value,
            payment_method=payment_method,
            payment_reference=None,
            paid_at=paid_at,
            notes=None,
            race_pack_collected=False,
            race_pack_collected_at=None,
            race_pack_collected_by=None,
            form_data=form_data,
            identity_value=identity_value,
            stock_held=stock_held,
            version=1,
            created_at=ts,
            updated_at=ts,
        ).returning(*T.c)
    )).mappings().one()
    return Order.from_row(row)


async def _cas(
    db: AsyncSession, current: Order, values: Dict[str, Any]
) -> Optional[Order]:
    values = dict(values)
    values["version"] = current.version + 1
    values["updated_at"] = now_ts()
    row = (await db.execute(
        update(T)
        .where(T.c.id == current.id, T.c.version == current.version)
        .values(**values)
        .returning(*T.c)
    )).mappings().first()
    return Order.from_row(row) if row else None


@dataclass(frozen=True)
class Transition:
    before: Order
    after: Order
    # set when the guard refused the move; carries whatever the guard returned
    veto: Any = None

    @property
    def changed(self) -> bool:
        return self.before.status is not self.after.status


class OrderStateMachine:
    def __init__(
        self,
        ids: IdentifierGenerator,
        policy: ReservationPolicy = ReservationPolicy.CREATION,
        identity_field: Optional[str] = None,
    ) -> None:
        self.ids = ids
        self.policy = policy
        self.identity_field = identity_field or "identity"

    def initial_status(self, ticket: Ticket) -> OrderStatus:
        if ticket.unit_price > 0:
            return OrderStatus.AWAITING_PAYMENT
        return OrderStatus.PAID

    def holds_stock(self, status: OrderStatus) -> bool:
        return holds_stock(status, self.policy)

    async def transition(
        self,
        db: AsyncSession,
        order_id: int,
        target: OrderStatus,
        *,
        payment_method: Optional[str] = None,
        payment_reference: Optional[str] = None,
        notes: Optional[str] = None,
        clear_payment: bool = False,
        guard: Optional[Callable[[Order], Any]] = None,
    ) -> Transition:
        """
        Move an order to `target`. Same-status requests change nothing but
        an operator note. Raises OrderNotFound, StockExhausted (re-entering
        a stock-holding status with no stock left) or DuplicateIdentity
        (leaving a terminal status while another live order holds the
        identity).

        `guard` is called with the freshly read order on every attempt; a
        non-None return aborts the move and comes back as `veto`.
        """
        for attempt in range(CAS_ATTEMPTS):
            current = await _require(db, order_id)

            if guard is not None:
                veto = guard(current)
                if veto is not None:
                    return Transition(current, current, veto)

            if current.status is target:
                if notes is None or notes == current.notes:
                    return Transition(current, current)
                after = await _cas(db, current, {"notes": notes})
                if after is None:
                    continue
                return Transition(current, after)

            after = await _cas(db, current, await self._values_for(
                db, current, target,
                payment_method=payment_method,
                payment_reference=payment_reference,
                notes=notes,
                clear_payment=clear_payment,
            ))
            if after is None:
                logger.info("order changed underneath, retrying",
                            extra={"order_id": order_id, "attempt": attempt})
                continue

            await self._settle_stock(db, current, after)
            await self._settle_identity(db, current, after)
            logger.info(
                "order %s: %s -> %s", after.order_number,
                current.status.value, after.status.value,
                extra={"order_number": after.order_number,
                       "status": after.status.value},
            )
            return Transition(current, after)

        raise InvalidStateForOperation("update a concurrently modified order",
                                       current.status.value)

    async def _values_for(
        self,
        db: AsyncSession,
        current: Order,
        target: OrderStatus,
        *,
        payment_method: Optional[str],
        payment_reference: Optional[str],
        notes: Optional[str],
        clear_payment: bool,
    ) -> Dict[str, Any]:
        values: Dict[str, Any] = {"status": target.value}
        if payment_method is not None:
            values["payment_method"] = payment_method
        if payment_reference is not None:
            values["payment_reference"] = payment_reference
        if notes is not None:
            values["notes"] = notes

        if target is OrderStatus.PAID:
            values["bib_number"] = (
                current.bib_number or await self.ids.new_bib_number(db)
            )
            values["paid_at"] = now_ts()
        elif current.status is OrderStatus.PAID or current.bib_number:
            values["bib_number"] = None
            values["paid_at"] = None

        if target is OrderStatus.CANCELLED and clear_payment:
            values["payment_method"] = None
            values["payment_reference"] = None

        values["stock_held"] = self.holds_stock(target)
        return values

    async def _settle_stock(
        self, db: AsyncSession, before: Order, after: Order
    ) -> None:
        if after.stock_held and not before.stock_held:
            await inventory.reserve(db, after.ticket_id, after.quantity)
        elif before.stock_held and not after.stock_held:
            await inventory.release(db, after.ticket_id, after.quantity)

    async def _settle_identity(
        self, db: AsyncSession, before: Order, after: Order
    ) -> None:
        if not after.identity_value:
            return
        was_live = before.status not in TERMINAL_STATUSES
        is_live = after.status not in TERMINAL_STATUSES
        if was_live and not is_live:
            await release_identity(db, after.identity_value, after.id)
        elif is_live and not was_live:
            if not await claim_identity(db, after.identity_value, after.id):
                raise DuplicateIdentity(self.identity_field)

    # ---- race pack

    async def set_race_pack(
        self, db: AsyncSession, order_id: int, collected_by: Optional[str]
    ) -> Order:
        for _ in range(CAS_ATTEMPTS):
            current = await _require(db, order_id)
            if current.status is not OrderStatus.PAID:
                raise InvalidStateForOperation("collect race pack",
                                               current.status.value)
            if current.race_pack_collected:
                return current
            after = await _cas(db, current, {
                "race_pack_collected": True,
                "race_pack_collected_at": now_ts(),
                "race_pack_collected_by": collected_by or "Admin",
            })
            if after is not None:
                return after
        raise InvalidStateForOperation("collect race pack", current.status.value)

    async def clear_race_pack(self, db: AsyncSession, order_id: int) -> Order:
        for _ in range(CAS_ATTEMPTS):
            current = await _require(db, order_id)
            if current.status is not OrderStatus.PAID:
                raise InvalidStateForOperation("reset race pack",
                                               current.status.value)
            if not current.race_pack_collected:
                return current
            after = await _cas(db, current, {
                "race_pack_collected": False,
                "race_pack_collected_at": None,
                "race_pack_collected_by": None,
            })
            if after is not None:
                return after
        raise InvalidStateForOperation("reset race pack", current.status.value)
