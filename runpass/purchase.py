# purchase.py
"""
Purchase service: the buyer path and the operator actions.

This is the one place transactions are opened for them. Everything that
must hold together (availability, stock, identifiers, the order row and
the identity claim) happens in a single gated transaction, retried as a
whole when a unique key races. The payment session is requested after
commit; a gateway outage leaves a valid awaiting_payment order behind that
can get its session later.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import (
    DuplicateIdentity, GatewayUnavailable, IdentifierExhausted,
    InvalidStateForOperation, OrderNotFound, OutsideSaleWindow,
    StockExhausted, TicketInactive, TicketNotFound, ValidationError,
)
from .helpers import now_ts
from .infra.sql import run_tx
from .infra.timings import incr, timeit
from .model import inventory, orders
from .model.domain import (
    PAYABLE_STATUSES, FormFieldSpec, Order, OrderStatus, Ticket,
)
from .model.formschema import errors_by_field, validate_form
from .model.identifiers import IdentifierGenerator
from .model.inventory import Availability, check_availability
from .model.orders import OrderStateMachine
from .payments import PaymentAdapter, PaymentSession

logger = logging.getLogger(__name__)

# one ticket per order
QUANTITY = 1


@dataclass(frozen=True)
class PurchaseResult:
    order: Order
    session: Optional[PaymentSession] = None

    def to_public(self) -> Dict[str, Any]:
        return {
            "order_number": self.order.order_number,
            "status": self.order.status.value,
            "total_price": self.order.total_price,
            "bib_number": self.order.bib_number,
            "payment_session_token": (
                self.session.token if self.session else None
            ),
            "redirect_url": (
                self.session.redirect_url if self.session else None
            ),
        }


def raise_for(verdict: Availability, ticket: Ticket) -> None:
    if verdict is Availability.TICKET_INACTIVE:
        raise TicketInactive(ticket.id)
    if verdict is Availability.OUTSIDE_SALE_WINDOW:
        raise OutsideSaleWindow(ticket.id)
    if verdict is Availability.STOCK_EXHAUSTED:
        raise StockExhausted(ticket.id, available=ticket.available)


class PurchaseService:
    def __init__(
        self,
        *,
        sessions: async_sessionmaker,
        gated: Callable,
        machine: OrderStateMachine,
        ids: IdentifierGenerator,
        adapter: PaymentAdapter,
        form_schema: Sequence[FormFieldSpec] = (),
        identity_field: Optional[str] = None,
        tx_attempts: int = 5,
    ) -> None:
        self.sessions = sessions
        self.gated = gated
        self.machine = machine
        self.ids = ids
        self.adapter = adapter
        self.form_schema = list(form_schema)
        self.identity_field = identity_field
        self.tx_attempts = tx_attempts

    async def _tx(self, fn, *, attempts: int = 1, kind: str = "identifier"):
        try:
            return await run_tx(self.sessions, self.gated, fn,
                                attempts=attempts)
        except IntegrityError:
            raise IdentifierExhausted(kind, attempts) from None

    def _identity_of(self, cleaned: Mapping[str, Any]) -> Optional[str]:
        if not self.identity_field:
            return None
        v = cleaned.get(self.identity_field)
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    # ------------------------------------------------------------------
    # Buyer path
    # ------------------------------------------------------------------
    async def create_purchase(
        self, ticket_id: int, form_data: Mapping[str, Any]
    ) -> PurchaseResult:
        """
        Validate, reserve and create one order. Raises ValidationError,
        TicketNotFound, TicketInactive, OutsideSaleWindow, StockExhausted,
        DuplicateIdentity or IdentifierExhausted; none of them leaves a
        trace in the database.
        """
        cleaned, errors = validate_form(self.form_schema, form_data or {})
        if errors:
            incr("purchase.invalid")
            raise ValidationError(errors_by_field(errors))
        identity = self._identity_of(cleaned)

        async def _create(db: AsyncSession):
            ticket = await inventory.get_ticket(db, ticket_id)
            if ticket is None:
                raise TicketNotFound(ticket_id)
            raise_for(check_availability(ticket, QUANTITY, now_ts()), ticket)

            if identity and await orders.identity_in_use(db, identity):
                raise DuplicateIdentity(self.identity_field)

            status = self.machine.initial_status(ticket)
            held = self.machine.holds_stock(status)
            if held:
                await inventory.reserve(db, ticket.id, QUANTITY)

            free = status is OrderStatus.PAID
            order = await orders.insert_order(
                db,
                order_number=await self.ids.new_order_number(db),
                ticket=ticket,
                status=status,
                form_data=cleaned,
                identity_value=identity,
                payment_method="free" if free else None,
                bib_number=await self.ids.new_bib_number(db) if free else None,
                paid_at=now_ts() if free else None,
                stock_held=held,
            )
            if identity and not await orders.claim_identity(
                db, identity, order.id
            ):
                raise DuplicateIdentity(self.identity_field)
            return ticket, order

        try:
            async with timeit("purchase.create"):
                ticket, order = await self._tx(
                    _create, attempts=self.tx_attempts, kind="order number")
        except (StockExhausted, DuplicateIdentity) as e:
            incr(f"purchase.{e.code.value.lower()}")
            raise
        incr("purchase.created")
        logger.info(
            "order %s created for ticket %s (%s)",
            order.order_number, ticket.id, order.status.value,
            extra={"order_number": order.order_number,
                   "ticket_id": ticket.id, "status": order.status.value},
        )

        if order.total_price <= 0:
            return PurchaseResult(order)
        try:
            session = await self._open_session(order, ticket)
        except GatewayUnavailable as e:
            # order stays awaiting_payment; buyer retries via payment-session
            logger.error(
                "payment session for %s failed: %s", order.order_number,
                e.reason, extra={"order_number": order.order_number},
            )
            return PurchaseResult(order)
        return PurchaseResult(order, session)

    async def _open_session(
        self, order: Order, ticket: Ticket
    ) -> PaymentSession:
        async with timeit("gateway.create_session"):
            try:
                return await self.adapter.create_session(
                    order, item_name=ticket.name)
            except GatewayUnavailable:
                incr("gateway.unavailable")
                raise

    async def get_order(self, order_number: str) -> Order:
        async def _read(db: AsyncSession) -> Optional[Order]:
            return await orders.get_by_number(db, order_number)

        async with timeit("db.get_order"):
            order = await self._tx(_read)
        if order is None:
            raise OrderNotFound(order_number)
        return order

    async def new_payment_session(self, order_number: str) -> PurchaseResult:
        """Issue a fresh payment session for an order still waiting on one."""
        async def _read(db: AsyncSession):
            order = await orders.get_by_number(db, order_number)
            if order is None:
                raise OrderNotFound(order_number)
            return order, await inventory.get_ticket(db, order.ticket_id)

        order, ticket = await self._tx(_read)
        if order.status not in PAYABLE_STATUSES or order.total_price <= 0:
            raise InvalidStateForOperation("start a payment",
                                           order.status.value)
        return PurchaseResult(order, await self._open_session(order, ticket))

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------
    async def override_status(
        self,
        order_id: int,
        status: OrderStatus,
        *,
        payment_method: Optional[str] = None,
        payment_reference: Optional[str] = None,
        notes: Optional[str] = None,
        clear_payment: bool = False,
    ) -> Order:
        async def _move(db: AsyncSession) -> Order:
            move = await self.machine.transition(
                db, order_id, status,
                payment_method=payment_method,
                payment_reference=payment_reference,
                notes=notes,
                clear_payment=clear_payment,
            )
            return move.after

        order = await self._tx(_move, attempts=self.tx_attempts,
                               kind="bib number")
        incr("admin.status_override")
        logger.info("operator set order %s to %s", order.order_number,
                    status.value,
                    extra={"order_number": order.order_number,
                           "status": status.value})
        return order

    async def set_race_pack(
        self, order_id: int, collected_by: Optional[str] = None
    ) -> Order:
        async def _set(db: AsyncSession) -> Order:
            return await self.machine.set_race_pack(db, order_id, collected_by)

        return await self._tx(_set)

    async def clear_race_pack(self, order_id: int) -> Order:
        async def _clear(db: AsyncSession) -> Order:
            return await self.machine.clear_race_pack(db, order_id)

        return await self._tx(_clear)

    # ---- catalog

    async def create_ticket(self, **fields: Any) -> Ticket:
        async def _create(db: AsyncSession) -> Ticket:
            return await inventory.create_ticket(db, **fields)

        return await self._tx(_create)

    async def list_tickets(self) -> List[Ticket]:
        async def _list(db: AsyncSession) -> List[Ticket]:
            return await inventory.list_on_sale(db)

        return await self._tx(_list)

    async def inventory_summary(self) -> Dict[str, Any]:
        async def _inv(db: AsyncSession) -> Dict[str, Any]:
            return await inventory.inventory(db)

        return await self._tx(_inv)
