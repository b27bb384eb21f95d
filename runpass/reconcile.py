# reconcile.py
"""
Reconciliation engine: fold gateway-reported status into the order record.

Notifications may arrive duplicated, out of order or not at all, so every
input is treated as a snapshot: map it to an order status, compare with
what the order already says, and only then move the order. Each processed
snapshot leaves one row in payment_notifications and one metrics count,
whatever the outcome.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional

from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import (
    DomainError, IdentifierExhausted, NotificationRejected, OrderNotFound,
)
from .helpers import now_ts
from .infra.sql import run_tx
from .infra.timings import incr, timeit
from .model import orders, orm
from .model.domain import (
    SOFT_STATUSES, TERMINAL_STATUSES, Order, OrderStatus,
)
from .model.orders import OrderStateMachine
from .payments import GatewayStatus, PaymentAdapter

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    STALE = "stale"
    UNMAPPED = "unmapped"
    ORDER_NOT_FOUND = "order_not_found"
    FAILED = "failed"


# transaction_status -> order status; capture is resolved by fraud_status
STATUS_MAP = {
    "settlement": OrderStatus.PAID,
    "pending": OrderStatus.PENDING,
    "deny": OrderStatus.DENIED,
    "cancel": OrderStatus.CANCELLED,
    "expire": OrderStatus.EXPIRED,
    "failure": OrderStatus.DENIED,
}

# soft statuses never overwrite these
_SETTLED = TERMINAL_STATUSES | {OrderStatus.PAID}


def map_status(
    transaction_status: Optional[str], fraud_status: Optional[str] = None
) -> Optional[OrderStatus]:
    """None for statuses with no order meaning (refund, authorize, ...)."""
    ts = (transaction_status or "").strip().lower()
    if ts == "capture":
        fraud = (fraud_status or "").strip().lower()
        if fraud == "challenge":
            return OrderStatus.CHALLENGE
        if fraud == "deny":
            return OrderStatus.DENIED
        return OrderStatus.PAID
    return STATUS_MAP.get(ts)


def decide(
    current: OrderStatus, target: Optional[OrderStatus]
) -> Optional[ReconcileOutcome]:
    """No-op outcome for this (current, target) pair; None means apply."""
    if target is None:
        return ReconcileOutcome.UNMAPPED
    if target is current:
        return ReconcileOutcome.UNCHANGED
    if target in SOFT_STATUSES and current in _SETTLED:
        return ReconcileOutcome.STALE
    return None


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    order: Optional[Order] = None
    target: Optional[OrderStatus] = None

    @property
    def applied(self) -> bool:
        return self.outcome is ReconcileOutcome.APPLIED


async def record_notification(
    db: AsyncSession, status: GatewayStatus, outcome: ReconcileOutcome
) -> None:
    await db.execute(insert(orm.PaymentNotification.__table__).values(
        order_number=status.order_number,
        external_status=status.transaction_status,
        fraud_status=status.fraud_status,
        payment_type=status.payment_type,
        transaction_id=status.transaction_id,
        outcome=outcome.value,
        received_at=now_ts(),
    ))


class ReconciliationEngine:
    def __init__(
        self,
        *,
        sessions: async_sessionmaker,
        gated: Callable,
        machine: OrderStateMachine,
        adapter: PaymentAdapter,
        requery: bool = False,
        tx_attempts: int = 5,
    ) -> None:
        self.sessions = sessions
        self.gated = gated
        self.machine = machine
        self.adapter = adapter
        self.requery = requery
        self.tx_attempts = tx_attempts

    async def apply(self, status: GatewayStatus) -> ReconcileResult:
        """
        Reconcile one gateway snapshot. Returns APPLIED, UNCHANGED, STALE or
        UNMAPPED; raises OrderNotFound for an unknown order number and the
        transition's DomainError when the move cannot be made (recorded as
        FAILED, order left as it was).
        """
        target = map_status(status.transaction_status, status.fraud_status)

        async def _tx(db: AsyncSession) -> ReconcileResult:
            order = await orders.get_by_number(db, status.order_number)
            if order is None:
                await record_notification(
                    db, status, ReconcileOutcome.ORDER_NOT_FOUND)
                return ReconcileResult(ReconcileOutcome.ORDER_NOT_FOUND)

            outcome = decide(order.status, target)
            if outcome is None:
                # the read above is unlocked; re-decide against each re-read
                move = await self.machine.transition(
                    db, order.id, target,
                    payment_method=status.payment_type,
                    payment_reference=status.transaction_id,
                    guard=lambda cur: decide(cur.status, target),
                )
                order = move.after
                if move.veto is not None:
                    outcome = move.veto
                elif move.changed:
                    outcome = ReconcileOutcome.APPLIED
                else:
                    outcome = ReconcileOutcome.UNCHANGED
            await record_notification(db, status, outcome)
            return ReconcileResult(outcome, order, target)

        try:
            async with timeit("reconcile.apply"):
                result = await run_tx(self.sessions, self.gated, _tx,
                                      attempts=self.tx_attempts)
        except (DomainError, IntegrityError) as e:
            err = (e if isinstance(e, DomainError)
                   else IdentifierExhausted("bib number", self.tx_attempts))
            await self._record_failure(status, err)
            raise err from None

        self._log(status, result)
        if result.outcome is ReconcileOutcome.ORDER_NOT_FOUND:
            raise OrderNotFound(status.order_number)
        return result

    async def _record_failure(
        self, status: GatewayStatus, err: DomainError
    ) -> None:
        async def _tx(db: AsyncSession) -> None:
            await record_notification(db, status, ReconcileOutcome.FAILED)

        await run_tx(self.sessions, self.gated, _tx)
        incr(f"reconcile.{ReconcileOutcome.FAILED.value}")
        logger.error(
            "notification for %s not applied: %s",
            status.order_number, err,
            extra={"order_number": status.order_number,
                   "external_status": status.transaction_status,
                   "outcome": ReconcileOutcome.FAILED.value,
                   "error_code": err.code.value},
        )

    def _log(self, status: GatewayStatus, result: ReconcileResult) -> None:
        incr(f"reconcile.{result.outcome.value}")
        extra = {
            "order_number": status.order_number,
            "external_status": status.transaction_status,
            "outcome": result.outcome.value,
        }
        if result.outcome is ReconcileOutcome.APPLIED:
            logger.info("order %s reconciled to %s", status.order_number,
                        result.target.value, extra=extra)
        elif result.outcome is ReconcileOutcome.UNMAPPED:
            logger.warning("unmapped gateway status %r for %s",
                           status.transaction_status, status.order_number,
                           extra=extra)
        elif result.outcome is ReconcileOutcome.ORDER_NOT_FOUND:
            logger.warning("notification for unknown order %s",
                           status.order_number, extra=extra)
        else:
            logger.info("notification for %s ignored (%s)",
                        status.order_number, result.outcome.value,
                        extra=extra)

    # ---- entry points

    async def handle_notification(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> ReconcileResult:
        """Authenticate a webhook body and reconcile it."""
        try:
            status = self.adapter.verify_notification(payload, headers)
        except NotificationRejected as e:
            incr("notification.rejected")
            logger.warning("notification rejected: %s", e.reason)
            raise
        if not status.order_number or not status.transaction_status:
            incr("notification.rejected")
            raise NotificationRejected("missing order_id or transaction_status")

        if self.requery:
            # trust the processor's own record over the posted body
            async with timeit("gateway.query_status"):
                queried = await self.adapter.query_status(status.order_number)
            if queried is not None:
                status = queried
        return await self.apply(status)

    async def refresh_from_gateway(self, order_number: str) -> ReconcileResult:
        """Pull the processor's current status for one order and apply it."""
        async def _read(db: AsyncSession) -> Optional[Order]:
            return await orders.get_by_number(db, order_number)

        order = await run_tx(self.sessions, self.gated, _read)
        if order is None:
            raise OrderNotFound(order_number)

        async with timeit("gateway.query_status"):
            snapshot = await self.adapter.query_status(order_number)
        if snapshot is None:
            # processor has no transaction for this order yet
            return ReconcileResult(ReconcileOutcome.UNCHANGED, order)
        return await self.apply(snapshot)
