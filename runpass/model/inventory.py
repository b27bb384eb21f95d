# model/inventory.py
"""
Inventory ledger: per-ticket stock/sold counters and sale eligibility.

- availability is a pure check over a Ticket snapshot
- reserve is a single compare-and-set statement, so the capacity check and
  the increment can never be split by a concurrent buyer
- release floors at zero

All functions expect to run inside a transaction opened by the caller.
"""

from __future__ import annotations
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import StockExhausted, TicketNotFound
from ..helpers import now_ts
from ..infra.timings import timeit
from . import orm
from .domain import Ticket

logger = logging.getLogger(__name__)


class Availability(str, Enum):
    OK = "ok"
    STOCK_EXHAUSTED = "stock_exhausted"
    TICKET_INACTIVE = "ticket_inactive"
    OUTSIDE_SALE_WINDOW = "outside_sale_window"


def check_availability(ticket: Ticket, qty: int, now: float) -> Availability:
    if not ticket.is_active:
        return Availability.TICKET_INACTIVE
    if ticket.sale_start is not None and now < ticket.sale_start:
        return Availability.OUTSIDE_SALE_WINDOW
    if ticket.sale_end is not None and now > ticket.sale_end:
        return Availability.OUTSIDE_SALE_WINDOW
    if ticket.available < qty:
        return Availability.STOCK_EXHAUSTED
    return Availability.OK


async def get_ticket(db: AsyncSession, ticket_id: int) -> Optional[Ticket]:
    row = (await db.execute(text("""
        SELECT id, name, description, unit_price, stock, sold, is_active,
               sale_start, sale_end
        FROM tickets WHERE id = :id
    """), {"id": ticket_id})).mappings().first()
    return Ticket.from_row(row) if row else None


async def availability(
    db: AsyncSession, ticket_id: int, qty: int, now: float | None = None
) -> Availability:
    ticket = await get_ticket(db, ticket_id)
    if ticket is None:
        raise TicketNotFound(ticket_id)
    return check_availability(ticket, qty, now_ts() if now is None else now)


async def reserve(db: AsyncSession, ticket_id: int, qty: int) -> int:
    """
    Add `qty` to sold if capacity remains; returns the new sold count.
    Raises StockExhausted when the guard `sold + qty <= stock` fails.
    """
    if qty <= 0:
        raise ValueError("qty must be positive")
    async with timeit("ledger.reserve"):
        row = (await db.execute(text("""
            UPDATE tickets
            SET sold = sold + :q
            WHERE id = :id AND sold + :q <= stock
            RETURNING sold
        """), {"id": ticket_id, "q": qty})).first()
    if row is None:
        ticket = await get_ticket(db, ticket_id)
        if ticket is None:
            raise TicketNotFound(ticket_id)
        raise StockExhausted(ticket_id, available=ticket.available)
    return int(row[0])


async def release(db: AsyncSession, ticket_id: int, qty: int) -> int:
    """Subtract `qty` from sold, floored at zero; returns the new count."""
    if qty <= 0:
        raise ValueError("qty must be positive")
    async with timeit("ledger.release"):
        row = (await db.execute(text("""
            UPDATE tickets
            SET sold = CASE WHEN sold >= :q THEN sold - :q ELSE 0 END
            WHERE id = :id
            RETURNING sold
        """), {"id": ticket_id, "q": qty})).first()
    if row is None:
        raise TicketNotFound(ticket_id)
    return int(row[0])


# ------------------------------------------------------------------------------
# Catalog
# ------------------------------------------------------------------------------

async def create_ticket(
    db: AsyncSession,
    *,
    name: str,
    unit_price: int,
    stock: int,
    sold: int = 0,
    is_active: bool = True,
    description: str | None = None,
    sale_start: float | None = None,
    sale_end: float | None = None,
) -> Ticket:
    if unit_price < 0 or stock < 0 or not 0 <= sold <= stock:
        raise ValueError("ticket needs unit_price >= 0 and 0 <= sold <= stock")
    row = orm.Ticket(
        name=name,
        description=description,
        unit_price=unit_price,
        stock=stock,
        sold=sold,
        is_active=is_active,
        sale_start=sale_start,
        sale_end=sale_end,
        created_at=now_ts(),
    )
    db.add(row)
    await db.flush()
    logger.info("ticket created", extra={"ticket_id": row.id})
    return Ticket(
        id=row.id, name=name, description=description, unit_price=unit_price,
        stock=stock, sold=sold, is_active=is_active,
        sale_start=sale_start, sale_end=sale_end,
    )


async def list_on_sale(db: AsyncSession, now: float | None = None) -> List[Ticket]:
    now = now_ts() if now is None else now
    rows = (await db.execute(text("""
        SELECT id, name, description, unit_price, stock, sold, is_active,
               sale_start, sale_end
        FROM tickets
        WHERE is_active = :active
          AND (sale_start IS NULL OR sale_start <= :now)
          AND (sale_end IS NULL OR sale_end >= :now)
          AND stock > sold
        ORDER BY created_at DESC
    """), {"now": now, "active": True})).mappings().all()
    return [Ticket.from_row(r) for r in rows]


async def inventory(db: AsyncSession) -> Dict[str, Any]:
    """
    Returns:
      {"<ticket id>": {"name", "stock", "sold", "available", "sold_out"}}
    """
    rows = (await db.execute(text("""
        SELECT id, name, stock, sold FROM tickets ORDER BY id
    """))).mappings().all()
    out: Dict[str, Any] = {}
    for r in rows:
        available = int(r["stock"]) - int(r["sold"])
        out[str(r["id"])] = {
            "name": r["name"],
            "stock": int(r["stock"]),
            "sold": int(r["sold"]),
            "available": available,
            "sold_out": available <= 0,
        }
    return out
