import re

import pytest

from runpass.errors import (
    DuplicateIdentity, InvalidStateForOperation, OrderNotFound,
    StockExhausted,
)
from runpass.model import orders
from runpass.model.domain import OrderStatus, ReservationPolicy

from .conftest import make_form

BIB = re.compile(r"\d{5}")


@pytest.fixture
def move(tx, machine):
    async def _move(order_id, target, **kw):
        async with tx() as db:
            return await machine.transition(db, order_id, target, **kw)

    return _move


@pytest.fixture
def fetch(tx):
    async def _fetch(order_id):
        async with tx() as db:
            return await orders.get_order(db, order_id)

    return _fetch


async def _buy(purchases, make_ticket, form=None, **ticket):
    t = await make_ticket(**ticket)
    result = await purchases.create_purchase(t.id, form or make_form())
    return t, result.order


class TestTransitions:
    async def test_paid_assigns_bib_and_paid_at(self, purchases, make_ticket,
                                                move, sold_of):
        ticket, order = await _buy(purchases, make_ticket)
        assert order.bib_number is None

        m = await move(order.id, OrderStatus.PAID,
                       payment_method="bank_transfer",
                       payment_reference="TX-1")
        assert m.changed
        assert BIB.fullmatch(m.after.bib_number)
        assert m.after.paid_at is not None
        assert m.after.payment_method == "bank_transfer"
        assert m.after.payment_reference == "TX-1"
        # already held since creation
        assert await sold_of(ticket.id) == 1

    async def test_leaving_paid_clears_bib_and_releases(
        self, purchases, make_ticket, move, sold_of
    ):
        ticket, order = await _buy(purchases, make_ticket)
        await move(order.id, OrderStatus.PAID, payment_method="qris")

        m = await move(order.id, OrderStatus.CANCELLED, clear_payment=True)
        assert m.after.bib_number is None
        assert m.after.paid_at is None
        assert m.after.payment_method is None
        assert not m.after.stock_held
        assert await sold_of(ticket.id) == 0

    async def test_soft_detour_draws_a_fresh_bib(self, purchases, make_ticket,
                                                 move, sold_of):
        ticket, order = await _buy(purchases, make_ticket)
        await move(order.id, OrderStatus.PAID)

        m = await move(order.id, OrderStatus.CHALLENGE)
        assert m.after.bib_number is None
        assert m.after.paid_at is None
        # challenge is still live: stock stays held
        assert await sold_of(ticket.id) == 1

        m = await move(order.id, OrderStatus.PAID)
        assert BIB.fullmatch(m.after.bib_number)
        assert await sold_of(ticket.id) == 1

    async def test_same_status_is_a_noop(self, purchases, make_ticket, move):
        _, order = await _buy(purchases, make_ticket)
        paid = (await move(order.id, OrderStatus.PAID)).after

        again = await move(order.id, OrderStatus.PAID)
        assert not again.changed
        assert again.after == paid

        noted = await move(order.id, OrderStatus.PAID, notes="paid at desk")
        assert noted.after.notes == "paid at desk"
        assert noted.after.bib_number == paid.bib_number
        assert noted.after.version == paid.version + 1

    async def test_reopening_needs_stock(self, purchases, make_ticket, move,
                                         fetch, sold_of):
        ticket, order = await _buy(purchases, make_ticket, stock=1)
        await move(order.id, OrderStatus.EXPIRED)
        assert await sold_of(ticket.id) == 0

        await purchases.create_purchase(ticket.id, make_form())
        assert await sold_of(ticket.id) == 1

        with pytest.raises(StockExhausted):
            await move(order.id, OrderStatus.PAID)
        assert (await fetch(order.id)).status is OrderStatus.EXPIRED
        assert await sold_of(ticket.id) == 1

    async def test_unknown_order(self, move):
        with pytest.raises(OrderNotFound):
            await move(12345, OrderStatus.PAID)


class TestIdentityClaims:
    async def test_terminal_status_frees_identity(self, purchases, make_ticket,
                                                  move):
        form = make_form()
        ticket, order = await _buy(purchases, make_ticket, form=form)
        with pytest.raises(DuplicateIdentity):
            await purchases.create_purchase(ticket.id, form)

        await move(order.id, OrderStatus.DENIED)
        again = await purchases.create_purchase(ticket.id, form)
        assert again.order.status is OrderStatus.AWAITING_PAYMENT

    async def test_reopening_conflicts_with_newer_order(
        self, purchases, make_ticket, move, fetch
    ):
        form = make_form()
        ticket, first = await _buy(purchases, make_ticket, form=form)
        await move(first.id, OrderStatus.CANCELLED)
        await purchases.create_purchase(ticket.id, form)

        with pytest.raises(DuplicateIdentity):
            await move(first.id, OrderStatus.PAID)
        reread = await fetch(first.id)
        assert reread.status is OrderStatus.CANCELLED
        assert reread.bib_number is None


class TestPaymentTimeReservation:
    @pytest.fixture
    def policy(self):
        return ReservationPolicy.PAYMENT

    async def test_only_paid_orders_hold_stock(self, purchases, make_ticket,
                                               move, sold_of):
        ticket, order = await _buy(purchases, make_ticket, stock=1)
        assert not order.stock_held
        assert await sold_of(ticket.id) == 0

        await move(order.id, OrderStatus.PENDING)
        assert await sold_of(ticket.id) == 0

        m = await move(order.id, OrderStatus.PAID)
        assert m.after.stock_held
        assert await sold_of(ticket.id) == 1

        await move(order.id, OrderStatus.CHALLENGE)
        assert await sold_of(ticket.id) == 0

    async def test_paying_a_sold_out_ticket_fails(self, purchases, make_ticket,
                                                  move, fetch):
        ticket, first = await _buy(purchases, make_ticket, stock=1)
        second = (await purchases.create_purchase(ticket.id, make_form())).order
        await move(first.id, OrderStatus.PAID)

        with pytest.raises(StockExhausted):
            await move(second.id, OrderStatus.PAID)
        assert (await fetch(second.id)).status is OrderStatus.AWAITING_PAYMENT


class TestRacePack:
    async def test_only_while_paid(self, purchases, make_ticket):
        _, order = await _buy(purchases, make_ticket)
        with pytest.raises(InvalidStateForOperation):
            await purchases.set_race_pack(order.id, "Desk 1")
        with pytest.raises(InvalidStateForOperation):
            await purchases.clear_race_pack(order.id)

    async def test_collect_and_reset(self, purchases, make_ticket, move):
        _, order = await _buy(purchases, make_ticket)
        await move(order.id, OrderStatus.PAID)

        got = await purchases.set_race_pack(order.id, "Desk 1")
        assert got.race_pack_collected
        assert got.race_pack_collected_by == "Desk 1"
        assert got.race_pack_collected_at is not None

        # second collection keeps the first record
        again = await purchases.set_race_pack(order.id, "Desk 2")
        assert again.race_pack_collected_by == "Desk 1"

        reset = await purchases.clear_race_pack(order.id)
        assert not reset.race_pack_collected
        assert reset.race_pack_collected_by is None
