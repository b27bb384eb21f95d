"""Shared fixtures: one file-backed SQLite database per test."""

import itertools
from contextlib import asynccontextmanager
from typing import Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text

from runpass.config import Settings
from runpass.errors import GatewayUnavailable
from runpass.infra import timings
from runpass.infra.sql import make_async_engine
from runpass.model.domain import FormFieldSpec, ReservationPolicy
from runpass.model.identifiers import IdentifierGenerator
from runpass.model.orders import OrderStateMachine
from runpass.model.orm import create_schema
from runpass.payments import MockPay
from runpass.purchase import PurchaseService
from runpass.reconcile import ReconciliationEngine
from runpass.server import create_app

ADMIN_TOKEN = "test-admin-token"

_niks = itertools.count(1)


def next_nik() -> str:
    return f"3171{next(_niks):012d}"


def make_form(nik: Optional[str] = None, **overrides):
    data = {
        "name": "Budi Santoso",
        "email": "budi@example.com",
        "phone": "+62 812-3456-7890",
        "nik": nik or next_nik(),
        "shirt_size": "M",
        "agree": True,
    }
    data.update(overrides)
    return data


FORM_SCHEMA = [
    FormFieldSpec(name="name", label="Full name", type="text",
                  is_required=True, validation_rule="min:3|max:100"),
    FormFieldSpec(name="email", label="Email", type="email",
                  is_required=True),
    FormFieldSpec(name="phone", label="Phone", type="tel"),
    FormFieldSpec(name="nik", label="NIK", type="text", is_required=True,
                  validation_rule="digits:16"),
    FormFieldSpec(name="shirt_size", label="Shirt", type="select",
                  options=("S", "M", "L", "XL")),
    FormFieldSpec(name="agree", label="I agree", type="checkbox",
                  is_required=True),
]


class FlakyPay(MockPay):
    """MockPay whose session endpoint can be switched off."""

    def __init__(self, secret: str) -> None:
        super().__init__(secret)
        self.down = False

    async def create_session(self, order, *, item_name):
        if self.down:
            raise GatewayUnavailable("connect timeout")
        return await super().create_session(order, item_name=item_name)


@pytest.fixture(autouse=True)
def _reset_metrics():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'runpass.db'}",
        identity_field="nik",
        admin_token=ADMIN_TOKEN,
        mock_secret="test-secret",
        mock_webhook_url="http://test/api/payments/notification",
        order_number_prefix="FR",
    )


@pytest.fixture
async def db_parts(settings):
    engine, sessions, gated = make_async_engine(settings)
    await create_schema(engine)
    yield engine, sessions, gated
    await engine.dispose()


@pytest.fixture
def tx(db_parts):
    """`async with tx() as db:` opens one committed transaction."""
    _, sessions, _ = db_parts

    @asynccontextmanager
    async def _tx():
        async with sessions() as db:
            async with db.begin():
                yield db

    return _tx


@pytest.fixture
def ids(settings):
    return IdentifierGenerator.from_settings(settings)


@pytest.fixture
def policy():
    return ReservationPolicy.CREATION


@pytest.fixture
def machine(ids, policy):
    return OrderStateMachine(ids, policy=policy, identity_field="nik")


@pytest.fixture
def gateway():
    return FlakyPay("test-secret")


@pytest.fixture
def purchases(db_parts, machine, ids, gateway):
    _, sessions, gated = db_parts
    return PurchaseService(
        sessions=sessions,
        gated=gated,
        machine=machine,
        ids=ids,
        adapter=gateway,
        form_schema=FORM_SCHEMA,
        identity_field="nik",
    )


@pytest.fixture
def reconciler(db_parts, machine, gateway):
    _, sessions, gated = db_parts
    return ReconciliationEngine(
        sessions=sessions,
        gated=gated,
        machine=machine,
        adapter=gateway,
    )


@pytest.fixture
def make_ticket(purchases):
    async def _make(**kw):
        fields = {"name": "10K Fun Run", "unit_price": 100_000, "stock": 5}
        fields.update(kw)
        return await purchases.create_ticket(**fields)

    return _make


@pytest.fixture
def sold_of(tx):
    async def _sold(ticket_id: int) -> int:
        async with tx() as db:
            return (await db.execute(
                text("SELECT sold FROM tickets WHERE id = :id"),
                {"id": ticket_id},
            )).scalar_one()

    return _sold


@pytest.fixture
def count_rows(tx):
    async def _count(table: str) -> int:
        async with tx() as db:
            return (await db.execute(
                text(f"SELECT COUNT(*) FROM {table}")
            )).scalar_one()

    return _count


@pytest.fixture
async def app(settings, gateway):
    app = create_app(settings, form_schema=FORM_SCHEMA, adapter=gateway)
    await create_schema(app.state.engine)
    # MockPay's emit endpoint posts back into this same app
    await app.state.http.aclose()
    app.state.http = AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test",
    )
    yield app
    await app.state.http.aclose()
    await app.state.engine.dispose()


@pytest.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test",
    ) as c:
        yield c


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}
