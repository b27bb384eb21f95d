"""HTTP surface, end to end through the ASGI app."""

from dataclasses import replace

import pytest

from runpass.model.domain import Order, OrderStatus

from .conftest import make_form


@pytest.fixture
def new_ticket(client, admin_headers):
    async def _new(**kw):
        body = {"name": "10K Fun Run", "unit_price": 100_000, "stock": 5}
        body.update(kw)
        r = await client.post("/api/admin/tickets", json=body,
                              headers=admin_headers)
        assert r.status_code == 201, r.text
        return r.json()

    return _new


@pytest.fixture
def buy(client):
    async def _buy(ticket_id, form=None):
        return await client.post(
            f"/api/tickets/{ticket_id}/purchase",
            json={"form_data": form or make_form()},
        )

    return _buy


async def test_healthz(client):
    r = await client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


async def test_admin_token_required(client):
    r = await client.post("/api/admin/tickets",
                          json={"name": "x", "unit_price": 0, "stock": 1})
    assert r.status_code == 401
    r = await client.post("/api/admin/tickets",
                          json={"name": "x", "unit_price": 0, "stock": 1},
                          headers={"X-Admin-Token": "wrong"})
    assert r.status_code == 401


async def test_purchase_and_pay_through_mockpay(client, new_ticket, buy):
    ticket = await new_ticket()
    listed = (await client.get("/api/tickets")).json()
    assert [t["id"] for t in listed] == [ticket["id"]]

    r = await buy(ticket["id"])
    assert r.status_code == 201, r.text
    created = r.json()
    number = created["order_number"]
    assert created["status"] == "awaiting_payment"
    assert created["total_price"] == 100_000
    assert created["payment_session_token"].startswith("mock_")
    assert created["redirect_url"] == f"/mockpay/{number}"

    r = await client.post(f"/mockpay/{number}/emit",
                          json={"transaction_status": "settlement"})
    assert r.status_code == 200
    assert r.json()["webhook_status"] == 200

    order = (await client.get(f"/api/orders/{number}")).json()
    assert order["status"] == "paid"
    assert len(order["bib_number"]) == 5
    assert order["paid_at"] is not None

    inv = (await client.get("/api/inventory")).json()
    assert inv[str(ticket["id"])]["sold"] == 1

    metrics = (await client.get("/api/metrics")).json()
    assert metrics["counters"]["purchase.created"] == 1
    assert metrics["counters"]["reconcile.applied"] == 1
    assert "purchase.create" in metrics["timings"]


async def test_duplicate_notification_is_acknowledged(client, gateway,
                                                      new_ticket, buy):
    ticket = await new_ticket()
    number = (await buy(ticket["id"])).json()["order_number"]
    order = (await client.get(f"/api/orders/{number}")).json()

    payload, headers = gateway.build_notification(
        _as_order(order), "settlement")
    first = await client.post("/api/payments/notification",
                              content=payload, headers=headers)
    second = await client.post("/api/payments/notification",
                               content=payload, headers=headers)
    assert first.json() == {"ok": True, "outcome": "applied"}
    assert second.json() == {"ok": True, "outcome": "unchanged"}


async def test_notification_errors(client, gateway, new_ticket, buy):
    ticket = await new_ticket()
    number = (await buy(ticket["id"])).json()["order_number"]
    order = _as_order((await client.get(f"/api/orders/{number}")).json())

    payload, headers = gateway.build_notification(order, "settlement")
    headers["x-mockpay-signature"] = "forged"
    r = await client.post("/api/payments/notification",
                          content=payload, headers=headers)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "NOTIFICATION_REJECTED"

    ghost = replace(order, order_number="FR-19700101-NOPE00")
    payload, headers = gateway.build_notification(ghost, "settlement")
    r = await client.post("/api/payments/notification",
                          content=payload, headers=headers)
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "ORDER_NOT_FOUND"


async def test_purchase_errors(client, new_ticket, buy):
    ticket = await new_ticket(stock=2)

    r = await buy(ticket["id"], make_form(email="nope"))
    assert r.status_code == 422
    err = r.json()["error"]
    assert err["code"] == "VALIDATION_ERROR"
    assert "email" in err["details"]["fields"]

    form = make_form()
    assert (await buy(ticket["id"], form)).status_code == 201

    r = await buy(ticket["id"], form)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "DUPLICATE_IDENTITY"

    assert (await buy(ticket["id"])).status_code == 201
    r = await buy(ticket["id"])
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "STOCK_EXHAUSTED"

    closed = await new_ticket(is_active=False)
    r = await buy(closed["id"])
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "TICKET_INACTIVE"

    r = await buy(9999)
    assert r.status_code == 404


async def test_admin_order_actions(client, admin_headers, new_ticket, buy):
    ticket = await new_ticket()
    number = (await buy(ticket["id"])).json()["order_number"]
    order = (await client.get(f"/api/orders/{number}")).json()
    oid = order["id"]

    r = await client.post(f"/api/admin/orders/{oid}/race-pack",
                          headers=admin_headers)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "INVALID_STATE_FOR_OPERATION"

    r = await client.put(f"/api/admin/orders/{oid}/status",
                         json={"status": "paid", "payment_method": "cash"},
                         headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["status"] == "paid"
    assert r.json()["bib_number"]

    r = await client.post(f"/api/admin/orders/{oid}/race-pack",
                          json={"collected_by": "Desk 3"},
                          headers=admin_headers)
    assert r.json()["race_pack_collected_by"] == "Desk 3"
    r = await client.delete(f"/api/admin/orders/{oid}/race-pack",
                            headers=admin_headers)
    assert r.json()["race_pack_collected"] is False

    r = await client.put(f"/api/admin/orders/{oid}/status",
                         json={"status": "cancelled", "clear_payment": True},
                         headers=admin_headers)
    body = r.json()
    assert body["status"] == "cancelled"
    assert body["bib_number"] is None
    assert body["payment_method"] is None
    inv = (await client.get("/api/inventory")).json()
    assert inv[str(ticket["id"])]["sold"] == 0

    r = await client.put(f"/api/admin/orders/{oid}/status",
                         json={"status": "refunded"}, headers=admin_headers)
    assert r.status_code == 422


async def test_refresh_and_payment_session(client, gateway, new_ticket, buy):
    ticket = await new_ticket()
    number = (await buy(ticket["id"])).json()["order_number"]

    r = await client.post(f"/api/orders/{number}/payment-session")
    assert r.status_code == 200
    assert r.json()["payment_session_token"].startswith("mock_")

    r = await client.post(f"/api/orders/{number}/refresh")
    assert r.json()["outcome"] == "unchanged"

    order = _as_order((await client.get(f"/api/orders/{number}")).json())
    gateway.build_notification(order, "settlement")
    r = await client.post(f"/api/orders/{number}/refresh")
    assert r.json()["outcome"] == "applied"
    assert r.json()["order"]["status"] == "paid"

    r = await client.post(f"/api/orders/{number}/payment-session")
    assert r.status_code == 409

    r = await client.get("/api/orders/FR-19700101-NOPE00")
    assert r.status_code == 404


def _as_order(public):
    """Rebuild enough of an Order from its public JSON to sign for it."""
    return Order(
        id=public["id"], order_number=public["order_number"],
        bib_number=public["bib_number"], ticket_id=public["ticket_id"],
        quantity=public["quantity"], unit_price=public["unit_price"],
        total_price=public["total_price"],
        status=OrderStatus(public["status"]),
        payment_method=public["payment_method"],
        payment_reference=public["payment_reference"],
        paid_at=None, notes=public["notes"],
        race_pack_collected=public["race_pack_collected"],
        race_pack_collected_at=None,
        race_pack_collected_by=public["race_pack_collected_by"],
        form_data=public["form_data"],
    )
