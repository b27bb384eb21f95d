from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .errors import DomainError
from .helpers import ct_equal
from .infra.logs import setup_logging
from .infra.sql import make_async_engine
from .infra.timings import incr, snapshot, timeit
from .model.domain import FormFieldSpec, OrderStatus, ReservationPolicy
from .model.formschema import load_schema
from .model.identifiers import IdentifierGenerator
from .model.orders import OrderStateMachine
from .model.orm import create_schema
from .payments import MockPay, PaymentAdapter, new_adapter
from .purchase import PurchaseService
from .reconcile import ReconciliationEngine

logger = logging.getLogger(__name__)


# ----------------------------
# Request bodies
# ----------------------------
class PurchaseIn(BaseModel):
    form_data: Dict[str, Any] = Field(default_factory=dict)


class TicketIn(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    unit_price: int = Field(ge=0)
    stock: int = Field(ge=0)
    is_active: bool = True
    sale_start: Optional[datetime] = None
    sale_end: Optional[datetime] = None


class StatusIn(BaseModel):
    status: OrderStatus
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    notes: Optional[str] = None
    clear_payment: bool = False


class RacePackIn(BaseModel):
    collected_by: Optional[str] = None


class MockEmitIn(BaseModel):
    transaction_status: str = "settlement"
    fraud_status: Optional[str] = None
    payment_type: str = "mockpay"


# ----------------------------
# Dependencies
# ----------------------------
def purchases(request: Request) -> PurchaseService:
    return request.app.state.purchases


def reconciler(request: Request) -> ReconciliationEngine:
    return request.app.state.reconciler


def require_admin(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None),
) -> None:
    expected = request.app.state.settings.admin_token
    if not x_admin_token or not ct_equal(x_admin_token, expected):
        raise HTTPException(401, detail="admin token required")


def _ts(dt: Optional[datetime]) -> Optional[float]:
    return dt.timestamp() if dt is not None else None


# ----------------------------
# App factory
# ----------------------------
def create_app(
    settings: Optional[Settings] = None,
    *,
    form_schema: Optional[List[FormFieldSpec]] = None,
    adapter: Optional[PaymentAdapter] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format)

    engine, SessionAsync, gated = make_async_engine(settings)
    http = http or httpx.AsyncClient()
    adapter = adapter or new_adapter(settings, http=http)
    if form_schema is None:
        form_schema = load_schema(settings.form_schema_path)

    ids = IdentifierGenerator.from_settings(settings)
    machine = OrderStateMachine(
        ids,
        policy=ReservationPolicy(settings.reservation_policy),
        identity_field=settings.identity_field,
    )

    app = FastAPI(
        title="runpass",
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.sessions = SessionAsync
    app.state.gated = gated
    app.state.http = http
    app.state.adapter = adapter
    app.state.purchases = PurchaseService(
        sessions=SessionAsync,
        gated=gated,
        machine=machine,
        ids=ids,
        adapter=adapter,
        form_schema=form_schema,
        identity_field=settings.identity_field,
        tx_attempts=settings.db_tx_attempts,
    )
    app.state.reconciler = ReconciliationEngine(
        sessions=SessionAsync,
        gated=gated,
        machine=machine,
        adapter=adapter,
        requery=settings.gateway_requery_notifications,
        tx_attempts=settings.db_tx_attempts,
    )

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _db_init():
        await create_schema(engine)
        logger.info(
            "runpass up: payments=%s reservation=%s fields=%d",
            adapter.name, settings.reservation_policy, len(form_schema),
        )

    @app.on_event("shutdown")
    async def _shutdown():
        await adapter.aclose()
        await http.aclose()
        await engine.dispose()

    @app.exception_handler(DomainError)
    async def _domain_error(request: Request, exc: DomainError):
        level = logging.ERROR if exc.http_status >= 500 else logging.INFO
        logger.log(
            level, "%s on %s", exc, request.url.path,
            extra={"error_code": exc.code.value, "path": request.url.path},
        )
        return ORJSONResponse(status_code=exc.http_status,
                              content=exc.to_response())

    _routes(app)
    return app


def _routes(app: FastAPI) -> None:
    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    @app.get("/api/metrics")
    async def metrics():
        return snapshot()

    # ----------------------------
    # API: Catalog
    # ----------------------------
    @app.get("/api/tickets")
    async def list_tickets(svc: PurchaseService = Depends(purchases)):
        return [t.to_public() for t in await svc.list_tickets()]

    @app.get("/api/inventory")
    async def get_inventory(svc: PurchaseService = Depends(purchases)):
        return await svc.inventory_summary()

    # ----------------------------
    # API: Purchase
    # ----------------------------
    @app.post("/api/tickets/{ticket_id}/purchase", status_code=201)
    async def purchase(
        ticket_id: int,
        body: PurchaseIn,
        svc: PurchaseService = Depends(purchases),
    ):
        result = await svc.create_purchase(ticket_id, body.form_data)
        return result.to_public()

    # ----------------------------
    # API: Order status
    # ----------------------------
    @app.get("/api/orders/{order_number}")
    async def get_order(
        order_number: str, svc: PurchaseService = Depends(purchases),
    ):
        order = await svc.get_order(order_number)
        return order.to_public()

    @app.post("/api/orders/{order_number}/refresh")
    async def refresh_order(
        order_number: str,
        engine: ReconciliationEngine = Depends(reconciler),
        svc: PurchaseService = Depends(purchases),
    ):
        result = await engine.refresh_from_gateway(order_number)
        order = result.order or await svc.get_order(order_number)
        return {"outcome": result.outcome.value, "order": order.to_public()}

    @app.post("/api/orders/{order_number}/payment-session")
    async def payment_session(
        order_number: str, svc: PurchaseService = Depends(purchases),
    ):
        result = await svc.new_payment_session(order_number)
        return result.to_public()

    # ----------------------------
    # Webhook endpoint (Midtrans / MockPay)
    # ----------------------------
    @app.post("/api/payments/notification")
    async def payment_notification(
        request: Request,
        engine: ReconciliationEngine = Depends(reconciler),
    ):
        payload = await request.body()
        headers = dict(request.headers)
        async with timeit("webhook.total"):
            result = await engine.handle_notification(payload, headers)
        return {"ok": True, "outcome": result.outcome.value}

    # ----------------------------
    # API: Admin
    # ----------------------------
    @app.post("/api/admin/tickets", status_code=201,
              dependencies=[Depends(require_admin)])
    async def admin_create_ticket(
        body: TicketIn, svc: PurchaseService = Depends(purchases),
    ):
        ticket = await svc.create_ticket(
            name=body.name,
            description=body.description,
            unit_price=body.unit_price,
            stock=body.stock,
            is_active=body.is_active,
            sale_start=_ts(body.sale_start),
            sale_end=_ts(body.sale_end),
        )
        return ticket.to_public()

    @app.put("/api/admin/orders/{order_id}/status",
             dependencies=[Depends(require_admin)])
    async def admin_update_status(
        order_id: int, body: StatusIn,
        svc: PurchaseService = Depends(purchases),
    ):
        order = await svc.override_status(
            order_id, body.status,
            payment_method=body.payment_method,
            payment_reference=body.payment_reference,
            notes=body.notes,
            clear_payment=body.clear_payment,
        )
        return order.to_public()

    @app.post("/api/admin/orders/{order_id}/race-pack",
              dependencies=[Depends(require_admin)])
    async def admin_collect_race_pack(
        order_id: int, body: Optional[RacePackIn] = None,
        svc: PurchaseService = Depends(purchases),
    ):
        who = body.collected_by if body else None
        return (await svc.set_race_pack(order_id, who)).to_public()

    @app.delete("/api/admin/orders/{order_id}/race-pack",
                dependencies=[Depends(require_admin)])
    async def admin_reset_race_pack(
        order_id: int, svc: PurchaseService = Depends(purchases),
    ):
        return (await svc.clear_race_pack(order_id)).to_public()

    # ----------------------------
    # MockPay: emit a signed notification to our own webhook
    # ----------------------------
    @app.post("/mockpay/{order_number}/emit")
    async def mockpay_emit(
        order_number: str, request: Request, body: MockEmitIn,
        svc: PurchaseService = Depends(purchases),
    ):
        adapter = request.app.state.adapter
        if not isinstance(adapter, MockPay):
            raise HTTPException(404, detail="mock payments disabled")
        order = await svc.get_order(order_number)
        payload, headers = adapter.build_notification(
            order, body.transaction_status,
            fraud_status=body.fraud_status,
            payment_type=body.payment_type,
        )

        client_http: httpx.AsyncClient = request.app.state.http
        url = request.app.state.settings.mock_webhook_url
        try:
            r = await client_http.post(url, content=payload, headers=headers)
            delivered = r.status_code
        except httpx.HTTPError as e:
            # the order can still be reconciled via /refresh
            incr("mockpay.undelivered")
            logger.warning("webhook delivery to %s failed: %s", url, e)
            delivered = None
        return {"order_number": order_number, "webhook_status": delivered}


app = create_app()
