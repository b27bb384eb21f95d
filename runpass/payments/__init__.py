# payments/__init__.py
from typing import Optional

import httpx

from ..config import Settings
from ._base import GatewayStatus, PaymentAdapter, PaymentSession
from ._midtrans import Midtrans
from ._mock import MockPay


# server.py only ever sees a PaymentAdapter
def new_adapter(settings: Settings,
                *, http: Optional[httpx.AsyncClient] = None) -> PaymentAdapter:
    if settings.payment_backend == "midtrans":
        if http is None:
            raise RuntimeError("Midtrans adapter requires http=AsyncClient")
        return Midtrans(
            server_key=settings.midtrans_server_key,
            http=http,
            is_production=settings.midtrans_is_production,
            timeout=settings.midtrans_timeout_seconds,
        )
    return MockPay(secret=settings.mock_secret)


__all__ = [
    "GatewayStatus", "PaymentAdapter", "PaymentSession",
    "Midtrans", "MockPay", "new_adapter",
]
