# payment/__init__.py
from typing import Dict, Optional

import httpx

from .. import config
from .base import (
    GatewayStatus, PaymentEvent, PaymentGateway, PaymentLink, NOT_FOUND,
)
from ._tripay import TripayGateway
from ._midtrans import MidtransGateway

PROVIDERS = ("tripay", "midtrans")


def _tripay(http: httpx.AsyncClient) -> TripayGateway:
    return TripayGateway(
        http,
        base_url=config.TRIPAY_BASE_URL,
        api_key=config.TRIPAY_API_KEY,
        private_key=config.TRIPAY_PRIVATE_KEY,
        merchant_code=config.TRIPAY_MERCHANT_CODE,
        default_method=config.TRIPAY_DEFAULT_METHOD,
        timeout=config.GATEWAY_TIMEOUT,
    )


def _midtrans(http: httpx.AsyncClient) -> MidtransGateway:
    return MidtransGateway(
        http,
        server_key=config.MIDTRANS_SERVER_KEY,
        is_production=config.MIDTRANS_IS_PRODUCTION,
        qris_acquirer=config.MIDTRANS_QRIS_ACQUIRER,
        timeout=config.GATEWAY_TIMEOUT,
    )


# Factory keeps server.py simple: one active provider per deployment
def new_gateway(http: httpx.AsyncClient,
                provider: Optional[str] = None) -> PaymentGateway:
    provider = (provider or config.PAYMENT_PROVIDER).lower()
    if provider == "midtrans":
        return _midtrans(http)
    if provider == "tripay":
        return _tripay(http)
    raise RuntimeError(f"unknown PAYMENT_PROVIDER {provider!r}")


def all_gateways(http: httpx.AsyncClient) -> Dict[str, PaymentGateway]:
    """Every provider, for webhook verification on the shared endpoint."""
    return {"tripay": _tripay(http), "midtrans": _midtrans(http)}


__all__ = [
    "GatewayStatus", "PaymentEvent", "PaymentGateway", "PaymentLink",
    "NOT_FOUND", "TripayGateway", "MidtransGateway", "new_gateway",
    "all_gateways", "PROVIDERS",
]
