from typing import Any, Dict, List, Mapping, Optional, Union

import httpx
import pytest

from tokodigital.errors import GatewayError
from tokodigital.fulfillment import FulfillmentEngine
from tokodigital.infra.sql import open_database
from tokodigital.model.catalog import Catalog
from tokodigital.model.credentials import CredentialStore
from tokodigital.model.db import init_models
from tokodigital.model.ledger import OrderLedger
from tokodigital.notify import Notifier
from tokodigital.payment import (
    GatewayStatus, NOT_FOUND, PaymentEvent, PaymentGateway, PaymentLink,
    TripayGateway,
)
from tokodigital.server import app, build_services
from tokodigital.sweeper import ReconciliationSweeper
from tokodigital.throttle import new_store

FAKE_SIGNATURE_HEADER = "x-fake-signature"
FAKE_SECRET = "fake-secret"
TRIPAY_PRIVATE_KEY = "tripay-private"


class FakeGateway(PaymentGateway):
    """Scripted gateway: tests set what it answers per order id."""
    name = "fake"

    SUCCESS_STATUSES = frozenset({"PAID"})
    FAILED_STATUSES = frozenset({"FAILED", "EXPIRED", "CANCEL"})
    CANCEL_STATUSES = frozenset({"CANCEL"})
    PENDING_STATUSES = frozenset({"UNPAID"})

    def __init__(self) -> None:
        self.statuses: Dict[str, Union[GatewayStatus, Exception]] = {}
        self.status_calls: List[str] = []
        self.created: List[str] = []
        self.fail_create = False

    def set_status(self, order_id: str, status: str,
                   amount: Optional[int] = None) -> None:
        self.statuses[order_id] = GatewayStatus(
            found=True, status=status, amount=amount,
            reference=f"REF-{order_id}",
        )

    def set_error(self, order_id: str) -> None:
        self.statuses[order_id] = GatewayError("connection reset", self.name)

    async def get_payment_status(self, order_id: str) -> GatewayStatus:
        self.status_calls.append(order_id)
        st = self.statuses.get(order_id)
        if isinstance(st, Exception):
            raise st
        if st is None:
            return GatewayStatus(found=False, status=NOT_FOUND,
                                 message="unknown transaction")
        return st

    async def create_pay_link(self, order_id: str, amount: int,
                              buyer: Mapping[str, str],
                              callback_url: str) -> PaymentLink:
        if self.fail_create:
            raise GatewayError("create failed", self.name)
        self.created.append(order_id)
        return PaymentLink(reference=f"REF-{order_id}",
                           checkout_url=f"https://pay.test/{order_id}")

    async def create_qris(self, order_id: str, amount: int,
                          callback_url: str) -> PaymentLink:
        if self.fail_create:
            raise GatewayError("create failed", self.name)
        self.created.append(order_id)
        return PaymentLink(reference=f"REF-{order_id}",
                           qr_string=f"000201QR{order_id}")

    def verify_webhook(self, raw_body: bytes,
                       headers: Mapping[str, str]) -> bool:
        sig = {k.lower(): v for k, v in headers.items()}.get(
            FAKE_SIGNATURE_HEADER
        )
        return sig == FAKE_SECRET

    def parse_webhook(self, body: Dict[str, Any]) -> PaymentEvent:
        return PaymentEvent(
            provider=self.name,
            order_id=str(body.get("order_id") or ""),
            status=str(body.get("status") or "").upper(),
            reference=body.get("reference"),
            amount=int(body.get("amount") or 0),
        )


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False) -> None:
        self.sent: List[tuple] = []
        self.fail = fail

    async def send_message(self, buyer_id: str, text: str,
                           html: bool = True) -> bool:
        if self.fail:
            raise RuntimeError("chat api down")
        self.sent.append((buyer_id, text))
        return True

    def to(self, buyer_id: str) -> List[str]:
        return [text for chat, text in self.sent if chat == buyer_id]


@pytest.fixture
async def db(tmp_path):
    database = open_database(f"sqlite:///{tmp_path / 'test.db'}")
    await init_models(database.engine)
    yield database
    await database.dispose()


@pytest.fixture
def catalog(db):
    return Catalog(db)


@pytest.fixture
def credentials(db):
    return CredentialStore(db)


@pytest.fixture
def ledger(db, credentials):
    return OrderLedger(db, credentials)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(ledger, catalog, notifier):
    return FulfillmentEngine(ledger, catalog, notifier, admin_chat_id="")


@pytest.fixture
def sweeper(ledger, catalog, gateway, engine, notifier):
    return ReconciliationSweeper(
        ledger, catalog, gateway, engine, notifier, delay=0, stale_delay=0
    )


@pytest.fixture
async def product(catalog):
    return await catalog.add("netflix-1m", "Netflix 1 Bulan", 65_000)


@pytest.fixture
async def svc(db, gateway, notifier):
    http = httpx.AsyncClient()
    tripay = TripayGateway(
        http, base_url="https://tripay.co.id/api-sandbox", api_key="k",
        private_key=TRIPAY_PRIVATE_KEY, merchant_code="T0001",
    )
    services = build_services(
        db, gateway=gateway,
        verifiers={"fake": gateway, "tripay": tripay},
        notifier=notifier, cooldown=new_store(backend="memory"),
        retain_failed=False, sweep_delay=0, stale_delay=0,
    )
    app.state.services = services
    yield services
    del app.state.services
    await http.aclose()


@pytest.fixture
async def client(svc):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://test") as c:
        yield c
