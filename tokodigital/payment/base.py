from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional


# ----------------------------
# Normalized records
# ----------------------------
@dataclass
class GatewayStatus:
    """What the gateway currently says about one order. Never persisted."""
    found: bool
    status: str
    amount: Optional[int] = None
    reference: Optional[str] = None
    method: Optional[str] = None
    fraud_status: Optional[str] = None
    paid_at: Optional[str] = None
    message: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentEvent:
    provider: str
    order_id: str
    status: str
    reference: Optional[str]
    amount: int
    fraud_status: Optional[str] = None

    def as_status(self) -> GatewayStatus:
        return GatewayStatus(
            found=True,
            status=self.status,
            amount=self.amount,
            reference=self.reference,
            fraud_status=self.fraud_status,
        )


@dataclass
class PaymentLink:
    reference: Optional[str] = None
    checkout_url: Optional[str] = None
    qr_string: Optional[str] = None
    qr_url: Optional[str] = None


NOT_FOUND = "NOT_FOUND"

MSG_NOT_FOUND = "Transaksi tidak ditemukan di payment gateway"
MSG_SUCCESS = "Pembayaran berhasil! ✅"
MSG_FAILED = "Pembayaran gagal atau dibatalkan ❌"
MSG_WAITING = "Menunggu pembayaran ⏳"


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentGateway(ABC):
    name: str = ""

    # vocabularies, upper-cased for comparison
    SUCCESS_STATUSES: frozenset = frozenset()
    FAILED_STATUSES: frozenset = frozenset()
    CANCEL_STATUSES: frozenset = frozenset()
    PENDING_STATUSES: frozenset = frozenset()

    @abstractmethod
    async def get_payment_status(self, order_id: str) -> GatewayStatus:
        """found=False when the provider has no such transaction.
        Raises GatewayError on transport/auth failure."""

    @abstractmethod
    async def create_pay_link(
        self, order_id: str, amount: int, buyer: Mapping[str, str],
        callback_url: str,
    ) -> PaymentLink: ...

    @abstractmethod
    async def create_qris(
        self, order_id: str, amount: int, callback_url: str
    ) -> PaymentLink: ...

    @abstractmethod
    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]
                       ) -> bool: ...

    @abstractmethod
    def parse_webhook(self, body: Dict[str, Any]) -> PaymentEvent: ...

    # classification is pure; subclasses only supply vocabularies
    def is_payment_successful(self, st: GatewayStatus) -> bool:
        if not st.found:
            return False
        return (st.status or "").upper() in self.SUCCESS_STATUSES

    def is_payment_failed(self, st: GatewayStatus) -> bool:
        if not st.found:
            return False
        return (st.status or "").upper() in self.FAILED_STATUSES

    def is_cancellation(self, st: GatewayStatus) -> bool:
        return (st.status or "").upper() in self.CANCEL_STATUSES

    def get_status_message(self, st: GatewayStatus) -> str:
        if not st.found:
            return st.message or MSG_NOT_FOUND
        if self.is_payment_successful(st):
            return MSG_SUCCESS
        if self.is_payment_failed(st):
            return MSG_FAILED
        if (st.status or "").upper() in self.PENDING_STATUSES:
            return MSG_WAITING
        return f"Status: {st.status}"

    async def aclose(self) -> None:
        pass
