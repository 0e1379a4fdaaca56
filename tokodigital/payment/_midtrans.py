# payment/_midtrans.py
"""
Midtrans (card / e-wallet processor).

Status vocabulary (lower-case on the wire): capture | settlement | pending |
deny | cancel | expire | failure, plus fraud_status accept | challenge | deny.
Notifications are signed in the body: signature_key =
hex SHA-512(order_id + status_code + gross_amount + server_key).
"""
from __future__ import annotations
import hashlib
import json
import logging
import re
from typing import Any, Dict, Mapping, Optional

import httpx

from ..errors import GatewayError
from ..helpers import ct_equal
from ..infra.timings import timeit
from .base import (
    GatewayStatus, PaymentEvent, PaymentGateway, PaymentLink, NOT_FOUND,
)

log = logging.getLogger(__name__)

CORE_SANDBOX = "https://api.sandbox.midtrans.com"
CORE_PRODUCTION = "https://api.midtrans.com"
SNAP_SANDBOX = "https://app.sandbox.midtrans.com/snap/v1"
SNAP_PRODUCTION = "https://app.midtrans.com/snap/v1"


def _amount(v: Any) -> int:
    # gross_amount arrives as "65000.00"
    try:
        return int(float(v or 0))
    except (TypeError, ValueError):
        return 0


def signature_for(order_id: str, status_code: str, gross_amount: str,
                  server_key: str) -> str:
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode()).hexdigest()


class MidtransGateway(PaymentGateway):
    name = "midtrans"

    SUCCESS_STATUSES = frozenset({"CAPTURE", "SETTLEMENT"})
    FAILED_STATUSES = frozenset({"DENY", "CANCEL", "EXPIRE", "FAILURE"})
    CANCEL_STATUSES = frozenset({"CANCEL"})
    PENDING_STATUSES = frozenset({"PENDING"})

    def __init__(
        self, http: httpx.AsyncClient, *, server_key: str,
        is_production: bool = False, qris_acquirer: str = "gopay",
        timeout: float = 20.0,
    ) -> None:
        self.http = http
        self.server_key = server_key
        self.core_url = CORE_PRODUCTION if is_production else CORE_SANDBOX
        self.snap_url = SNAP_PRODUCTION if is_production else SNAP_SANDBOX
        self.qris_acquirer = qris_acquirer
        self.timeout = timeout

    # the processor additionally screens for fraud
    def is_payment_successful(self, st: GatewayStatus) -> bool:
        if not super().is_payment_successful(st):
            return False
        fraud = (st.fraud_status or "").lower()
        return fraud in ("", "accept")

    def is_payment_failed(self, st: GatewayStatus) -> bool:
        if not st.found:
            return False
        if (st.fraud_status or "").lower() == "deny":
            return True
        return super().is_payment_failed(st)

    async def _request(self, method: str, url: str, kind: str,
                       **kw) -> httpx.Response:
        try:
            async with timeit(f"gateway.midtrans.{kind}"):
                r = await self.http.request(
                    method, url,
                    auth=(self.server_key, ""),
                    headers={
                        "Accept": "application/json",
                        **kw.pop("headers", {}),
                    },
                    timeout=self.timeout,
                    **kw,
                )
        except httpx.HTTPError as e:
            raise GatewayError(f"midtrans {kind}: {e!r}", self.name) from e
        if r.status_code in (401, 403):
            raise GatewayError(
                f"midtrans {kind}: unauthorized ({r.status_code})", self.name
            )
        if r.status_code >= 500:
            raise GatewayError(
                f"midtrans {kind}: HTTP {r.status_code}", self.name
            )
        return r

    @staticmethod
    def _json(r: httpx.Response, kind: str) -> Dict[str, Any]:
        try:
            data = r.json()
        except ValueError as e:
            raise GatewayError(
                f"midtrans {kind}: non-JSON response", "midtrans"
            ) from e
        if not isinstance(data, dict):
            raise GatewayError(f"midtrans {kind}: unexpected body", "midtrans")
        return data

    # ----------------------------
    # status
    # ----------------------------
    async def get_payment_status(self, order_id: str) -> GatewayStatus:
        log.debug("midtrans status lookup for %s", order_id)
        r = await self._request(
            "GET", f"{self.core_url}/v2/{order_id}/status", "status"
        )
        if r.status_code == 404:
            return GatewayStatus(
                found=False, status=NOT_FOUND,
                message="Transaksi tidak ditemukan di Midtrans",
            )
        data = self._json(r, "status")
        # the core API answers 200 with status_code "404" for unknown ids
        if str(data.get("status_code")) == "404":
            return GatewayStatus(
                found=False, status=NOT_FOUND,
                message="Transaksi tidak ditemukan di Midtrans",
            )
        if r.status_code != 200 or "transaction_status" not in data:
            raise GatewayError(
                f"midtrans status: {data.get('status_message')!r}", self.name
            )
        return GatewayStatus(
            found=True,
            status=str(data.get("transaction_status") or "").lower(),
            amount=_amount(data.get("gross_amount")),
            reference=data.get("transaction_id"),
            method=data.get("payment_type"),
            fraud_status=data.get("fraud_status"),
            paid_at=data.get("settlement_time"),
            raw=data,
        )

    # ----------------------------
    # payment creation
    # ----------------------------
    async def create_pay_link(
        self, order_id: str, amount: int, buyer: Mapping[str, str],
        callback_url: str,
    ) -> PaymentLink:
        name = (buyer.get("name") or "").strip()
        first, _, last = name.partition(" ")
        body = {
            "transaction_details": {
                "order_id": order_id, "gross_amount": amount,
            },
            "customer_details": {
                "first_name": first or "Telegram",
                "last_name": last or "User",
                "email": buyer.get("email") or "user@telegram.local",
            },
            "item_details": [{
                "id": order_id, "price": amount, "quantity": 1,
                "name": buyer.get("item_name") or "Digital Item",
            }],
            "credit_card": {"secure": True},
        }
        if buyer.get("return_url"):
            body["callbacks"] = {"finish": buyer["return_url"]}
        r = await self._request(
            "POST", f"{self.snap_url}/transactions", "snap",
            json=body,
            headers={"X-Override-Notification": callback_url},
        )
        data = self._json(r, "snap")
        if not data.get("redirect_url"):
            raise GatewayError(
                f"midtrans snap failed: {data.get('error_messages')!r}",
                self.name,
            )
        return PaymentLink(
            reference=data.get("token"), checkout_url=data["redirect_url"]
        )

    async def create_qris(
        self, order_id: str, amount: int, callback_url: str
    ) -> PaymentLink:
        body = {
            "payment_type": "qris",
            "transaction_details": {
                "order_id": order_id, "gross_amount": amount,
            },
            "qris": {"acquirer": self.qris_acquirer},
        }
        r = await self._request(
            "POST", f"{self.core_url}/v2/charge", "charge",
            json=body,
            headers={"X-Override-Notification": callback_url},
        )
        data = self._json(r, "charge")
        qr_string = (data.get("qris") or {}).get("qr_string") \
            or data.get("qr_string")
        qr_url: Optional[str] = None
        for action in data.get("actions") or []:
            if re.search(r"qr", str(action.get("name") or ""), re.I) \
                    and action.get("url"):
                qr_url = action["url"]
                break
        qr_url = qr_url or data.get("qr_url") or data.get("qr_code_url")
        if not qr_string and not qr_url:
            log.error("midtrans QRIS without code: %s", json.dumps(data))
            raise GatewayError("midtrans QRIS: no qr_string or url", self.name)
        return PaymentLink(
            reference=data.get("transaction_id"),
            qr_string=qr_string, qr_url=qr_url,
        )

    # ----------------------------
    # webhook
    # ----------------------------
    def verify_webhook(self, raw_body: bytes,
                       headers: Mapping[str, str]) -> bool:
        if not self.server_key:
            return False
        try:
            body = json.loads(raw_body or b"{}")
        except (ValueError, UnicodeDecodeError):
            return False
        if not isinstance(body, dict):
            return False
        given = body.get("signature_key")
        if not given:
            return False
        expected = signature_for(
            str(body.get("order_id", "")),
            str(body.get("status_code", "")),
            str(body.get("gross_amount", "")),
            self.server_key,
        )
        return ct_equal(expected, str(given))

    def parse_webhook(self, body: Dict[str, Any]) -> PaymentEvent:
        return PaymentEvent(
            provider=self.name,
            order_id=str(body.get("order_id") or ""),
            status=str(body.get("transaction_status") or "").lower(),
            reference=body.get("transaction_id") or body.get("order_id"),
            amount=_amount(body.get("gross_amount")),
            fraud_status=body.get("fraud_status"),
        )
