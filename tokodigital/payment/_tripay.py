# payment/_tripay.py
"""
Tripay (QRIS / invoice aggregator).

Status vocabulary: PAID | UNPAID | FAILED | EXPIRED | REFUND | CANCEL.
Webhooks carry X-Callback-Signature = hex HMAC-SHA256(private key, raw body).
"""
from __future__ import annotations
import hashlib
import hmac
import logging
import re
import time
from typing import Any, Dict, Mapping, Optional

import httpx

from ..errors import GatewayError
from ..helpers import ct_equal
from ..infra.timings import timeit
from .base import (
    GatewayStatus, PaymentEvent, PaymentGateway, PaymentLink, NOT_FOUND,
)

log = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-callback-signature"


def _hmac_hex(key: str, msg: bytes) -> str:
    return hmac.new(key.encode(), msg, hashlib.sha256).hexdigest()


def _amount(v: Any) -> int:
    try:
        return int(float(v or 0))
    except (TypeError, ValueError):
        return 0


class TripayGateway(PaymentGateway):
    name = "tripay"

    SUCCESS_STATUSES = frozenset({"PAID"})
    FAILED_STATUSES = frozenset({"FAILED", "EXPIRED", "REFUND", "CANCEL"})
    CANCEL_STATUSES = frozenset({"CANCEL"})
    PENDING_STATUSES = frozenset({"UNPAID"})

    def __init__(
        self, http: httpx.AsyncClient, *, base_url: str, api_key: str,
        private_key: str, merchant_code: str, default_method: str = "QRIS",
        timeout: float = 20.0,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.private_key = private_key
        self.merchant_code = merchant_code
        self.default_method = default_method
        self.timeout = timeout
        # sandbox/production bases may or may not already end in /api
        self._has_api_suffix = bool(
            re.search(r"/api(-sandbox)?$", self.base_url)
        )

    def _url(self, segment: str) -> str:
        segment = segment.lstrip("/")
        if self._has_api_suffix:
            return f"{self.base_url}/{segment}"
        return f"{self.base_url}/api/{segment}"

    def _auth(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }

    async def _call(self, method: str, segment: str, **kw) -> Dict[str, Any]:
        try:
            async with timeit(f"gateway.tripay.{segment}"):
                r = await self.http.request(
                    method, self._url(segment), headers=self._auth(),
                    timeout=self.timeout, **kw
                )
        except httpx.HTTPError as e:
            raise GatewayError(f"tripay {segment}: {e!r}", self.name) from e
        if r.status_code in (401, 403):
            raise GatewayError(
                f"tripay {segment}: unauthorized ({r.status_code})", self.name
            )
        if r.status_code >= 500:
            raise GatewayError(
                f"tripay {segment}: HTTP {r.status_code}", self.name
            )
        try:
            data = r.json()
        except ValueError as e:
            raise GatewayError(
                f"tripay {segment}: non-JSON response", self.name
            ) from e
        if not isinstance(data, dict):
            raise GatewayError(f"tripay {segment}: unexpected body", self.name)
        return data

    # ----------------------------
    # status
    # ----------------------------
    async def get_payment_status(self, order_id: str) -> GatewayStatus:
        log.debug("tripay status lookup for %s", order_id)
        data = await self._call(
            "GET", "merchant/transactions",
            params={"merchant_ref": order_id},
        )
        if not data.get("success"):
            raise GatewayError(
                f"tripay error: {data.get('message')}", self.name
            )
        txs = data.get("data") or []
        if not isinstance(txs, list):
            raise GatewayError("tripay: data is not a list", self.name)

        tx = next(
            (t for t in txs
             if isinstance(t, dict) and t.get("merchant_ref") == order_id),
            None,
        )
        if tx is None:
            return GatewayStatus(
                found=False, status=NOT_FOUND,
                message="Transaksi tidak ditemukan di Tripay",
            )
        return GatewayStatus(
            found=True,
            status=str(tx.get("status") or "").upper(),
            amount=_amount(tx.get("amount")),
            reference=tx.get("reference"),
            method=tx.get("payment_method"),
            paid_at=(str(tx["paid_at"]) if tx.get("paid_at") else None),
            raw=tx,
        )

    # ----------------------------
    # payment creation
    # ----------------------------
    async def _create_transaction(
        self, order_id: str, amount: int, buyer: Mapping[str, str],
        callback_url: str, method: Optional[str] = None,
        expired_seconds: int = 3600,
    ) -> Dict[str, Any]:
        if not (self.api_key and self.private_key and self.merchant_code):
            raise GatewayError("tripay credentials not configured", self.name)
        signature = _hmac_hex(
            self.private_key,
            f"{self.merchant_code}{order_id}{amount}".encode(),
        )
        form = {
            "method": method or self.default_method,
            "merchant_ref": order_id,
            "amount": str(amount),
            "customer_name": buyer.get("name") or "Telegram User",
            "customer_email": buyer.get("email") or "user@telegram.local",
            "order_items[0][sku]": order_id,
            "order_items[0][name]": buyer.get("item_name") or "Digital Item",
            "order_items[0][price]": str(amount),
            "order_items[0][quantity]": "1",
            "callback_url": callback_url,
            "expired_time": str(int(time.time()) + expired_seconds),
            "signature": signature,
        }
        if buyer.get("phone"):
            form["customer_phone"] = buyer["phone"]
        if buyer.get("return_url"):
            form["return_url"] = buyer["return_url"]

        data = await self._call("POST", "transaction/create", data=form)
        if not data.get("success"):
            raise GatewayError(
                f"tripay create failed: {data.get('message')}", self.name
            )
        return data.get("data") or {}

    async def create_pay_link(
        self, order_id: str, amount: int, buyer: Mapping[str, str],
        callback_url: str,
    ) -> PaymentLink:
        d = await self._create_transaction(
            order_id, amount, buyer, callback_url
        )
        return PaymentLink(
            reference=d.get("reference"),
            checkout_url=(
                d.get("checkout_url") or d.get("pay_url")
                or d.get("payment_url")
            ),
        )

    async def create_qris(
        self, order_id: str, amount: int, callback_url: str
    ) -> PaymentLink:
        d = await self._create_transaction(
            order_id, amount, {}, callback_url, method="QRIS"
        )
        reference = d.get("reference")
        checkout = d.get("checkout_url") or d.get("pay_url")
        if d.get("qr_string") or d.get("qr_url"):
            return PaymentLink(
                reference=reference, checkout_url=checkout,
                qr_string=d.get("qr_string"), qr_url=d.get("qr_url"),
            )
        try:
            detail = await self._call(
                "GET", "transaction/detail", params={"reference": reference}
            )
        except GatewayError:
            # the invoice exists; the checkout page shows the QR as well
            log.warning("tripay detail lookup failed for %s", reference)
            return PaymentLink(
                reference=reference, checkout_url=checkout, qr_url=checkout
            )
        dd = detail.get("data") or {}
        return PaymentLink(
            reference=reference,
            checkout_url=checkout,
            qr_string=dd.get("qr_string") or dd.get("qris_content"),
            qr_url=dd.get("qr_url") or dd.get("qris_url") or checkout,
        )

    # ----------------------------
    # webhook
    # ----------------------------
    def verify_webhook(self, raw_body: bytes,
                       headers: Mapping[str, str]) -> bool:
        sig = {k.lower(): v for k, v in headers.items()}.get(SIGNATURE_HEADER)
        if not sig or not self.private_key:
            return False
        expected = _hmac_hex(self.private_key, raw_body or b"")
        return ct_equal(expected, sig.strip())

    def parse_webhook(self, body: Dict[str, Any]) -> PaymentEvent:
        return PaymentEvent(
            provider=self.name,
            order_id=str(body.get("merchant_ref") or ""),
            status=str(body.get("status") or "").upper(),
            reference=body.get("reference"),
            amount=_amount(body.get("total_amount") or body.get("amount")),
        )
