# webhooks.py
"""
Inbound payment notifications.

The shared endpoint does not know which provider is calling, so every
configured verifier is tried in turn and the first one that accepts the
signature decides how the body is read. Nothing is parsed, looked up or
changed before a signature matched.
"""
from __future__ import annotations
import json
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import (
    InvalidTransition, MalformedWebhook, OrderNotFound, WebhookRejected,
)
from .fulfillment import FulfillmentEngine
from .model.ledger import OrderLedger
from .payment import PaymentEvent, PaymentGateway
from .sweeper import ReconciliationSweeper

log = logging.getLogger(__name__)


class WebhookNormalizer:
    def __init__(self, verifiers: Dict[str, PaymentGateway]) -> None:
        self.verifiers = verifiers

    def verify(self, raw_body: bytes, headers: Mapping[str, str],
               provider: Optional[str] = None) -> Optional[str]:
        """Name of the provider whose signature matches, or None."""
        if provider is not None:
            gw = self.verifiers.get(provider)
            candidates = [gw] if gw is not None else []
        else:
            candidates = list(self.verifiers.values())
        for gw in candidates:
            if gw.verify_webhook(raw_body, headers):
                return gw.name
        return None

    def parse(self, provider: str, raw_body: bytes) -> PaymentEvent:
        try:
            body: Any = json.loads(raw_body or b"")
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedWebhook("body is not JSON") from e
        if not isinstance(body, dict):
            raise MalformedWebhook("body is not a JSON object")
        event = self.verifiers[provider].parse_webhook(body)
        if not event.order_id:
            raise MalformedWebhook("no order id in notification")
        return event

    def verify_and_parse(self, raw_body: bytes, headers: Mapping[str, str],
                         provider: Optional[str] = None) -> PaymentEvent:
        matched = self.verify(raw_body, headers, provider)
        if matched is None:
            raise WebhookRejected("invalid signature")
        return self.parse(matched, raw_body)

    def gateway_for(self, provider: str) -> PaymentGateway:
        return self.verifiers[provider]


class WebhookHandler:
    def __init__(self, normalizer: WebhookNormalizer, ledger: OrderLedger,
                 engine: FulfillmentEngine,
                 sweeper: ReconciliationSweeper) -> None:
        self.normalizer = normalizer
        self.ledger = ledger
        self.engine = engine
        self.sweeper = sweeper

    async def handle(
        self, raw_body: bytes, headers: Mapping[str, str],
        provider: Optional[str] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        """Returns (http status, JSON body). Processing is complete when it
        returns; only signature and body problems surface as errors."""
        try:
            event = self.normalizer.verify_and_parse(
                raw_body, headers, provider
            )
        except WebhookRejected:
            log.warning("webhook rejected: no signature matched (%s)",
                        provider or "any provider")
            return 403, {"ok": False, "error": "invalid signature"}
        except MalformedWebhook as e:
            log.warning("malformed webhook: %s", e)
            return 400, {"ok": False, "error": str(e)}

        order = await self.ledger.find_by_order_id(event.order_id)
        if order is None:
            log.info("webhook for unknown order %s (%s)",
                     event.order_id, event.provider)
            return 404, {"ok": False, "error": "order not found"}

        log.info("webhook %s: order %s status=%s",
                 event.provider, event.order_id, event.status)
        if event.amount and event.amount != order.price_idr:
            log.warning("order %s: webhook amount %s != order price %s",
                        order.order_id, event.amount, order.price_idr)

        gw = self.normalizer.gateway_for(event.provider)
        st = event.as_status()

        if gw.is_payment_successful(st):
            await self.ledger.set_payment_ref(order.order_id, event.reference)
            try:
                res = await self.engine.fulfill(order.order_id)
            except (OrderNotFound, InvalidTransition) as e:
                log.error("paid webhook for %s could not be fulfilled: %s",
                          order.order_id, e)
                return 200, {"ok": True, "status": "IGNORED"}
            return 200, {"ok": True, "status": res.status}

        if gw.is_payment_failed(st):
            removed = await self.sweeper.discard_order(
                order, f"Pembayaran {event.status}",
                canceled=gw.is_cancellation(st),
            )
            return 200, {
                "ok": True, "status": "DELETED" if removed else "IGNORED"
            }

        return 200, {"ok": True, "status": event.status or "PENDING"}
