# fulfillment.py
"""
Fulfillment engine: the single place where "paid" becomes "delivered".

Webhooks, both sweepers and the buyer "check payment" action all end up in
FulfillmentEngine.fulfill(). The credential claim and the FULFILLED write are
one committed transaction (see OrderLedger.fulfill_with_credential); the chat
message goes out afterwards and its failure never undoes the claim.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

from . import config
from .errors import InvalidTransition, OrderNotFound
from .model.catalog import Catalog
from .model.db import Order, PENDING, PAID, FULFILLED as ORDER_FULFILLED
from .model.ledger import (
    OrderLedger, ALREADY_FULFILLED, CLAIMED, NO_STOCK,
)
from .notify import Notifier, msg_delivered, msg_no_stock
from .helpers import escape_html

log = logging.getLogger(__name__)

# fulfill() result statuses
FULFILLED = "FULFILLED"
PAID_NO_STOCK = "PAID_NO_STOCK"


@dataclass
class FulfillmentResult:
    status: str
    order: Order
    credential: Optional[str] = None
    # True only for the call that claimed the credential
    delivered: bool = False

    def as_dict(self) -> dict:
        return {
            "status": self.status,
            "order_id": self.order.order_id,
            "delivered": self.delivered,
        }


class FulfillmentEngine:
    def __init__(self, ledger: OrderLedger, catalog: Catalog,
                 notifier: Notifier,
                 admin_chat_id: str = config.ADMIN_CHAT_ID) -> None:
        self.ledger = ledger
        self.catalog = catalog
        self.notifier = notifier
        self.admin_chat_id = admin_chat_id

    async def fulfill(self, order_id: str) -> FulfillmentResult:
        order = await self.ledger.find_by_order_id(order_id)
        if order is None:
            raise OrderNotFound(order_id)

        # idempotent hit: hand back what was delivered before
        if order.status == ORDER_FULFILLED:
            return FulfillmentResult(
                FULFILLED, order, order.delivered_payload
            )

        if order.status == PENDING:
            await self.ledger.mark_paid(order_id)
        elif order.status != PAID:
            raise InvalidTransition(order_id, order.status, PAID)

        outcome, order, cred = await self.ledger.fulfill_with_credential(
            order_id
        )
        if outcome == ALREADY_FULFILLED:
            # a concurrent trigger won; it sends the message
            return FulfillmentResult(FULFILLED, order, order.delivered_payload)
        if outcome not in (CLAIMED, NO_STOCK):
            raise InvalidTransition(order_id, order.status, ORDER_FULFILLED)

        name = await self._product_name(order.product_id)

        if outcome == NO_STOCK:
            log.warning(
                "order %s paid but product %s has no stock; waiting for admin",
                order_id, order.product_id,
            )
            await self._notify(order.buyer_id, msg_no_stock(
                order.order_id, name, order.price_idr,
            ))
            if self.admin_chat_id:
                await self._notify(self.admin_chat_id, (
                    "⚠️ <b>Stok kosong setelah pembayaran</b>\n"
                    f"Order <code>{escape_html(order.order_id)}</code> "
                    f"({escape_html(name)}) menunggu pengiriman manual."
                ))
            return FulfillmentResult(PAID_NO_STOCK, order)

        sent = await self._notify(order.buyer_id, msg_delivered(
            order.order_id, name, order.price_idr, cred.payload,
        ))
        if not sent:
            log.warning("order %s fulfilled but message not delivered; "
                        "use the resend endpoint", order_id)
        return FulfillmentResult(
            FULFILLED, order, cred.payload, delivered=True
        )

    async def resend(self, order_id: str) -> bool:
        """Operator path: send the stored credential again."""
        order = await self.ledger.find_by_order_id(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if order.status != ORDER_FULFILLED:
            raise InvalidTransition(order_id, order.status, ORDER_FULFILLED)
        name = await self._product_name(order.product_id)
        log.info("resending credential for order %s", order_id)
        return await self._notify(order.buyer_id, msg_delivered(
            order.order_id, name, order.price_idr, order.delivered_payload,
        ))

    async def _product_name(self, product_id: int) -> str:
        product = await self.catalog.get(product_id)
        return product.name if product is not None else "Unknown"

    async def _notify(self, chat_id: str, text: str) -> bool:
        try:
            return await self.notifier.send_message(chat_id, text, html=True)
        except Exception:
            log.exception("notification to %s failed", chat_id)
            return False
