# sweeper.py
"""
Reconciliation against the payment gateway.

The gateway is the source of truth for payment state. check_order() asks it
about one order and applies the three-way classification (paid -> fulfil,
failed/unknown -> discard, pending -> keep). The periodic sweeps and the
buyer's "check payment" button all go through it.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from . import config
from .errors import GatewayError, OrderNotFound, InvalidTransition
from .fulfillment import (
    FulfillmentEngine, FulfillmentResult, FULFILLED, PAID_NO_STOCK,
)
from .infra.timings import timeit
from .model.catalog import Catalog
from .model.db import Order, FULFILLED as ORDER_FULFILLED
from .model.ledger import OrderLedger
from .notify import Notifier, msg_order_removed
from .payment import GatewayStatus, PaymentGateway

log = logging.getLogger(__name__)

# check_order outcomes besides FULFILLED and PAID_NO_STOCK
DELETED = "DELETED"
PENDING = "PENDING"
NOT_FOUND = "NOT_FOUND"

MSG_MOVED_ON = "Status pesanan sudah berubah, silakan cek ulang"


@dataclass
class CheckResult:
    outcome: str
    message: str
    gateway: Optional[GatewayStatus] = None
    fulfillment: Optional[FulfillmentResult] = None

    def as_dict(self) -> dict:
        d = {"status": self.outcome, "message": self.message}
        if self.gateway is not None:
            d["gateway_status"] = self.gateway.status
        if self.fulfillment is not None:
            d["delivered"] = self.fulfillment.delivered
        return d


@dataclass
class SweepSummary:
    processed: int = 0
    fulfilled: int = 0
    deleted: int = 0
    kept: int = 0
    errors: int = 0
    order_ids: List[str] = field(default_factory=list, repr=False)

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "fulfilled": self.fulfilled,
            "deleted": self.deleted,
            "kept": self.kept,
            "errors": self.errors,
        }


class ReconciliationSweeper:
    def __init__(
        self, ledger: OrderLedger, catalog: Catalog,
        gateway: PaymentGateway, engine: FulfillmentEngine,
        notifier: Notifier,
        delay: float = config.SWEEP_DELAY_SECONDS,
        stale_delay: float = config.STALE_DELAY_SECONDS,
    ) -> None:
        self.ledger = ledger
        self.catalog = catalog
        self.gateway = gateway
        self.engine = engine
        self.notifier = notifier
        self.delay = delay
        self.stale_delay = stale_delay

    # ------------------------------------------------------------------
    # one order
    # ------------------------------------------------------------------
    async def check_order(self, order: Order, *,
                          delete_unknown: bool = True,
                          reason_prefix: str = "") -> CheckResult:
        """Classify one order against the gateway and act on it.

        Raises GatewayError on transport failure; the order is untouched
        in that case. With delete_unknown=False an order the gateway does
        not know yet is reported as NOT_FOUND instead of being discarded
        (buyer-triggered checks right after checkout).
        """
        if order.status == ORDER_FULFILLED:
            return CheckResult(
                FULFILLED, "Pesanan sudah selesai dan produk sudah dikirim"
            )

        async with timeit("gateway.status"):
            st = await self.gateway.get_payment_status(order.order_id)
        log.debug("order %s: gateway says found=%s status=%s",
                  order.order_id, st.found, st.status)

        if not st.found:
            if not delete_unknown:
                return CheckResult(
                    NOT_FOUND, self.gateway.get_status_message(st), st
                )
            if not await self.discard_order(
                order, reason_prefix + "Order tidak ditemukan di payment "
                "gateway", canceled=False,
            ):
                return CheckResult(PENDING, MSG_MOVED_ON, st)
            return CheckResult(DELETED, st.message or "not found", st)

        if self.gateway.is_payment_successful(st):
            await self.ledger.set_payment_ref(order.order_id, st.reference)
            res = await self.engine.fulfill(order.order_id)
            if res.status == PAID_NO_STOCK:
                return CheckResult(
                    PAID_NO_STOCK,
                    "Pembayaran berhasil dikonfirmasi! Namun stok kosong, "
                    "admin akan segera menindaklanjuti.",
                    st, res,
                )
            return CheckResult(
                FULFILLED,
                "Pembayaran berhasil dikonfirmasi! Produk sudah dikirim.",
                st, res,
            )

        if self.gateway.is_payment_failed(st):
            if not await self.discard_order(
                order, reason_prefix + f"Pembayaran {st.status}",
                canceled=self.gateway.is_cancellation(st),
            ):
                return CheckResult(PENDING, MSG_MOVED_ON, st)
            return CheckResult(
                DELETED,
                f"Pembayaran gagal ({st.status}). Pesanan telah dihapus "
                "dari sistem.",
                st,
            )

        return CheckResult(PENDING, self.gateway.get_status_message(st), st)

    async def check_order_id(self, order_id: str, **kw) -> CheckResult:
        order = await self.ledger.find_by_order_id(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return await self.check_order(order, **kw)

    async def discard_order(self, order: Order, reason: str,
                            canceled: bool) -> bool:
        removed = await self.ledger.discard(
            order.order_id, canceled=canceled, expected=order.status
        )
        if not removed:
            # already fulfilled/discarded by a concurrent trigger
            log.info("order %s was not discarded (status moved on)",
                     order.order_id)
            return False
        log.info("order %s removed: %s (buyer=%s)",
                 order.order_id, reason, order.buyer_id)
        product = await self.catalog.get(order.product_id)
        name = product.name if product is not None else "Unknown"
        try:
            await self.notifier.send_message(
                order.buyer_id,
                msg_order_removed(order.order_id, name, order.price_idr,
                                  reason),
                html=True,
            )
        except Exception:
            log.exception("could not notify buyer %s about order %s",
                          order.buyer_id, order.order_id)
        return True

    # ------------------------------------------------------------------
    # batches
    # ------------------------------------------------------------------
    async def _run_batch(self, orders: List[Order], delay: float,
                         label: str, reason_prefix: str = "") -> SweepSummary:
        summary = SweepSummary()
        for i, order in enumerate(orders):
            if i and delay > 0:
                await asyncio.sleep(delay)
            summary.processed += 1
            summary.order_ids.append(order.order_id)
            try:
                res = await self.check_order(
                    order, reason_prefix=reason_prefix
                )
            except GatewayError as e:
                log.warning("%s: gateway error for %s: %s",
                            label, order.order_id, e)
                summary.errors += 1
                summary.kept += 1
                continue
            except (OrderNotFound, InvalidTransition) as e:
                # moved on underneath us (webhook, admin); nothing to do
                log.info("%s: skipped %s: %s", label, order.order_id, e)
                summary.kept += 1
                continue
            except Exception:
                log.exception("%s: unexpected error for %s",
                              label, order.order_id)
                summary.errors += 1
                summary.kept += 1
                continue

            if res.outcome in (FULFILLED, PAID_NO_STOCK):
                summary.fulfilled += 1
            elif res.outcome == DELETED:
                summary.deleted += 1
            else:
                summary.kept += 1
        return summary

    async def sweep(self, limit: int = config.SWEEP_BATCH_SIZE
                    ) -> SweepSummary:
        async with timeit("sweep.main"):
            orders = await self.ledger.list_pending(limit)
            if not orders:
                log.debug("sweep: no pending orders")
                return SweepSummary()
            log.info("sweep: checking %d pending orders", len(orders))
            summary = await self._run_batch(orders, self.delay, "sweep")
        log.info("sweep done: %s", summary.as_dict())
        return summary

    async def sweep_stale(
        self, max_age_hours: float = config.STALE_ORDER_HOURS,
        limit: int = config.STALE_BATCH_SIZE,
    ) -> SweepSummary:
        async with timeit("sweep.stale"):
            orders = await self.ledger.list_stale(max_age_hours, limit)
            if not orders:
                return SweepSummary()
            log.info("stale sweep: %d orders older than %sh",
                     len(orders), max_age_hours)
            summary = await self._run_batch(
                orders, self.stale_delay, "stale sweep",
                reason_prefix=f"Kedaluwarsa ({max_age_hours:g} jam). ",
            )
        log.info("stale sweep done: %s", summary.as_dict())
        return summary


async def run_periodic(fn: Callable[[], Awaitable[object]],
                       interval: float, name: str) -> None:
    """Timer loop for a sweep. Runs until cancelled; errors never stop it."""
    log.info("%s: every %ss", name, interval)
    while True:
        await asyncio.sleep(interval)
        try:
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("%s failed", name)
