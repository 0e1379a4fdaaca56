# model/ledger.py
"""
Order ledger: persistence and the status state machine.

Every status change is a conditional UPDATE keyed on the status the caller
saw, so concurrent triggers (webhook, sweeper, buyer "check payment") never
overwrite each other. The move to FULFILLED happens in one transaction that
locks the order row, claims a credential and writes status, payload and
credential id together.
"""
from __future__ import annotations
import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvalidTransition, OrderNotFound
from ..helpers import gen_order_id, now_ts
from ..infra.sql import Database
from ..infra.timings import timeit
from .credentials import ClaimedCredential, CredentialStore
from .db import (
    Order, PENDING, PAID, FULFILLED, FAILED, CANCELED, TRANSITIONS,
)

log = logging.getLogger(__name__)

# fulfill_with_credential outcomes
CLAIMED = "CLAIMED"
ALREADY_FULFILLED = "ALREADY_FULFILLED"
NO_STOCK = "NO_STOCK"
NOT_PAID = "NOT_PAID"

_EXTRA_FIELDS = {"payment_ref", "paid_at"}


async def _get(s: AsyncSession, order_id: str) -> Optional[Order]:
    return (await s.execute(
        select(Order)
        .where(Order.order_id == order_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()


class OrderLedger:
    def __init__(self, db: Database, credentials: CredentialStore,
                 retain_failed: bool = False) -> None:
        self.db = db
        self.credentials = credentials
        self.retain_failed = retain_failed

    # ------------------------------------------------------------------
    # create / read
    # ------------------------------------------------------------------
    async def create(self, buyer_id: str, product_id: int,
                     price_idr: int) -> Order:
        last_exc: Optional[IntegrityError] = None
        for _ in range(3):
            now = now_ts()
            order = Order(
                order_id=gen_order_id(),
                buyer_id=str(buyer_id),
                product_id=product_id,
                price_idr=int(price_idr),
                status=PENDING,
                created_at=now,
                updated_at=now,
            )
            try:
                async with self.db.session() as s:
                    async with s.begin():
                        s.add(order)
            except IntegrityError as e:
                # order id collision, draw a new one
                last_exc = e
                continue
            log.info("order %s created: buyer=%s product=%s price=%s",
                     order.order_id, buyer_id, product_id, price_idr)
            return order
        raise last_exc

    async def find_by_order_id(self, order_id: str) -> Optional[Order]:
        async with self.db.session() as s:
            return await _get(s, order_id)

    async def list_pending(self, limit: int = 100) -> List[Order]:
        async with self.db.session() as s:
            rows = (await s.execute(
                select(Order)
                .where(Order.status == PENDING)
                .order_by(Order.created_at)
                .limit(max(1, limit))
            )).scalars().all()
        return list(rows)

    async def list_stale(self, max_age_hours: float,
                         limit: int = 50) -> List[Order]:
        cutoff = now_ts() - max_age_hours * 3600
        async with self.db.session() as s:
            rows = (await s.execute(
                select(Order)
                .where(Order.status == PENDING, Order.created_at < cutoff)
                .order_by(Order.created_at)
                .limit(max(1, limit))
            )).scalars().all()
        return list(rows)

    async def find_recent_pending(self, buyer_id: str, product_id: int,
                                  within_seconds: float) -> Optional[Order]:
        cutoff = now_ts() - within_seconds
        async with self.db.session() as s:
            return (await s.execute(
                select(Order)
                .where(
                    Order.buyer_id == str(buyer_id),
                    Order.product_id == product_id,
                    Order.status == PENDING,
                    Order.created_at >= cutoff,
                )
                .order_by(Order.created_at.desc())
                .limit(1)
            )).scalar_one_or_none()

    async def list_recent(self, limit: int = 200,
                          status: Optional[str] = None) -> List[Order]:
        stmt = select(Order).order_by(Order.created_at.desc())
        if status:
            stmt = stmt.where(Order.status == status)
        async with self.db.session() as s:
            rows = (await s.execute(
                stmt.limit(max(1, min(limit, 500)))
            )).scalars().all()
        return list(rows)

    async def status_counts(self) -> Dict[str, int]:
        async with self.db.session() as s:
            rows = (await s.execute(
                select(Order.status, func.count(Order.id))
                .group_by(Order.status)
            )).all()
        return {status: int(n) for status, n in rows}

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    async def transition(self, order_id: str, new_status: str, *,
                         expected: Optional[str] = None, **extra) -> Order:
        unknown = set(extra) - _EXTRA_FIELDS
        if unknown:
            raise TypeError(f"unexpected fields: {sorted(unknown)}")
        if new_status == FULFILLED:
            # only fulfill_with_credential binds a credential
            raise InvalidTransition(order_id, expected or "?", FULFILLED)

        async with self.db.session() as s:
            async with s.begin():
                order = await _get(s, order_id)
                if order is None:
                    raise OrderNotFound(order_id)
                current = order.status
                if expected is not None and current != expected:
                    raise InvalidTransition(order_id, current, new_status)
                if new_status not in TRANSITIONS.get(current, set()):
                    raise InvalidTransition(order_id, current, new_status)

                values = dict(extra)
                values["status"] = new_status
                values["updated_at"] = now_ts()
                if new_status == PAID and "paid_at" not in values:
                    values["paid_at"] = values["updated_at"]
                res = await s.execute(
                    update(Order)
                    .where(Order.order_id == order_id, Order.status == current)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    # lost to a concurrent writer between read and update
                    raise InvalidTransition(order_id, current, new_status)
                order = await _get(s, order_id)
        log.info("order %s: %s -> %s", order_id, current, new_status)
        return order

    async def mark_paid(self, order_id: str) -> bool:
        """PENDING -> PAID. False when the order was not PENDING any more."""
        now = now_ts()
        async with self.db.session() as s:
            async with s.begin():
                res = await s.execute(
                    update(Order)
                    .where(Order.order_id == order_id,
                           Order.status == PENDING)
                    .values(status=PAID, paid_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
        changed = res.rowcount == 1
        if changed:
            log.info("order %s: PENDING -> PAID", order_id)
        return changed

    async def fulfill_with_credential(
        self, order_id: str
    ) -> Tuple[str, Order, Optional[ClaimedCredential]]:
        """PAID -> FULFILLED, binding the oldest unused credential.

        Returns (outcome, order, credential); credential is only set for
        CLAIMED. Exactly one concurrent caller can observe CLAIMED for a
        given order.
        """
        async with timeit("ledger.fulfill"):
            async with self.db.session() as s:
                async with s.begin():
                    now = now_ts()
                    # write first: takes the row lock (postgres) or the
                    # database write lock (sqlite) before anything is read
                    touched = await s.execute(
                        update(Order)
                        .where(Order.order_id == order_id,
                               Order.status == PAID)
                        .values(updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    order = await _get(s, order_id)
                    if order is None:
                        raise OrderNotFound(order_id)
                    if touched.rowcount != 1:
                        if order.status == FULFILLED:
                            return ALREADY_FULFILLED, order, None
                        return NOT_PAID, order, None

                    cred = await self.credentials.claim_one(
                        order.product_id, order_id, session=s
                    )
                    if cred is None:
                        return NO_STOCK, order, None

                    await s.execute(
                        update(Order)
                        .where(Order.order_id == order_id,
                               Order.status == PAID)
                        .values(
                            status=FULFILLED,
                            delivered_payload=cred.payload,
                            credential_id=cred.id,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    order = await _get(s, order_id)
        log.info("order %s: PAID -> FULFILLED with credential %s",
                 order_id, cred.id)
        return CLAIMED, order, cred

    # ------------------------------------------------------------------
    # removal
    # ------------------------------------------------------------------
    async def delete(self, order_id: str) -> bool:
        """Hard delete. FULFILLED orders are kept forever."""
        async with self.db.session() as s:
            async with s.begin():
                res = await s.execute(
                    delete(Order)
                    .where(Order.order_id == order_id,
                           Order.status != FULFILLED)
                    .execution_options(synchronize_session=False)
                )
        deleted = res.rowcount == 1
        if deleted:
            log.info("order %s deleted", order_id)
        return deleted

    async def discard(self, order_id: str, canceled: bool = False,
                      expected: Optional[str] = None) -> bool:
        """Remove a failed/expired/unknown order from the active ledger.

        Deletes by default; with retain_failed the row stays as FAILED or
        CANCELED for audit. Only PENDING and PAID orders are affected, and
        with expected only an order still in that status.
        """
        if expected is not None and expected not in (PENDING, PAID):
            return False
        seen = (Order.status == expected if expected is not None
                else Order.status.in_((PENDING, PAID)))
        if not self.retain_failed:
            async with self.db.session() as s:
                async with s.begin():
                    res = await s.execute(
                        delete(Order)
                        .where(Order.order_id == order_id, seen)
                        .execution_options(synchronize_session=False)
                    )
            done = res.rowcount == 1
            if done:
                log.info("order %s discarded (deleted)", order_id)
            return done

        target = CANCELED if canceled else FAILED
        async with self.db.session() as s:
            async with s.begin():
                res = await s.execute(
                    update(Order)
                    .where(Order.order_id == order_id, seen)
                    .values(status=target, updated_at=now_ts())
                    .execution_options(synchronize_session=False)
                )
        done = res.rowcount == 1
        if done:
            log.info("order %s discarded (%s)", order_id, target)
        return done

    async def attach_payment(self, order_id: str, reference: Optional[str],
                             url: Optional[str],
                             qr_string: Optional[str] = None) -> None:
        async with self.db.session() as s:
            async with s.begin():
                await s.execute(
                    update(Order)
                    .where(Order.order_id == order_id)
                    .values(payment_ref=reference, payment_url=url,
                            qr_string=qr_string, updated_at=now_ts())
                    .execution_options(synchronize_session=False)
                )

    async def set_payment_ref(self, order_id: str, ref: Optional[str]) -> None:
        if not ref:
            return
        async with self.db.session() as s:
            async with s.begin():
                await s.execute(
                    update(Order)
                    .where(Order.order_id == order_id)
                    .values(payment_ref=ref, updated_at=now_ts())
                    .execution_options(synchronize_session=False)
                )
