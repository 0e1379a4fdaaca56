# model/credentials.py
"""
Credential pool per product.

A credential is the digital good itself (an account login, a license key).
Claiming is "oldest unused first" and atomic: the candidate row is picked
with FOR UPDATE SKIP LOCKED where the database supports it and then taken
with a conditional UPDATE (used = false). A claim that loses the race simply
moves on to the next candidate, so two orders never share a credential.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import select, update, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from ..infra.sql import Database
from ..infra.timings import timeit
from .db import Credential, Product

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimedCredential:
    id: int
    product_id: int
    payload: str


class CredentialStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def claim_one(
        self, product_id: int, order_id: str,
        session: Optional[AsyncSession] = None,
    ) -> Optional[ClaimedCredential]:
        """Mark the oldest unused credential of `product_id` as used by
        `order_id`. With `session` the claim joins the caller's
        transaction; otherwise it commits on its own."""
        if session is not None:
            return await self._claim(session, product_id, order_id)
        async with self.db.session() as s:
            async with s.begin():
                return await self._claim(s, product_id, order_id)

    async def _claim(
        self, s: AsyncSession, product_id: int, order_id: str
    ) -> Optional[ClaimedCredential]:
        async with timeit("credentials.claim"):
            while True:
                row = (await s.execute(
                    select(Credential.id, Credential.payload)
                    .where(
                        Credential.product_id == product_id,
                        Credential.used.is_(False),
                    )
                    .order_by(Credential.created_at, Credential.id)
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )).first()
                if row is None:
                    return None

                res = await s.execute(
                    update(Credential)
                    .where(Credential.id == row.id, Credential.used.is_(False))
                    .values(used=True, used_at=now_ts(), order_id=order_id)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 1:
                    return ClaimedCredential(
                        id=row.id, product_id=product_id, payload=row.payload
                    )
                # somebody else took it between select and update
                log.debug("credential %s lost to a concurrent claim", row.id)

    async def count_unused(self, product_id: int) -> int:
        async with self.db.session() as s:
            n = (await s.execute(
                select(func.count(Credential.id)).where(
                    Credential.product_id == product_id,
                    Credential.used.is_(False),
                )
            )).scalar_one()
        return int(n)

    async def add_bulk(self, product_id: int, payloads: Iterable[str]) -> int:
        """Admin stock entry. Blank entries are skipped; insertion order is
        the claim order."""
        items = [p.strip() for p in payloads if p and p.strip()]
        if not items:
            return 0
        base = now_ts()
        async with self.db.session() as s:
            async with s.begin():
                product = await s.get(Product, product_id)
                if product is None:
                    raise LookupError(f"product {product_id} not found")
                s.add_all([
                    Credential(
                        product_id=product_id,
                        payload=payload,
                        used=False,
                        # strictly increasing so FIFO survives equal clocks
                        created_at=base + i * 1e-6,
                    )
                    for i, payload in enumerate(items)
                ])
        log.info("added %d credentials to product %s", len(items), product_id)
        return len(items)

    async def stock_summary(self) -> List[dict]:
        unused = func.sum(case((Credential.used.is_(False), 1), else_=0))
        used = func.sum(case((Credential.used.is_(True), 1), else_=0))
        async with self.db.session() as s:
            rows = (await s.execute(
                select(
                    Product.id, Product.slug, Product.name, Product.is_active,
                    func.coalesce(unused, 0), func.coalesce(used, 0),
                )
                .select_from(Product)
                .outerjoin(Credential, Credential.product_id == Product.id)
                .group_by(
                    Product.id, Product.slug, Product.name, Product.is_active
                )
                .order_by(Product.id)
            )).all()
        return [
            {
                "product_id": r[0],
                "slug": r[1],
                "name": r[2],
                "is_active": bool(r[3]),
                "unused": int(r[4]),
                "used": int(r[5]),
            }
            for r in rows
        ]
