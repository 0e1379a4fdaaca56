# model/catalog.py
from __future__ import annotations
from typing import Optional

from sqlalchemy import select

from ..helpers import now_ts
from ..infra.sql import Database
from .db import Product


class Catalog:
    """Read side of the product table plus minimal registration.

    Product editing lives in the admin dashboard; the order core only needs
    id, price and the active flag.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    async def get(self, product_id: int) -> Optional[Product]:
        async with self.db.session() as s:
            return await s.get(Product, product_id)

    async def get_by_slug(self, slug: str) -> Optional[Product]:
        async with self.db.session() as s:
            return (await s.execute(
                select(Product).where(Product.slug == slug)
            )).scalar_one_or_none()

    async def add(self, slug: str, name: str, price_idr: int,
                  is_active: bool = True) -> Product:
        if int(price_idr) <= 0:
            raise ValueError("price must be a positive rupiah amount")
        product = Product(
            slug=slug, name=name, price_idr=int(price_idr),
            is_active=is_active, created_at=now_ts(),
        )
        async with self.db.session() as s:
            async with s.begin():
                s.add(product)
        return product
