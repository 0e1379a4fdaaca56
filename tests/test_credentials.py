import asyncio

import pytest
from sqlalchemy import select

from tokodigital.model.db import Credential


async def test_claim_is_oldest_first(credentials, product):
    await credentials.add_bulk(product.id, ["cred-A", "cred-B", "cred-C"])

    first = await credentials.claim_one(product.id, "ORD-1")
    second = await credentials.claim_one(product.id, "ORD-2")

    assert first.payload == "cred-A"
    assert second.payload == "cred-B"
    assert await credentials.count_unused(product.id) == 1


async def test_claim_binds_order(db, credentials, product):
    await credentials.add_bulk(product.id, ["cred-A"])
    cred = await credentials.claim_one(product.id, "ORD-1")

    async with db.session() as s:
        row = await s.get(Credential, cred.id)
    assert row.used is True
    assert row.order_id == "ORD-1"
    assert row.used_at is not None


async def test_claim_empty_pool(credentials, product):
    assert await credentials.claim_one(product.id, "ORD-1") is None


async def test_add_bulk_skips_blank_lines(credentials, product):
    added = await credentials.add_bulk(
        product.id, ["cred-A", "", "   ", "cred-B\n"]
    )
    assert added == 2
    assert await credentials.count_unused(product.id) == 2


async def test_add_bulk_unknown_product(credentials):
    with pytest.raises(LookupError):
        await credentials.add_bulk(999, ["cred-A"])


async def test_concurrent_claims_never_share(db, credentials, product):
    await credentials.add_bulk(product.id, [f"cred-{i}" for i in range(3)])

    results = await asyncio.gather(*[
        credentials.claim_one(product.id, f"ORD-{i}") for i in range(6)
    ])

    claimed = [r for r in results if r is not None]
    assert len(claimed) == 3
    assert len({c.id for c in claimed}) == 3
    async with db.session() as s:
        rows = (await s.execute(select(Credential))).scalars().all()
    assert all(r.used and r.order_id for r in rows)


async def test_stock_summary(catalog, credentials, product):
    other = await catalog.add("spotify-1m", "Spotify", 25_000)
    await credentials.add_bulk(product.id, ["a", "b"])
    await credentials.claim_one(product.id, "ORD-1")

    summary = {row["slug"]: row for row in await credentials.stock_summary()}
    assert summary["netflix-1m"]["unused"] == 1
    assert summary["netflix-1m"]["used"] == 1
    assert summary["spotify-1m"]["unused"] == 0
    assert summary["spotify-1m"]["product_id"] == other.id
