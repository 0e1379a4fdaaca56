#!/usr/bin/env python3
"""Create the schema and optionally seed a product with stock.

    python init_db.py
    python init_db.py --sample
    python init_db.py --product netflix-1m --name "Netflix 1 Bulan" \
        --price 65000 --stock-file creds.txt
"""
import argparse
import asyncio
import os

from tokodigital import config
from tokodigital.infra.sql import open_database
from tokodigital.model.catalog import Catalog
from tokodigital.model.credentials import CredentialStore
from tokodigital.model.db import init_models

SAMPLE_PRODUCTS = [
    ("netflix-1m", "Netflix Premium 1 Bulan", 65_000, [
        "email: sample-a@example.com | password: demo-a",
        "email: sample-b@example.com | password: demo-b",
    ]),
    ("spotify-1m", "Spotify Premium 1 Bulan", 25_000, [
        "email: sample-c@example.com | password: demo-c",
    ]),
]


async def seed_product(catalog: Catalog, credentials: CredentialStore,
                       slug: str, name: str, price_idr: int,
                       payloads) -> None:
    product = await catalog.get_by_slug(slug)
    if product is None:
        product = await catalog.add(slug, name, price_idr)
        print(f'✅ product {slug} created (id={product.id})')
    else:
        print(f'product {slug} exists (id={product.id})')
    added = await credentials.add_bulk(product.id, payloads)
    left = await credentials.count_unused(product.id)
    print(f'✅ {added} credentials added to {slug}, {left} unused')


async def run(args) -> None:
    db = open_database(args.database_url)
    try:
        await init_models(db.engine)
        print('✅ schema ready')
        catalog = Catalog(db)
        credentials = CredentialStore(db)

        if args.sample:
            for slug, name, price, payloads in SAMPLE_PRODUCTS:
                await seed_product(catalog, credentials,
                                   slug, name, price, payloads)

        if args.product:
            payloads = []
            if args.stock_file:
                with open(args.stock_file, "r") as f:
                    payloads = f.read().splitlines()
            await seed_product(catalog, credentials, args.product,
                               args.name or args.product, args.price,
                               payloads)
    finally:
        await db.dispose()


def main():
    ap = argparse.ArgumentParser(description="TokoDigital database setup")
    ap.add_argument("--database-url", default=config.DATABASE_URL,
                    help="Database URL (default: $DATABASE_URL)")
    ap.add_argument("--sample", action="store_true",
                    help="Seed sample products and credentials")
    ap.add_argument("--product", default=None,
                    help="Slug of a product to create or restock")
    ap.add_argument("--name", default=None,
                    help="Display name for --product")
    ap.add_argument("--price", type=int, default=0,
                    help="Price in rupiah for a new --product")
    ap.add_argument("--stock-file", default=None,
                    help="File with one credential per line")
    args = ap.parse_args()

    if args.product and args.price <= 0 and not args.stock_file:
        ap.error("--product needs --price or --stock-file")
    if args.stock_file and not os.path.exists(args.stock_file):
        ap.error(f"no such file: {args.stock_file}")

    asyncio.run(run(args))


if __name__ == '__main__':
    main()
