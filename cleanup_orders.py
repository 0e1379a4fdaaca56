#!/usr/bin/env python3
"""Operator tool: one-shot reconciliation outside the server process.

    python cleanup_orders.py --summary
    python cleanup_orders.py --sweep --stale
    python cleanup_orders.py --check ORD-XXXX
    python cleanup_orders.py --resend ORD-XXXX
"""
import argparse
import asyncio
import json

import httpx

from tokodigital import config
from tokodigital.fulfillment import FulfillmentEngine
from tokodigital.helpers import to_iso
from tokodigital.infra.sql import open_database
from tokodigital.model.catalog import Catalog
from tokodigital.model.credentials import CredentialStore
from tokodigital.model.db import init_models
from tokodigital.model.ledger import OrderLedger
from tokodigital.notify import new_notifier
from tokodigital.payment import new_gateway
from tokodigital.sweeper import ReconciliationSweeper


def print_summary(counts, pending) -> None:
    print("==> Orders by status")
    for status in sorted(counts):
        print(f"    {status:<10} {counts[status]}")
    print(f"==> {len(pending)} pending (oldest first)")
    for o in pending:
        print(f"    {o.order_id}  buyer={o.buyer_id}  "
              f"{o.price_idr}  {to_iso(o.created_at)}")


async def run(args) -> int:
    db = open_database(args.database_url)
    http = httpx.AsyncClient(timeout=config.GATEWAY_TIMEOUT)
    rc = 0
    try:
        await init_models(db.engine)
        catalog = Catalog(db)
        ledger = OrderLedger(db, CredentialStore(db),
                             retain_failed=config.RETAIN_FAILED_ORDERS)
        notifier = new_notifier(http)
        engine = FulfillmentEngine(ledger, catalog, notifier)
        sweeper = ReconciliationSweeper(
            ledger, catalog, new_gateway(http, args.provider),
            engine, notifier,
        )

        if args.summary:
            print_summary(await ledger.status_counts(),
                          await ledger.list_pending(args.limit))

        if args.check:
            res = await sweeper.check_order_id(
                args.check, delete_unknown=not args.keep_unknown
            )
            print(json.dumps(res.as_dict(), indent=2))

        if args.sweep:
            summary = await sweeper.sweep(args.limit)
            print("==> sweep:", json.dumps(summary.as_dict()))
            rc |= 1 if summary.errors else 0

        if args.stale:
            summary = await sweeper.sweep_stale(args.max_age_hours,
                                                args.limit)
            print("==> stale sweep:", json.dumps(summary.as_dict()))
            rc |= 1 if summary.errors else 0

        if args.resend:
            ok = await engine.resend(args.resend)
            print("✅ resent" if ok else "❌ message not delivered")
            rc |= 0 if ok else 1
    finally:
        await http.aclose()
        await db.dispose()
    return rc


def main():
    ap = argparse.ArgumentParser(description="TokoDigital order cleanup")
    ap.add_argument("--database-url", default=config.DATABASE_URL,
                    help="Database URL (default: $DATABASE_URL)")
    ap.add_argument("--provider", default=None,
                    help="Payment provider (default: $PAYMENT_PROVIDER)")
    ap.add_argument("--summary", action="store_true",
                    help="Print status counts and pending orders")
    ap.add_argument("--sweep", action="store_true",
                    help="Check all pending orders against the gateway")
    ap.add_argument("--stale", action="store_true",
                    help="Check pending orders older than --max-age-hours")
    ap.add_argument("--max-age-hours", type=float,
                    default=config.STALE_ORDER_HOURS,
                    help="Age threshold for --stale")
    ap.add_argument("--limit", type=int, default=config.SWEEP_BATCH_SIZE,
                    help="Max orders per batch")
    ap.add_argument("--check", default=None, metavar="ORDER_ID",
                    help="Check a single order")
    ap.add_argument("--keep-unknown", action="store_true",
                    help="With --check, keep orders the gateway doesn't know")
    ap.add_argument("--resend", default=None, metavar="ORDER_ID",
                    help="Send the stored credential of a fulfilled order again")
    args = ap.parse_args()

    if not (args.summary or args.sweep or args.stale
            or args.check or args.resend):
        args.summary = True

    config.setup_logging()
    raise SystemExit(asyncio.run(run(args)))


if __name__ == '__main__':
    main()
