from sqlalchemy import update

from tokodigital.fulfillment import (
    FULFILLED, PAID_NO_STOCK, FulfillmentEngine,
)
from tokodigital.model.db import CANCELED, FAILED, Order, PAID
from tokodigital.model.ledger import OrderLedger
from tokodigital.sweeper import (
    DELETED, NOT_FOUND, PENDING, ReconciliationSweeper,
)


async def _age(db, order_id, hours):
    async with db.session() as s:
        async with s.begin():
            await s.execute(
                update(Order)
                .where(Order.order_id == order_id)
                .values(created_at=Order.created_at - hours * 3600)
            )


async def test_unknown_to_gateway_is_deleted(ledger, sweeper, notifier,
                                             product):
    order = await ledger.create("1001", product.id, 65_000)

    res = await sweeper.check_order(order)

    assert res.outcome == DELETED
    assert await ledger.find_by_order_id(order.order_id) is None
    [msg] = notifier.to("1001")
    assert "Pesanan Dihapus" in msg


async def test_manual_check_keeps_unknown_order(ledger, sweeper, notifier,
                                                product):
    order = await ledger.create("1001", product.id, 65_000)

    res = await sweeper.check_order(order, delete_unknown=False)

    assert res.outcome == NOT_FOUND
    assert await ledger.find_by_order_id(order.order_id) is not None
    assert notifier.sent == []


async def test_paid_at_gateway_is_fulfilled(ledger, credentials, sweeper,
                                            gateway, notifier, product):
    await credentials.add_bulk(product.id, ["cred-A"])
    order = await ledger.create("1001", product.id, 65_000)
    gateway.set_status(order.order_id, "PAID", 65_000)

    res = await sweeper.check_order(order)

    assert res.outcome == FULFILLED
    assert res.fulfillment.credential == "cred-A"
    stored = await ledger.find_by_order_id(order.order_id)
    assert stored.status == "FULFILLED"
    assert stored.payment_ref == f"REF-{order.order_id}"


async def test_paid_without_stock(ledger, sweeper, gateway, product):
    order = await ledger.create("1001", product.id, 65_000)
    gateway.set_status(order.order_id, "PAID")

    res = await sweeper.check_order(order)

    assert res.outcome == PAID_NO_STOCK
    assert (await ledger.find_by_order_id(order.order_id)).status == PAID


async def test_failed_payment_is_discarded(ledger, sweeper, gateway,
                                           notifier, product):
    order = await ledger.create("1001", product.id, 65_000)
    gateway.set_status(order.order_id, "EXPIRED")

    res = await sweeper.check_order(order)

    assert res.outcome == DELETED
    assert await ledger.find_by_order_id(order.order_id) is None
    assert "EXPIRED" in notifier.to("1001")[0]


async def test_order_paid_during_check_is_not_discarded(ledger, sweeper,
                                                        gateway, notifier,
                                                        product):
    order = await ledger.create("1001", product.id, 65_000)
    snapshot = await ledger.find_by_order_id(order.order_id)
    # a webhook lands between the read and the gateway answer
    await ledger.mark_paid(order.order_id)

    # unknown to the gateway, then expired
    assert (await sweeper.check_order(snapshot)).outcome == PENDING
    gateway.set_status(order.order_id, "EXPIRED")
    assert (await sweeper.check_order(snapshot)).outcome == PENDING

    assert (await ledger.find_by_order_id(order.order_id)).status == PAID
    assert notifier.sent == []


async def test_pending_payment_is_kept(ledger, sweeper, gateway, notifier,
                                       product):
    order = await ledger.create("1001", product.id, 65_000)
    gateway.set_status(order.order_id, "UNPAID")

    res = await sweeper.check_order(order)

    assert res.outcome == PENDING
    assert await ledger.find_by_order_id(order.order_id) is not None
    assert notifier.sent == []


async def test_fulfilled_orders_skip_the_gateway(ledger, credentials,
                                                 sweeper, gateway, product):
    await credentials.add_bulk(product.id, ["cred-A"])
    order = await ledger.create("1001", product.id, 65_000)
    gateway.set_status(order.order_id, "PAID")
    await sweeper.check_order(order)
    gateway.status_calls.clear()

    stored = await ledger.find_by_order_id(order.order_id)
    res = await sweeper.check_order(stored)

    assert res.outcome == FULFILLED
    assert gateway.status_calls == []


async def test_sweep_batch(ledger, credentials, sweeper, gateway, product):
    await credentials.add_bulk(product.id, ["cred-A"])
    paid = await ledger.create("1001", product.id, 65_000)
    unknown = await ledger.create("1002", product.id, 65_000)
    waiting = await ledger.create("1003", product.id, 65_000)
    broken = await ledger.create("1004", product.id, 65_000)
    gateway.set_status(paid.order_id, "PAID")
    gateway.set_status(waiting.order_id, "UNPAID")
    gateway.set_error(broken.order_id)

    summary = await sweeper.sweep()

    assert summary.processed == 4
    assert summary.fulfilled == 1
    assert summary.deleted == 1
    assert summary.kept == 2
    assert summary.errors == 1
    assert await ledger.find_by_order_id(unknown.order_id) is None
    # transport failure leaves the order for the next sweep
    assert (await ledger.find_by_order_id(broken.order_id)).status == \
        "PENDING"


async def test_sweep_empty(sweeper, gateway):
    summary = await sweeper.sweep()
    assert summary.processed == 0
    assert gateway.status_calls == []


async def test_stale_sweep_only_checks_old_orders(db, ledger, sweeper,
                                                  gateway, notifier,
                                                  product):
    old = await ledger.create("1001", product.id, 65_000)
    fresh = await ledger.create("1002", product.id, 65_000)
    await _age(db, old.order_id, 3)

    summary = await sweeper.sweep_stale(max_age_hours=2)

    assert summary.processed == 1
    assert gateway.status_calls == [old.order_id]
    assert await ledger.find_by_order_id(old.order_id) is None
    assert await ledger.find_by_order_id(fresh.order_id) is not None
    assert "Kedaluwarsa" in notifier.to("1001")[0]


async def test_retention_keeps_failed_rows(db, catalog, credentials,
                                           gateway, notifier, product):
    ledger = OrderLedger(db, credentials, retain_failed=True)
    engine = FulfillmentEngine(ledger, catalog, notifier)
    sweeper = ReconciliationSweeper(ledger, catalog, gateway, engine,
                                    notifier, delay=0, stale_delay=0)
    expired = await ledger.create("1001", product.id, 65_000)
    canceled = await ledger.create("1002", product.id, 65_000)
    gateway.set_status(expired.order_id, "EXPIRED")
    gateway.set_status(canceled.order_id, "CANCEL")

    await sweeper.sweep()

    assert (await ledger.find_by_order_id(expired.order_id)).status == FAILED
    assert (await ledger.find_by_order_id(canceled.order_id)).status == \
        CANCELED
    assert await ledger.list_pending() == []
