import pytest
from sqlalchemy import update

from tokodigital.errors import InvalidTransition, OrderNotFound
from tokodigital.model.db import (
    Order, PENDING, PAID, FULFILLED, FAILED, CANCELED,
)
from tokodigital.model.ledger import (
    ALREADY_FULFILLED, CLAIMED, NO_STOCK, NOT_PAID, OrderLedger,
)


async def _age(db, order_id, seconds):
    async with db.session() as s:
        async with s.begin():
            await s.execute(
                update(Order)
                .where(Order.order_id == order_id)
                .values(created_at=Order.created_at - seconds)
            )


async def test_create_and_find(ledger, product):
    order = await ledger.create("1001", product.id, product.price_idr)
    assert order.status == PENDING
    assert order.order_id.startswith("ORD-")

    found = await ledger.find_by_order_id(order.order_id)
    assert found.buyer_id == "1001"
    assert found.price_idr == 65_000
    assert await ledger.find_by_order_id("ORD-NOPE") is None


async def test_state_machine(ledger, credentials, product):
    await credentials.add_bulk(product.id, ["cred-A"])
    order = await ledger.create("1001", product.id, 65_000)

    paid = await ledger.transition(order.order_id, PAID, expected=PENDING)
    assert paid.status == PAID and paid.paid_at is not None

    with pytest.raises(InvalidTransition):
        # stale expectation
        await ledger.transition(order.order_id, FAILED, expected=PENDING)
    outcome, done, _ = await ledger.fulfill_with_credential(order.order_id)
    assert outcome == CLAIMED and done.status == FULFILLED

    for target in (PENDING, PAID, FAILED, CANCELED):
        with pytest.raises(InvalidTransition):
            await ledger.transition(order.order_id, target)

    with pytest.raises(OrderNotFound):
        await ledger.transition("ORD-NOPE", PAID)


async def test_transition_rejects_unknown_fields(ledger, product):
    order = await ledger.create("1001", product.id, 65_000)
    with pytest.raises(TypeError):
        await ledger.transition(order.order_id, PAID, price_idr=1)


async def test_mark_paid_is_conditional(ledger, product):
    order = await ledger.create("1001", product.id, 65_000)
    assert await ledger.mark_paid(order.order_id) is True
    assert await ledger.mark_paid(order.order_id) is False


async def test_fulfill_with_credential(ledger, credentials, product):
    await credentials.add_bulk(product.id, ["cred-A"])
    order = await ledger.create("1001", product.id, 65_000)

    outcome, _, _ = await ledger.fulfill_with_credential(order.order_id)
    assert outcome == NOT_PAID

    await ledger.mark_paid(order.order_id)
    outcome, got, cred = await ledger.fulfill_with_credential(order.order_id)
    assert outcome == CLAIMED
    assert got.status == FULFILLED
    assert got.delivered_payload == "cred-A"
    assert got.credential_id == cred.id

    outcome, got, cred = await ledger.fulfill_with_credential(order.order_id)
    assert outcome == ALREADY_FULFILLED
    assert cred is None
    assert got.delivered_payload == "cred-A"


async def test_fulfill_without_stock_stays_paid(ledger, product):
    order = await ledger.create("1001", product.id, 65_000)
    await ledger.mark_paid(order.order_id)

    outcome, got, cred = await ledger.fulfill_with_credential(order.order_id)
    assert outcome == NO_STOCK
    assert cred is None
    assert got.status == PAID
    assert got.delivered_payload is None


async def test_pending_listings(db, ledger, product):
    old = await ledger.create("1001", product.id, 65_000)
    new = await ledger.create("1002", product.id, 65_000)
    paid = await ledger.create("1003", product.id, 65_000)
    await ledger.mark_paid(paid.order_id)
    await _age(db, old.order_id, 3 * 3600)

    pending = [o.order_id for o in await ledger.list_pending()]
    assert pending == [old.order_id, new.order_id]

    stale = [o.order_id for o in await ledger.list_stale(2)]
    assert stale == [old.order_id]


async def test_find_recent_pending(db, ledger, product):
    order = await ledger.create("1001", product.id, 65_000)
    got = await ledger.find_recent_pending("1001", product.id, 30)
    assert got.order_id == order.order_id
    assert await ledger.find_recent_pending("1002", product.id, 30) is None

    await _age(db, order.order_id, 120)
    assert await ledger.find_recent_pending("1001", product.id, 30) is None


async def test_delete_never_touches_fulfilled(ledger, credentials, product):
    await credentials.add_bulk(product.id, ["cred-A"])
    order = await ledger.create("1001", product.id, 65_000)
    await ledger.mark_paid(order.order_id)
    await ledger.fulfill_with_credential(order.order_id)

    assert await ledger.delete(order.order_id) is False
    assert await ledger.discard(order.order_id) is False
    assert (await ledger.find_by_order_id(order.order_id)).status == FULFILLED


async def test_discard_deletes_by_default(ledger, product):
    order = await ledger.create("1001", product.id, 65_000)
    assert await ledger.discard(order.order_id) is True
    assert await ledger.find_by_order_id(order.order_id) is None
    assert await ledger.discard(order.order_id) is False


async def test_discard_with_retention(db, credentials, product):
    ledger = OrderLedger(db, credentials, retain_failed=True)
    failed = await ledger.create("1001", product.id, 65_000)
    canceled = await ledger.create("1002", product.id, 65_000)

    assert await ledger.discard(failed.order_id)
    assert await ledger.discard(canceled.order_id, canceled=True)

    assert (await ledger.find_by_order_id(failed.order_id)).status == FAILED
    assert (await ledger.find_by_order_id(canceled.order_id)).status == \
        CANCELED
    assert await ledger.list_pending() == []
    counts = await ledger.status_counts()
    assert counts == {FAILED: 1, CANCELED: 1}


async def test_attach_payment(ledger, product):
    order = await ledger.create("1001", product.id, 65_000)
    await ledger.attach_payment(order.order_id, "T1", None, "000201QR")
    got = await ledger.find_by_order_id(order.order_id)
    assert got.payment_ref == "T1"
    assert got.qr_string == "000201QR"

    await ledger.set_payment_ref(order.order_id, None)
    assert (await ledger.find_by_order_id(order.order_id)).payment_ref == "T1"


async def test_transition_never_fulfills(ledger, credentials, product):
    await credentials.add_bulk(product.id, ["cred-A"])
    order = await ledger.create("1001", product.id, 65_000)
    await ledger.mark_paid(order.order_id)

    with pytest.raises(InvalidTransition):
        await ledger.transition(order.order_id, FULFILLED, expected=PAID)
    with pytest.raises(TypeError):
        await ledger.transition(order.order_id, FULFILLED,
                                delivered_payload="forged", credential_id=1)

    stored = await ledger.find_by_order_id(order.order_id)
    assert stored.status == PAID and stored.delivered_payload is None
    assert await credentials.count_unused(product.id) == 1


async def test_discard_keyed_on_seen_status(ledger, product):
    order = await ledger.create("1001", product.id, 65_000)
    await ledger.mark_paid(order.order_id)

    assert await ledger.discard(order.order_id, expected=PENDING) is False
    assert (await ledger.find_by_order_id(order.order_id)).status == PAID
    assert await ledger.discard(order.order_id, expected=FULFILLED) is False
    assert await ledger.discard(order.order_id, expected=PAID) is True
