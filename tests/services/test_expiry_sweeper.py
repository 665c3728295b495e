import pytest

from perishable.models.enums import ChargeStatus, ReservationStatus
from perishable.models.payment_charge import PaymentCharge
from perishable.services.expiry_sweeper import sweep_expired_reservations

from tests.factories import get_item, make_item


async def _hold(ledger, item_id, qty):
    return await ledger.hold(item_id=item_id, qty=qty, buyer_id="buyer-1", destination="01310-100")


@pytest.mark.asyncio
async def test_sweep_only_touches_due_reservations(ledger, session_maker, clock):
    item = await make_item(session_maker, qty=10)
    early = await _hold(ledger, item.id, 2)
    clock.advance(minutes=20)
    late = await _hold(ledger, item.id, 3)

    # early 截止 = T0+30m；late 截止 = T0+50m
    clock.advance(minutes=10)
    report = await sweep_expired_reservations(session_maker, ledger, now=clock())

    assert report.scanned == 1
    assert report.expired == 1
    assert (await ledger.get_reservation(early.id)).status == ReservationStatus.EXPIRED
    assert (await ledger.get_reservation(late.id)).status == ReservationStatus.PENDING
    assert (await get_item(session_maker, item.id)).qty_available == 7


@pytest.mark.asyncio
async def test_sweep_is_idempotent(ledger, session_maker, clock):
    item = await make_item(session_maker, qty=4)
    await _hold(ledger, item.id, 4)
    clock.advance(hours=1)

    first = await sweep_expired_reservations(session_maker, ledger, now=clock())
    second = await sweep_expired_reservations(session_maker, ledger, now=clock())

    assert first.expired == 1
    assert second.scanned == 0
    assert (await get_item(session_maker, item.id)).qty_available == 4


@pytest.mark.asyncio
async def test_sweep_skips_committed_and_cancelled(ledger, session_maker, clock):
    item = await make_item(session_maker, qty=10)
    paid = await _hold(ledger, item.id, 2)
    gone = await _hold(ledger, item.id, 3)
    await ledger.commit(paid.id)
    await ledger.cancel(gone.id)
    clock.advance(hours=2)

    report = await sweep_expired_reservations(session_maker, ledger, now=clock())

    assert report.scanned == 0
    assert (await ledger.get_reservation(paid.id)).status == ReservationStatus.COMMITTED
    assert (await ledger.get_reservation(gone.id)).status == ReservationStatus.CANCELLED
    assert (await get_item(session_maker, item.id)).qty_available == 8


@pytest.mark.asyncio
async def test_sweep_walks_multiple_batches(ledger, session_maker, clock):
    item = await make_item(session_maker, qty=20)
    for _ in range(5):
        await _hold(ledger, item.id, 1)
    clock.advance(minutes=30)

    report = await sweep_expired_reservations(session_maker, ledger, now=clock(), batch_size=2)

    assert report.expired == 5
    assert (await get_item(session_maker, item.id)).qty_available == 20


@pytest.mark.asyncio
async def test_sweep_expires_pending_charge(engine, session_maker, clock):
    item = await make_item(session_maker, qty=5)
    rsv = await _hold(engine.ledger, item.id, 2)
    charge = await engine.issuer.issue_charge(rsv, item, "buyer-1", None)
    clock.advance(minutes=31)

    report = await engine.sweep()

    assert report.expired == 1
    assert report.charges_expired == 1
    async with session_maker() as s:
        row = await s.get(PaymentCharge, charge.id)
        assert row.status == ChargeStatus.EXPIRED.value
