import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from perishable.domain.errors import (
    AlreadyTerminal,
    InsufficientStock,
    NotFound,
    ProviderError,
    ValidityInsufficient,
)
from perishable.models.enums import ReservationStatus
from perishable.models.payment_charge import PaymentCharge
from perishable.schemas.purchase import BuyRequest, PurchaseRejection

from tests.factories import get_item, make_item


def _req(item_id, qty=2):
    return BuyRequest(item_id=item_id, qty=qty, destination="01310-100", buyer_id="buyer-9")


@pytest.mark.asyncio
async def test_buy_returns_payment_instruction(engine, session_maker, payment, clock):
    item = await make_item(session_maker, qty=10, expires_at=clock() + timedelta(days=7), unit_price=Decimal("2.00"))

    instr = await engine.purchases.buy(_req(item.id, 3))

    assert instr.amount == Decimal("14.00")
    assert instr.payment_deadline == clock() + timedelta(minutes=30)
    assert instr.estimated_delivery == clock() + timedelta(days=2)
    assert instr.charge_id == payment.charges[0]["txid"]
    assert instr.charge_payload.startswith("00020126PIX")
    assert (await get_item(session_maker, item.id)).qty_available == 7


@pytest.mark.asyncio
async def test_buy_rejects_item_expiring_before_delivery(engine, session_maker, clock):
    item = await make_item(session_maker, qty=10, expires_at=clock() + timedelta(days=1))
    alt = await make_item(session_maker, qty=10, expires_at=clock() + timedelta(days=9))

    with pytest.raises(ValidityInsufficient) as ei:
        await engine.purchases.buy(_req(item.id))

    rejection = PurchaseRejection.from_error(ei.value)
    assert rejection.reason == "validity_insufficient"
    assert [a.item_id for a in rejection.alternatives] == [alt.id]
    # 评估不通过时不留下预留
    assert (await get_item(session_maker, item.id)).qty_available == 10


@pytest.mark.asyncio
async def test_buy_rejects_safety_stock_shortfall(engine, session_maker, restock, clock):
    item = await make_item(session_maker, qty=5, min_safety_stock=4, expires_at=clock() + timedelta(days=9))

    with pytest.raises(InsufficientStock) as ei:
        await engine.purchases.buy(_req(item.id, 2))

    rejection = PurchaseRejection.from_error(ei.value)
    assert rejection.reason == "insufficient_safety_stock"
    assert rejection.next_delivery_date == restock.next_date


@pytest.mark.asyncio
async def test_buy_unknown_item(engine):
    with pytest.raises(NotFound):
        await engine.purchases.buy(_req(31337))


@pytest.mark.asyncio
async def test_eta_outage_surfaces_as_provider_error(engine, session_maker, eta, clock):
    item = await make_item(session_maker, qty=5, expires_at=clock() + timedelta(days=9))
    eta.result = ProviderError("eta", "503 from carrier")

    with pytest.raises(ProviderError) as ei:
        await engine.purchases.buy(_req(item.id))

    assert ei.value.context["reason"] == "eta_unavailable"
    assert (await get_item(session_maker, item.id)).qty_available == 5


@pytest.mark.asyncio
async def test_charge_failure_keeps_hold_and_can_retry(engine, session_maker, payment, clock):
    item = await make_item(session_maker, qty=5, expires_at=clock() + timedelta(days=9))
    payment.fail_create = True

    with pytest.raises(ProviderError) as ei:
        await engine.purchases.buy(_req(item.id, 2))

    rid = ei.value.context["reservation_id"]
    assert ei.value.context["hold_kept"] is True
    assert (await engine.ledger.get_reservation(rid)).status == ReservationStatus.PENDING
    assert (await get_item(session_maker, item.id)).qty_available == 3

    payment.fail_create = False
    clock.advance(minutes=1)
    instr = await engine.purchases.retry_charge(rid)
    assert instr.reservation_id == rid

    # 重复重试返回同一张收款单
    again = await engine.purchases.retry_charge(rid)
    assert again.charge_id == instr.charge_id
    assert len(payment.charges) == 1


@pytest.mark.asyncio
async def test_retry_charge_after_cancel_is_rejected(engine, session_maker, payment, clock):
    item = await make_item(session_maker, qty=5, expires_at=clock() + timedelta(days=9))
    payment.fail_create = True
    with pytest.raises(ProviderError) as ei:
        await engine.purchases.buy(_req(item.id, 1))
    rid = ei.value.context["reservation_id"]

    await engine.purchases.cancel(rid)

    with pytest.raises(AlreadyTerminal):
        await engine.purchases.retry_charge(rid)
    assert (await get_item(session_maker, item.id)).qty_available == 5


@pytest.mark.asyncio
async def test_concurrent_retries_share_one_charge(engine, session_maker, payment, clock):
    item = await make_item(session_maker, qty=5, expires_at=clock() + timedelta(days=9))
    payment.fail_create = True
    with pytest.raises(ProviderError) as ei:
        await engine.purchases.buy(_req(item.id, 1))
    rid = ei.value.context["reservation_id"]

    payment.fail_create = False
    payment.gate = asyncio.Event()

    async def _release_when_both_waiting():
        for _ in range(500):
            if payment.in_flight >= 2:
                break
            await asyncio.sleep(0.01)
        payment.gate.set()

    first, second, _ = await asyncio.gather(
        engine.purchases.retry_charge(rid),
        engine.purchases.retry_charge(rid),
        _release_when_both_waiting(),
    )

    assert first.charge_id == second.charge_id
    async with session_maker() as s:
        rows = (
            await s.execute(select(PaymentCharge).where(PaymentCharge.reservation_id == rid))
        ).scalars().all()
    assert [r.id for r in rows] == [first.charge_id]
