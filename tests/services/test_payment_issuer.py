from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from perishable.domain.errors import ProviderError
from perishable.models.enums import ChargeStatus, ReservationStatus
from perishable.models.payment_charge import PaymentCharge
from perishable.services.payment_issuer import build_charge_metadata, charge_amount, new_txid

from tests.factories import get_item, make_item


def test_charge_amount_rounds_to_cents():
    assert charge_amount(Decimal("1.335"), 3, Decimal("0")) == Decimal("4.01")
    assert charge_amount(Decimal("12.50"), 2, Decimal("8.00")) == Decimal("33.00")


def test_txid_is_alphanumeric_and_prefixed():
    txid = new_txid(datetime(2025, 3, 1, 8, 30, 5, tzinfo=timezone.utc))
    assert txid.startswith("EGG20250301083005")
    assert len(txid) == len("EGG20250301083005") + 8
    assert txid.isalnum()


@pytest.mark.asyncio
async def test_metadata_describes_product_expiry_and_origin(session_maker):
    exp = datetime(2025, 2, 10, 23, 0, tzinfo=timezone.utc)
    item = await make_item(session_maker, qty=1, expires_at=exp, name="Ovos caipira", origin="Granja Sol")
    meta = build_charge_metadata(item=item, qty=12, delivery_estimate=datetime(2025, 2, 8, tzinfo=timezone.utc))
    assert meta == {
        "product": "12x Ovos caipira",
        "expiry": "10/02/2025",
        "delivery": "08/02/2025",
        "origin": "Granja Sol",
    }

    shelf = await make_item(session_maker, qty=1, expires_at=None, origin=None)
    meta = build_charge_metadata(item=shelf, qty=1, delivery_estimate=None)
    assert meta["expiry"] == "non-perishable"
    assert meta["origin"] == "-"


@pytest.mark.asyncio
async def test_issue_charge_matches_reservation_window(engine, session_maker, payment, clock):
    item = await make_item(session_maker, qty=10, unit_price=Decimal("1.50"))
    rsv = await engine.ledger.hold(item_id=item.id, qty=10, buyer_id="b1", destination="01310-100")
    clock.advance(minutes=5, seconds=30)

    charge = await engine.issuer.issue_charge(rsv, item, "b1", None)

    # 30 分钟窗口已过去 5.5 分钟：剩余向下取整
    assert payment.charges[0]["expires_in_seconds"] == 24 * 60 + 30
    assert charge.expires_at == rsv.payment_deadline
    assert charge.amount == Decimal("23.00")  # 10 × 1.50 + 8.00
    assert charge.delivery_fee == Decimal("8.00")
    assert charge.status == ChargeStatus.PENDING.value

    async with session_maker() as s:
        row = await s.get(PaymentCharge, charge.id)
        assert row.reservation_id == rsv.id
        assert row.qr_payload.startswith("00020126PIX")


@pytest.mark.asyncio
async def test_provider_failure_keeps_hold(engine, session_maker, payment):
    item = await make_item(session_maker, qty=5)
    rsv = await engine.ledger.hold(item_id=item.id, qty=2, buyer_id="b1", destination="01310-100")
    payment.fail_create = True

    with pytest.raises(ProviderError):
        await engine.issuer.issue_charge(rsv, item, "b1", None)

    assert (await engine.ledger.get_reservation(rsv.id)).status == ReservationStatus.PENDING
    assert (await get_item(session_maker, item.id)).qty_available == 3


@pytest.mark.asyncio
async def test_closed_window_is_rejected(engine, session_maker, payment, clock):
    item = await make_item(session_maker, qty=5)
    rsv = await engine.ledger.hold(item_id=item.id, qty=1, buyer_id="b1", destination="01310-100")
    clock.advance(minutes=30)

    with pytest.raises(ProviderError):
        await engine.issuer.issue_charge(rsv, item, "b1", clock() + timedelta(days=1))
    assert payment.charges == []
