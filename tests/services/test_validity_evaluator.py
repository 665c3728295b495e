from datetime import timedelta

import pytest

from perishable.domain.errors import ProviderError
from perishable.schemas.validity import ValidityReason

from tests.factories import make_item


@pytest.mark.asyncio
async def test_expiry_boundary_one_second(engine, session_maker, eta, clock):
    """到期 == 预计送达 可送；早 1 秒不可送。"""
    estimated = clock() + timedelta(days=2)
    eta.result = estimated

    on_time = await make_item(session_maker, qty=10, expires_at=estimated)
    too_early = await make_item(session_maker, qty=10, expires_at=estimated - timedelta(seconds=1))
    later = await make_item(session_maker, qty=10, expires_at=estimated + timedelta(seconds=1))

    ok = await engine.evaluator.evaluate(on_time, 2, "01310-100")
    assert ok.deliverable is True
    assert ok.estimated_delivery == estimated
    assert ok.delivery_window == "4 hours"
    assert ok.recommendation == "Keep refrigerated after receipt"

    assert (await engine.evaluator.evaluate(later, 2, "01310-100")).deliverable is True

    bad = await engine.evaluator.evaluate(too_early, 2, "01310-100")
    assert bad.deliverable is False
    assert bad.reason is ValidityReason.VALIDITY_INSUFFICIENT
    assert bad.expires_at == too_early.expires_at


@pytest.mark.asyncio
async def test_substitutes_same_category_ordered_by_expiry_nulls_last(engine, session_maker, eta, clock):
    estimated = clock() + timedelta(days=2)
    eta.result = estimated

    target = await make_item(session_maker, qty=10, expires_at=estimated - timedelta(hours=1))
    late = await make_item(session_maker, qty=5, expires_at=estimated + timedelta(days=10))
    soon = await make_item(session_maker, qty=5, expires_at=estimated + timedelta(days=1))
    forever = await make_item(session_maker, qty=5, expires_at=None, name="Ovos em conserva")
    # 以下都不应出现：过期太早 / 其它品类 / 扣除安全库存后无货
    await make_item(session_maker, qty=5, expires_at=estimated - timedelta(minutes=1))
    await make_item(session_maker, qty=5, expires_at=estimated + timedelta(days=3), category="brown")
    await make_item(session_maker, qty=3, min_safety_stock=3, expires_at=estimated + timedelta(days=3))

    result = await engine.evaluator.evaluate(target, 1, "01310-100")

    assert result.reason is ValidityReason.VALIDITY_INSUFFICIENT
    assert [a.item_id for a in result.alternatives] == [soon.id, late.id, forever.id]


@pytest.mark.asyncio
async def test_safety_stock_shortfall_reports_next_delivery(engine, session_maker, restock, clock):
    item = await make_item(session_maker, qty=10, min_safety_stock=4, expires_at=clock() + timedelta(days=20))

    assert (await engine.evaluator.evaluate(item, 6, "01310-100")).deliverable is True

    result = await engine.evaluator.evaluate(item, 7, "01310-100")
    assert result.deliverable is False
    assert result.reason is ValidityReason.INSUFFICIENT_SAFETY_STOCK
    assert result.next_delivery_date == restock.next_date
    assert result.qty_available == 10
    assert result.qty_requested == 7


@pytest.mark.asyncio
async def test_non_perishable_item_skips_expiry_check(engine, session_maker):
    item = await make_item(session_maker, qty=5, expires_at=None)
    result = await engine.evaluator.evaluate(item, 5, "01310-100")
    assert result.deliverable is True


@pytest.mark.asyncio
async def test_eta_failure_is_reported_not_raised(engine, session_maker, eta, clock):
    item = await make_item(session_maker, qty=5, expires_at=clock() + timedelta(days=5))
    eta.result = ProviderError("eta", "timeout")

    result = await engine.evaluator.evaluate(item, 1, "01310-100")

    assert result.deliverable is False
    assert result.reason is ValidityReason.ETA_UNAVAILABLE
    assert eta.calls == ["01310-100"]
