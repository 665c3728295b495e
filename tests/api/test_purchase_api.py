from datetime import timedelta

import pytest

from tests.factories import get_item, make_item


def _body(item_id, qty=2):
    return {"item_id": item_id, "qty": qty, "destination": "01310-100", "buyer_id": "buyer-1"}


@pytest.mark.asyncio
async def test_purchase_created(client, session_maker, clock):
    item = await make_item(session_maker, qty=10, expires_at=clock() + timedelta(days=7))

    r = await client.post("/purchases", json=_body(item.id))

    assert r.status_code == 201, r.text
    data = r.json()
    assert data["reservation_id"].startswith("res_")
    assert data["charge_id"].startswith("EGG")
    assert data["charge_payload"].startswith("00020126PIX")
    assert (await get_item(session_maker, item.id)).qty_available == 8


@pytest.mark.asyncio
async def test_purchase_rejected_with_alternatives(client, session_maker, clock):
    item = await make_item(session_maker, qty=10, expires_at=clock() + timedelta(hours=6))
    alt = await make_item(session_maker, qty=3, expires_at=clock() + timedelta(days=8))

    r = await client.post("/purchases", json=_body(item.id))

    assert r.status_code == 409, r.text
    data = r.json()
    assert data["reason"] == "validity_insufficient"
    assert [a["item_id"] for a in data["alternatives"]] == [alt.id]


@pytest.mark.asyncio
async def test_purchase_payment_outage_is_502(client, session_maker, payment, clock):
    item = await make_item(session_maker, qty=10, expires_at=clock() + timedelta(days=7))
    payment.fail_create = True

    r = await client.post("/purchases", json=_body(item.id))

    assert r.status_code == 502
    problem = r.json()
    assert problem["error_code"] == "provider_error"
    assert problem["context"]["hold_kept"] is True
    rid = problem["context"]["reservation_id"]

    # 重新开单
    payment.fail_create = False
    r = await client.post(f"/reservations/{rid}/charge")
    assert r.status_code == 200, r.text
    assert r.json()["reservation_id"] == rid


@pytest.mark.asyncio
async def test_purchase_validation_error(client):
    r = await client.post("/purchases", json={"item_id": 1, "qty": 0, "destination": "x", "buyer_id": "b"})
    assert r.status_code == 422
    assert r.json()["error_code"] == "request_validation_error"


@pytest.mark.asyncio
async def test_unknown_item_is_404(client):
    r = await client.post("/purchases", json=_body(424242))
    assert r.status_code == 404
    assert r.json()["error_code"] == "not_found"


@pytest.mark.asyncio
async def test_cancel_then_cancel_again(client, session_maker, clock):
    item = await make_item(session_maker, qty=5, expires_at=clock() + timedelta(days=7))
    rid = (await client.post("/purchases", json=_body(item.id, 5))).json()["reservation_id"]

    r = await client.post(f"/reservations/{rid}/cancel")
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    assert (await get_item(session_maker, item.id)).qty_available == 5

    r = await client.post(f"/reservations/{rid}/cancel")
    assert r.status_code == 409

    r = await client.get(f"/reservations/{rid}")
    assert r.status_code == 200
    assert r.json()["released_at"] is not None


@pytest.mark.asyncio
async def test_unknown_reservation_is_404(client):
    r = await client.post("/reservations/res_missing/cancel")
    assert r.status_code == 404
