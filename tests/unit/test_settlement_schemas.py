import pytest

from perishable.schemas.settlement import (
    ExpiredConfirmation,
    FailedConfirmation,
    PaidConfirmation,
    UnknownConfirmation,
    build_confirmation,
    normalize_status,
    parse_confirmations,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("CONCLUIDA", "paid"),
        ("paid", "paid"),
        (" Expirada ", "expired"),
        ("REMOVIDA_PELO_USUARIO_RECEBEDOR", "failed"),
        ("ATIVA", "unknown"),
        (None, "unknown"),
    ],
)
def test_normalize_status(raw, expected):
    assert normalize_status(raw) == expected


def test_build_confirmation_picks_variant_and_keeps_raw():
    body = {"charge_id": "EGG1", "status": "CONCLUIDA", "extra": {"k": 1}}
    ev = build_confirmation("EGG1", "CONCLUIDA", body)
    assert isinstance(ev, PaidConfirmation)
    assert ev.provider_status == "CONCLUIDA"
    assert ev.raw_payload == body

    assert isinstance(build_confirmation("EGG1", "failed", {}), FailedConfirmation)
    assert isinstance(build_confirmation("EGG1", "expired", {}), ExpiredConfirmation)
    unknown = build_confirmation("EGG1", "EM_ANALISE", {"v": 2})
    assert isinstance(unknown, UnknownConfirmation)
    assert unknown.raw_payload == {"v": 2}


def test_parse_generic_body():
    (ev,) = parse_confirmations({"txid": "EGG2", "status": "expired"})
    assert ev.charge_id == "EGG2"
    assert ev.status == "expired"


def test_parse_pix_batch_defaults_to_paid():
    body = {
        "pix": [
            {"endToEndId": "E1", "txid": "EGG3", "valor": "11.00"},
            {"endToEndId": "E2", "txid": "EGG4", "valor": "5.00", "status": "CONCLUIDA"},
        ]
    }
    events = parse_confirmations(body)
    assert [e.charge_id for e in events] == ["EGG3", "EGG4"]
    assert all(isinstance(e, PaidConfirmation) for e in events)


def test_parse_rejects_missing_id():
    with pytest.raises(ValueError):
        parse_confirmations({"status": "paid"})
    with pytest.raises(ValueError):
        parse_confirmations({"pix": [{"valor": "1.00"}]})
