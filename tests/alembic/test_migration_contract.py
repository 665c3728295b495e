from pathlib import Path

import pytest
import sqlalchemy as sa
from alembic import command
from alembic.config import Config

pytestmark = pytest.mark.contract

ROOT = Path(__file__).resolve().parents[2]


def _config() -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(ROOT / "alembic"))
    return cfg


def test_upgrade_head_matches_models(tmp_path, monkeypatch):
    """
    迁移合约：
    1. 单 head，upgrade 后 alembic_version 只有一行
    2. 四张表齐全，且关键索引存在（TTL 扫描 / 流水回放）
    3. payment_charges 带 delivery_requested_at（配送派发可续做）
    4. downgrade 能干净回到空库
    """
    db_file = tmp_path / "migrate.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_file}")
    cfg = _config()

    command.upgrade(cfg, "head")

    eng = sa.create_engine(f"sqlite:///{db_file}")
    try:
        insp = sa.inspect(eng)
        tables = set(insp.get_table_names())
        assert {"items", "reservations", "stock_movements", "payment_charges"} <= tables

        rsv_indexes = {ix["name"] for ix in insp.get_indexes("reservations")}
        assert "ix_reservations_status_deadline" in rsv_indexes

        charge_cols = {c["name"] for c in insp.get_columns("payment_charges")}
        assert "delivery_requested_at" in charge_cols

        with eng.connect() as conn:
            assert conn.execute(sa.text("SELECT COUNT(*) FROM alembic_version")).scalar_one() == 1
    finally:
        eng.dispose()

    command.downgrade(cfg, "base")

    eng = sa.create_engine(f"sqlite:///{db_file}")
    try:
        assert "reservations" not in set(sa.inspect(eng).get_table_names())
    finally:
        eng.dispose()


def test_delivery_requested_backfilled_for_paid_charges(tmp_path, monkeypatch):
    """0002 升级前已付款的收款单视为已派发，不会在重复回调时再发一次配送"""
    db_file = tmp_path / "backfill.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_file}")
    cfg = _config()

    command.upgrade(cfg, "0001_initial")

    eng = sa.create_engine(f"sqlite:///{db_file}")
    try:
        with eng.begin() as conn:
            conn.execute(
                sa.text(
                    "INSERT INTO items (sku, name, category, origin, qty_available, "
                    "min_safety_stock, unit_price) "
                    "VALUES ('EGG-1', 'eggs', 'eggs', 'farm', 5, 0, 2.00)"
                )
            )
            item_id = conn.execute(sa.text("SELECT id FROM items")).scalar_one()
            for rid, status in (("R-PAID", "committed"), ("R-OPEN", "pending")):
                conn.execute(
                    sa.text(
                        "INSERT INTO reservations (id, item_id, qty, buyer_id, destination, "
                        "status, payment_deadline, created_at) "
                        "VALUES (:id, :item, 1, 'b1', '01310-100', :st, "
                        "'2026-01-01 10:30:00', '2026-01-01 10:00:00')"
                    ),
                    {"id": rid, "item": item_id, "st": status},
                )
            conn.execute(
                sa.text(
                    "INSERT INTO payment_charges (id, reservation_id, amount, delivery_fee, "
                    "status, paid_at, expires_at, created_at, updated_at) VALUES "
                    "('C-PAID', 'R-PAID', 12.00, 2.00, 'paid', '2026-01-01 10:05:00', "
                    "'2026-01-01 10:30:00', '2026-01-01 10:00:00', '2026-01-01 10:05:00'), "
                    "('C-OPEN', 'R-OPEN', 12.00, 2.00, 'pending', NULL, "
                    "'2026-01-01 10:30:00', '2026-01-01 10:00:00', '2026-01-01 10:00:00')"
                )
            )
    finally:
        eng.dispose()

    command.upgrade(cfg, "head")

    eng = sa.create_engine(f"sqlite:///{db_file}")
    try:
        with eng.connect() as conn:
            rows = dict(
                conn.execute(
                    sa.text("SELECT id, delivery_requested_at FROM payment_charges")
                ).all()
            )
        assert rows["C-PAID"] is not None
        assert rows["C-OPEN"] is None
    finally:
        eng.dispose()
