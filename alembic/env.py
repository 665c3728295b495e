# alembic/env.py：同步驱动执行迁移（psycopg / sqlite），模型来自 perishable.db.base

from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine
from sqlalchemy.engine import Connection
from sqlalchemy.pool import NullPool

# Alembic 基本配置
config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# 延迟加载模型（避免导入时机引发的问题）
from perishable.db.base import Base, init_models  # noqa: E402
from perishable.db.session import normalize_async_dsn  # noqa: E402


def get_url() -> str:
    """
    单一真相：显式使用环境变量里的 DSN。

    优先级：
      1. DATABASE_URL
      2. alembic.ini 里的 sqlalchemy.url
    迁移走同步驱动：+aiosqlite 去掉，postgres 统一为 +psycopg（psycopg3 同时支持同步）。
    """
    url = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not url:
        raise RuntimeError(
            "Alembic 无法确定数据库 URL：请设置 DATABASE_URL，或在 alembic.ini 里配置 sqlalchemy.url"
        )
    return normalize_async_dsn(url).replace("sqlite+aiosqlite://", "sqlite://", 1)


def run_migrations_offline() -> None:
    """Offline 模式：不真实连库，只生成 SQL。"""
    init_models()
    context.configure(
        url=get_url(),
        target_metadata=Base.metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Online 模式：真实连库执行迁移。"""
    init_models()
    url = get_url()
    engine = create_engine(url, poolclass=NullPool, future=True)

    with engine.connect() as connection:  # type: Connection
        context.configure(
            connection=connection,
            target_metadata=Base.metadata,
            compare_type=True,
            compare_server_default=False,
            # sqlite 不支持 ALTER 约束，走 batch 模式
            render_as_batch=url.startswith("sqlite"),
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
