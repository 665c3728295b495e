# perishable/core/tx.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession


@asynccontextmanager
async def tx_scope(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    显式事务边界：

    - session 已在事务中：复用外层事务（由外层负责 commit/rollback）
    - 否则 begin()，正常退出 commit，任何异常（含 CancelledError）rollback
    """
    if session.in_transaction():
        yield session
        return

    async with session.begin():
        yield session
