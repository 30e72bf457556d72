"""Unit of Work 实现：SQLAlchemy 与进程内存两种后端"""
from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.repositories.memory_repository import (
    InMemoryPaymentOrderRepository,
    InMemoryStore,
    InMemorySubscriptionRepository,
    InMemoryWebhookEventRepository,
    Journal,
)
from infrastructure.repositories.payment_repository import (
    SQLAlchemyPaymentOrderRepository,
    SQLAlchemySubscriptionRepository,
    SQLAlchemyWebhookEventRepository,
)


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于SQLAlchemy的Unit of Work"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self.session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        await super().__aenter__()
        self.session = self._session_factory()
        self.orders = SQLAlchemyPaymentOrderRepository(self.session)
        self.subscriptions = SQLAlchemySubscriptionRepository(self.session)
        self.webhook_events = SQLAlchemyWebhookEventRepository(self.session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            if self.session is not None:
                await self.session.close()
                self.session = None
            self.orders = None  # type: ignore[assignment]
            self.subscriptions = None  # type: ignore[assignment]
            self.webhook_events = None  # type: ignore[assignment]

    async def commit(self) -> None:
        if self._readonly:
            self._committed = True
            return
        if self.session and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False


class InMemoryUnitOfWork(AbstractUnitOfWork):
    """进程内后端；回滚时逆序执行撤销日志"""

    def __init__(self, store: InMemoryStore, *, readonly: bool = False) -> None:
        super().__init__(readonly=readonly)
        self._store = store
        self._journal: Journal = []

    async def __aenter__(self) -> "InMemoryUnitOfWork":
        await super().__aenter__()
        self._journal = []
        self.orders = InMemoryPaymentOrderRepository(self._store, self._journal)
        self.subscriptions = InMemorySubscriptionRepository(self._store, self._journal)
        self.webhook_events = InMemoryWebhookEventRepository(self._store, self._journal)
        return self

    async def commit(self) -> None:
        self._journal.clear()
        self._committed = True

    async def rollback(self) -> None:
        while self._journal:
            undo = self._journal.pop()
            undo()
        self._committed = False
