"""
进程内存储后端

单事件循环内每个条件写都是同步完成的（中间没有 await），因此 CAS 天然原子。
写操作把撤销动作记入 journal，由 InMemoryUnitOfWork 在回滚时逆序执行。
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from itertools import count
from typing import Callable, List, Optional

from domain.payment.entity import OrderStatus, PaymentOrder, PaymentProvider
from domain.payment.exceptions import OrderAlreadyExistsException
from domain.payment.repository import PaymentOrderRepository, WebhookEventRepository
from domain.subscription.entity import Subscription
from domain.subscription.repository import SubscriptionRepository

Journal = List[Callable[[], None]]


@dataclass
class InMemoryStore:
    orders: dict[str, PaymentOrder] = field(default_factory=dict)
    subscriptions: dict[str, Subscription] = field(default_factory=dict)
    webhook_events: set[tuple[str, str]] = field(default_factory=set)
    _ids: count = field(default_factory=lambda: count(1))

    def next_id(self) -> int:
        return next(self._ids)


class InMemoryPaymentOrderRepository(PaymentOrderRepository):
    def __init__(self, store: InMemoryStore, journal: Journal):
        self._store = store
        self._journal = journal

    def _snapshot(self, order_id: str) -> None:
        before = copy.deepcopy(self._store.orders[order_id])
        self._journal.append(lambda: self._store.orders.__setitem__(order_id, before))

    def _get(self, order_id: str) -> Optional[PaymentOrder]:
        order = self._store.orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def create(self, order: PaymentOrder) -> PaymentOrder:
        if order.order_id in self._store.orders:
            raise OrderAlreadyExistsException(order.order_id)
        stored = copy.deepcopy(order)
        stored.id = self._store.next_id()
        self._store.orders[order.order_id] = stored
        self._journal.append(lambda: self._store.orders.pop(order.order_id, None))
        return copy.deepcopy(stored)

    async def get_by_order_id(self, order_id: str) -> Optional[PaymentOrder]:
        return self._get(order_id)

    async def get_for_user(self, order_id: str, user_id: str) -> Optional[PaymentOrder]:
        order = self._get(order_id)
        return order if order and order.user_id == user_id else None

    async def get_by_provider_order_ref(
        self, provider: PaymentProvider, provider_order_ref: str
    ) -> Optional[PaymentOrder]:
        provider = PaymentProvider(provider)
        for order in self._store.orders.values():
            if order.provider is provider and order.provider_order_ref == provider_order_ref:
                return copy.deepcopy(order)
        return None

    async def set_provider_order_ref(self, order_id: str, provider_order_ref: str) -> None:
        if order_id not in self._store.orders:
            return
        self._snapshot(order_id)
        self._store.orders[order_id].provider_order_ref = provider_order_ref

    def _compare_and_set(self, order_id: str, expected: OrderStatus, apply: Callable[[PaymentOrder], None]) -> bool:
        order = self._store.orders.get(order_id)
        if order is None or order.status is not expected:
            return False
        self._snapshot(order_id)
        apply(order)
        return True

    async def mark_paid_if_pending(
        self,
        order_id: str,
        *,
        provider_transaction_id: str,
        paid_at: datetime,
        raw_payload: Optional[dict] = None,
    ) -> bool:
        return self._compare_and_set(
            order_id,
            OrderStatus.PENDING,
            lambda o: o.mark_paid(provider_transaction_id, at=paid_at, raw_payload=raw_payload),
        )

    async def mark_failed_if_pending(self, order_id: str, *, at: datetime) -> bool:
        return self._compare_and_set(order_id, OrderStatus.PENDING, lambda o: o.mark_failed(at=at))

    async def mark_refunded_if_paid(self, order_id: str, *, refunded_at: datetime) -> bool:
        return self._compare_and_set(order_id, OrderStatus.PAID, lambda o: o.mark_refunded(at=refunded_at))

    async def flag_for_review(self, order_id: str, reason: str) -> None:
        if order_id not in self._store.orders:
            return
        self._snapshot(order_id)
        self._store.orders[order_id].flag_for_review(reason)

    async def list_by_user(self, user_id: str, limit: int = 50) -> List[PaymentOrder]:
        orders = [o for o in self._store.orders.values() if o.user_id == user_id]
        orders.sort(key=lambda o: (o.created_at, o.id or 0), reverse=True)
        return [copy.deepcopy(o) for o in orders[:limit]]

    async def list_pending(self, created_before: datetime, limit: int = 100) -> List[PaymentOrder]:
        orders = [
            o for o in self._store.orders.values()
            if o.status is OrderStatus.PENDING and o.created_at < created_before
        ]
        orders.sort(key=lambda o: o.created_at)
        return [copy.deepcopy(o) for o in orders[:limit]]


class InMemorySubscriptionRepository(SubscriptionRepository):
    def __init__(self, store: InMemoryStore, journal: Journal):
        self._store = store
        self._journal = journal

    async def get_by_user(self, user_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        sub = self._store.subscriptions.get(user_id)
        return copy.deepcopy(sub) if sub else None

    async def save(self, subscription: Subscription) -> Subscription:
        user_id = subscription.user_id
        before = self._store.subscriptions.get(user_id)
        if before is None:
            self._journal.append(lambda: self._store.subscriptions.pop(user_id, None))
        else:
            self._journal.append(lambda: self._store.subscriptions.__setitem__(user_id, before))
        if subscription.id is None:
            subscription.id = self._store.next_id()
        self._store.subscriptions[user_id] = copy.deepcopy(subscription)
        return subscription


class InMemoryWebhookEventRepository(WebhookEventRepository):
    def __init__(self, store: InMemoryStore, journal: Journal):
        self._store = store
        self._journal = journal

    async def record_once(self, provider: PaymentProvider, event_id: str) -> bool:
        key = (PaymentProvider(provider).value, event_id)
        if key in self._store.webhook_events:
            return False
        self._store.webhook_events.add(key)
        self._journal.append(lambda: self._store.webhook_events.discard(key))
        return True

    async def exists(self, provider: PaymentProvider, event_id: str) -> bool:
        return (PaymentProvider(provider).value, event_id) in self._store.webhook_events
