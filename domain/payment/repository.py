"""
支付订单仓储接口 - 只定义能做什么，不管怎么做
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .entity import PaymentOrder, PaymentProvider


class PaymentOrderRepository(ABC):
    """支付订单仓储抽象接口"""

    @abstractmethod
    async def create(self, order: PaymentOrder) -> PaymentOrder:
        """新建订单；order_id 冲突时抛出 OrderAlreadyExistsException"""

    @abstractmethod
    async def get_by_order_id(self, order_id: str) -> Optional[PaymentOrder]:
        """根据订单号获取订单"""

    @abstractmethod
    async def get_for_user(self, order_id: str, user_id: str) -> Optional[PaymentOrder]:
        """获取属于该用户的订单"""

    @abstractmethod
    async def get_by_provider_order_ref(
        self, provider: PaymentProvider, provider_order_ref: str
    ) -> Optional[PaymentOrder]:
        """根据渠道侧订单引用（session id / PayPal order id）获取订单"""

    @abstractmethod
    async def set_provider_order_ref(self, order_id: str, provider_order_ref: str) -> None:
        """记录渠道侧订单引用"""

    @abstractmethod
    async def mark_paid_if_pending(
        self,
        order_id: str,
        *,
        provider_transaction_id: str,
        paid_at: datetime,
        raw_payload: Optional[dict] = None,
    ) -> bool:
        """
        条件更新 pending → paid

        仅当存储中的状态仍为 pending 时写入，返回是否实际更新了一行。
        """

    @abstractmethod
    async def mark_failed_if_pending(self, order_id: str, *, at: datetime) -> bool:
        """条件更新 pending → failed（渠道明确关闭/过期）"""

    @abstractmethod
    async def mark_refunded_if_paid(self, order_id: str, *, refunded_at: datetime) -> bool:
        """条件更新 paid → refunded"""

    @abstractmethod
    async def flag_for_review(self, order_id: str, reason: str) -> None:
        """标记人工复核（金额不符等），不改变状态"""

    @abstractmethod
    async def list_by_user(self, user_id: str, limit: int = 50) -> List[PaymentOrder]:
        """用户订单列表，按创建时间倒序"""

    @abstractmethod
    async def list_pending(self, created_before: datetime, limit: int = 100) -> List[PaymentOrder]:
        """创建时间早于 created_before 的待支付订单，用于对账"""


class WebhookEventRepository(ABC):
    """回调事件幂等台账"""

    @abstractmethod
    async def record_once(self, provider: PaymentProvider, event_id: str) -> bool:
        """
        写入 (provider, event_id)

        首次写入返回 True；已存在返回 False（视为已处理，不是错误）。
        """

    @abstractmethod
    async def exists(self, provider: PaymentProvider, event_id: str) -> bool:
        """只读检查，不占位；真正的去重仍以 record_once 为准"""
