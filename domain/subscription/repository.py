"""
订阅仓储接口
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from .entity import Subscription


class SubscriptionRepository(ABC):

    @abstractmethod
    async def get_by_user(self, user_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        """获取用户订阅；for_update 时在支持的后端加行锁"""

    @abstractmethod
    async def save(self, subscription: Subscription) -> Subscription:
        """新建或更新订阅"""
