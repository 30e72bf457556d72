"""
订阅实体 - 本地维护的会员有效期
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import _ensure_utc


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass
class Subscription:
    """
    订阅聚合根

    业务规则：
    1. 每个用户最多一条订阅记录
    2. end_date 只会向后移动
    3. 当前仍有效时叠加天数；已过期时从当前时间重新计算
    """

    id: Optional[int]
    user_id: str
    plan: str
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    source_order_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = SubscriptionStatus(self.status)
        self.start_date = _ensure_utc(self.start_date)
        self.end_date = _ensure_utc(self.end_date)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        if self.end_date < self.start_date:
            raise DomainValidationException("订阅结束时间早于开始时间", field="end_date")

    @classmethod
    def start(
        cls, user_id: str, plan: str, days: int, *, now: datetime, source_order_id: Optional[str] = None
    ) -> "Subscription":
        now = _ensure_utc(now)
        return cls(
            id=None,
            user_id=user_id,
            plan=plan,
            status=SubscriptionStatus.ACTIVE,
            start_date=now,
            end_date=now + timedelta(days=days),
            source_order_id=source_order_id,
            created_at=now,
            updated_at=now,
        )

    def is_active_at(self, now: datetime) -> bool:
        return self.end_date > _ensure_utc(now)

    def effective_status(self, now: Optional[datetime] = None) -> SubscriptionStatus:
        now = now or datetime.now(timezone.utc)
        return SubscriptionStatus.ACTIVE if self.is_active_at(now) else SubscriptionStatus.EXPIRED

    def extend(self, days: int, *, now: datetime, plan: Optional[str] = None,
               source_order_id: Optional[str] = None) -> None:
        """
        延长订阅

        仍有效：end_date += days，start_date 不变（叠加）。
        已过期：start_date = now，end_date = now + days（重置）。
        """
        if days <= 0:
            raise DomainValidationException(f"延长天数必须大于0: {days}", field="days")
        now = _ensure_utc(now)
        if self.is_active_at(now):
            self.end_date = self.end_date + timedelta(days=days)
        else:
            self.start_date = now
            self.end_date = now + timedelta(days=days)
        self.status = SubscriptionStatus.ACTIVE
        if plan:
            self.plan = plan
        if source_order_id:
            self.source_order_id = source_order_id
        self.updated_at = now
