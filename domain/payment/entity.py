"""
支付订单实体 - 会员购买订单聚合根
"""
from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException


class PaymentProvider(str, Enum):
    """支付渠道"""
    WECHAT = "wechat"   # 扫码支付，金额以分存储
    ALIPAY = "alipay"   # 网页跳转支付
    STRIPE = "stripe"   # 托管收银台 A
    PAYPAL = "paypal"   # 托管收银台 B，需要 capture

    @property
    def order_prefix(self) -> str:
        return _ORDER_PREFIX[self]

    @property
    def amount_unit(self) -> "AmountUnit":
        return AmountUnit.MINOR if self is PaymentProvider.WECHAT else AmountUnit.MAJOR

    @property
    def amount_tolerance(self) -> Decimal:
        """金额比对容差（与订单金额同单位）"""
        return Decimal("0") if self.amount_unit is AmountUnit.MINOR else Decimal("0.01")


_ORDER_PREFIX = {
    PaymentProvider.WECHAT: "WX",
    PaymentProvider.ALIPAY: "ALI",
    PaymentProvider.STRIPE: "STR",
    PaymentProvider.PAYPAL: "PP",
}


class AmountUnit(str, Enum):
    MINOR = "minor"
    MAJOR = "major"


class OrderStatus(str, Enum):
    """订单状态枚举"""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


# 状态机：paid 仅能经线下退款进入 refunded
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.FAILED}),
    OrderStatus.PAID: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS[current]


class BillingCycle(str, Enum):
    """计费周期"""
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def default_days(self) -> int:
        return 30 if self is BillingCycle.MONTHLY else 365


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(_BASE36[rem])
    return "".join(reversed(out))


def generate_order_id(provider: PaymentProvider, *, now_ms: Optional[int] = None) -> str:
    """生成订单号：渠道前缀 + base36 毫秒时间戳 + 6 位随机 base36"""
    ts = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{provider.order_prefix}{_to_base36(ts)}{suffix}"


@dataclass
class PaymentOrder:
    """
    支付订单聚合根

    业务规则：
    1. order_id 由系统生成，不可变且全局唯一
    2. 金额以渠道原生单位存储（微信为分，其余为元/美元）
    3. 状态只允许 pending→paid、pending→failed、paid→refunded
    4. 金额不符的回调不会改变状态，只标记 needs_review 等待人工处理
    """

    id: Optional[int]
    order_id: str
    provider: PaymentProvider
    user_id: str
    amount: Decimal
    currency: str
    billing_days: int
    billing_cycle: BillingCycle
    status: OrderStatus = OrderStatus.PENDING
    amount_unit: Optional[AmountUnit] = None

    provider_transaction_id: Optional[str] = None
    provider_order_ref: Optional[str] = None  # 收银台 session id / PayPal order id

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    raw_payload: Optional[dict] = None
    needs_review: bool = False
    review_reason: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        self.provider = PaymentProvider(self.provider)
        self.status = OrderStatus(self.status)
        self.billing_cycle = BillingCycle(self.billing_cycle)
        if self.amount_unit is None:
            self.amount_unit = self.provider.amount_unit
        self.amount_unit = AmountUnit(self.amount_unit)
        self.amount = Decimal(self.amount)
        self.currency = (self.currency or "").upper()
        if self.amount <= 0:
            raise DomainValidationException(f"订单金额必须大于0: {self.amount}", field="amount")
        if len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(f"无效的货币代码: {self.currency}", field="currency")
        if self.billing_days <= 0:
            raise DomainValidationException(
                f"计费天数必须大于0: {self.billing_days}", field="billing_days"
            )
        if not self.order_id.startswith(self.provider.order_prefix):
            raise DomainValidationException(
                f"订单号前缀与渠道不符: {self.order_id}", field="order_id"
            )
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.paid_at = _ensure_utc(self.paid_at)
        self.refunded_at = _ensure_utc(self.refunded_at)
        if self.metadata is None:
            self.metadata = {}

    @property
    def is_pending(self) -> bool:
        return self.status is OrderStatus.PENDING

    @property
    def amount_major(self) -> Decimal:
        """以主单位表示的金额（用于展示）"""
        if self.amount_unit is AmountUnit.MINOR:
            return (self.amount / Decimal(100)).quantize(Decimal("0.01"))
        return self.amount

    def matches_amount(self, paid_amount: Decimal, paid_currency: str) -> bool:
        """
        校验回调金额是否与订单一致

        paid_amount 必须与订单使用相同单位；币种不区分大小写。
        """
        if (paid_currency or "").upper() != self.currency:
            return False
        return abs(Decimal(paid_amount) - self.amount) <= self.provider.amount_tolerance

    def _transition(self, target: OrderStatus) -> None:
        if not can_transition(self.status, target):
            raise DomainValidationException(
                f"无法从状态 {self.status.value} 转换为 {target.value}",
                field="status",
            )
        self.status = target

    def mark_paid(
        self,
        provider_transaction_id: str,
        *,
        at: Optional[datetime] = None,
        raw_payload: Optional[dict] = None,
    ) -> None:
        self._transition(OrderStatus.PAID)
        self.provider_transaction_id = provider_transaction_id
        self.paid_at = _ensure_utc(at) or datetime.now(timezone.utc)
        self.updated_at = self.paid_at
        if raw_payload is not None:
            self.raw_payload = raw_payload

    def mark_failed(self, *, at: Optional[datetime] = None) -> None:
        self._transition(OrderStatus.FAILED)
        self.updated_at = _ensure_utc(at) or datetime.now(timezone.utc)

    def mark_refunded(self, *, at: Optional[datetime] = None) -> None:
        self._transition(OrderStatus.REFUNDED)
        self.refunded_at = _ensure_utc(at) or datetime.now(timezone.utc)
        self.updated_at = self.refunded_at

    def flag_for_review(self, reason: str) -> None:
        """标记人工复核，不改变状态"""
        self.needs_review = True
        self.review_reason = reason
        self.updated_at = datetime.now(timezone.utc)
