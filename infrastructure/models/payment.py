"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Index, Integer, JSON, Numeric, String, Text,
    UniqueConstraint,
)

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentOrderModel(Base):
    """
    支付订单表

    状态更新统一使用条件 UPDATE（WHERE status = 期望状态），不做读-改-写。
    """
    __tablename__ = "payment_orders"

    id = Column(Integer, primary_key=True, autoincrement=True)

    order_id = Column(String(64), unique=True, nullable=False, comment="订单号（渠道前缀）")
    provider = Column(String(20), nullable=False, index=True, comment="wechat/alipay/stripe/paypal")
    user_id = Column(String(64), nullable=False, index=True, comment="用户ID")

    # 金额按渠道原生单位存储，单位单独记录
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="订单金额")
    amount_unit = Column(String(10), nullable=False, default="major", comment="minor/major")
    currency = Column(String(3), nullable=False, comment="货币代码 ISO-4217")

    billing_cycle = Column(String(20), nullable=False, comment="monthly/yearly")
    billing_days = Column(Integer, nullable=False, comment="会员天数")

    status = Column(String(20), nullable=False, default="pending", index=True,
                    comment="pending/paid/failed/refunded")

    provider_transaction_id = Column(String(128), nullable=True, comment="渠道交易号")
    provider_order_ref = Column(String(128), nullable=True, comment="收银台 session id / PayPal order id")

    needs_review = Column(Boolean, nullable=False, default=False, comment="需人工复核")
    review_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    # 审计用原始回调
    raw_payload = Column(JSON, nullable=True)
    # 使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突
    extra_metadata = Column("metadata", JSON, nullable=True, comment="plan/cycle")

    __table_args__ = (
        Index("ix_payment_orders_user_created", "user_id", "created_at"),
        Index("ix_payment_orders_provider_ref", "provider", "provider_order_ref"),
        Index("ix_payment_orders_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentOrderModel(order_id='{self.order_id}', provider='{self.provider}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class SubscriptionModel(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), unique=True, nullable=False, comment="每个用户一条")
    plan = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    source_order_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class WebhookEventModel(Base):
    """回调幂等台账：(provider, event_id) 至多插入一次"""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(20), nullable=False)
    event_id = Column(String(191), nullable=False)
    processed_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
    )
