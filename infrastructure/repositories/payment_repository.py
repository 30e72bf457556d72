"""
支付订单仓储实现 - 使用SQLAlchemy实现数据访问

状态迁移全部是条件 UPDATE，靠受影响行数判断是否抢到迁移。
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.payment.entity import OrderStatus, PaymentOrder, PaymentProvider
from domain.payment.exceptions import OrderAlreadyExistsException
from domain.payment.repository import PaymentOrderRepository, WebhookEventRepository
from domain.subscription.entity import Subscription
from domain.subscription.repository import SubscriptionRepository
from infrastructure.models.payment import PaymentOrderModel, SubscriptionModel, WebhookEventModel


logger = get_logger(__name__)


class SQLAlchemyPaymentOrderRepository(PaymentOrderRepository):
    """支付订单仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentOrderModel) -> PaymentOrder:
        """将数据库模型转换为领域实体"""
        return PaymentOrder(
            id=model.id,
            order_id=model.order_id,
            provider=PaymentProvider(model.provider),
            user_id=model.user_id,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            amount_unit=model.amount_unit,
            billing_days=model.billing_days,
            billing_cycle=model.billing_cycle,
            status=OrderStatus(model.status),
            provider_transaction_id=model.provider_transaction_id,
            provider_order_ref=model.provider_order_ref,
            created_at=model.created_at,
            updated_at=model.updated_at,
            paid_at=model.paid_at,
            refunded_at=model.refunded_at,
            raw_payload=model.raw_payload,
            needs_review=bool(model.needs_review),
            review_reason=model.review_reason,
            metadata=model.extra_metadata or {},
        )

    def _to_model(self, entity: PaymentOrder) -> PaymentOrderModel:
        """将领域实体转换为数据库模型"""
        return PaymentOrderModel(
            id=entity.id,
            order_id=entity.order_id,
            provider=entity.provider.value,
            user_id=entity.user_id,
            amount=entity.amount,
            amount_unit=entity.amount_unit.value,
            currency=entity.currency,
            billing_cycle=entity.billing_cycle.value,
            billing_days=entity.billing_days,
            status=entity.status.value,
            provider_transaction_id=entity.provider_transaction_id,
            provider_order_ref=entity.provider_order_ref,
            needs_review=entity.needs_review,
            review_reason=entity.review_reason,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            paid_at=entity.paid_at,
            refunded_at=entity.refunded_at,
            raw_payload=entity.raw_payload,
            extra_metadata=entity.metadata,
        )

    async def create(self, order: PaymentOrder) -> PaymentOrder:
        try:
            async with self.session.begin_nested():
                db_order = self._to_model(order)
                self.session.add(db_order)
                await self.session.flush()
        except IntegrityError:
            logger.warning("payment_order_create_conflict", order_id=order.order_id)
            raise OrderAlreadyExistsException(order.order_id)
        await self.session.refresh(db_order)
        return self._to_entity(db_order)

    async def _one(self, *criteria) -> Optional[PaymentOrder]:
        result = await self.session.execute(select(PaymentOrderModel).where(*criteria))
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None

    async def get_by_order_id(self, order_id: str) -> Optional[PaymentOrder]:
        return await self._one(PaymentOrderModel.order_id == order_id)

    async def get_for_user(self, order_id: str, user_id: str) -> Optional[PaymentOrder]:
        return await self._one(
            PaymentOrderModel.order_id == order_id,
            PaymentOrderModel.user_id == user_id,
        )

    async def get_by_provider_order_ref(
        self, provider: PaymentProvider, provider_order_ref: str
    ) -> Optional[PaymentOrder]:
        return await self._one(
            PaymentOrderModel.provider == PaymentProvider(provider).value,
            PaymentOrderModel.provider_order_ref == provider_order_ref,
        )

    async def set_provider_order_ref(self, order_id: str, provider_order_ref: str) -> None:
        await self.session.execute(
            update(PaymentOrderModel)
            .where(PaymentOrderModel.order_id == order_id)
            .values(provider_order_ref=provider_order_ref)
            .execution_options(synchronize_session=False)
        )

    async def _compare_and_set(self, order_id: str, expected: OrderStatus, **values) -> bool:
        result = await self.session.execute(
            update(PaymentOrderModel)
            .where(
                PaymentOrderModel.order_id == order_id,
                PaymentOrderModel.status == expected.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_paid_if_pending(
        self,
        order_id: str,
        *,
        provider_transaction_id: str,
        paid_at: datetime,
        raw_payload: Optional[dict] = None,
    ) -> bool:
        return await self._compare_and_set(
            order_id,
            OrderStatus.PENDING,
            status=OrderStatus.PAID.value,
            provider_transaction_id=provider_transaction_id,
            paid_at=paid_at,
            updated_at=paid_at,
            raw_payload=raw_payload,
        )

    async def mark_failed_if_pending(self, order_id: str, *, at: datetime) -> bool:
        return await self._compare_and_set(
            order_id, OrderStatus.PENDING, status=OrderStatus.FAILED.value, updated_at=at
        )

    async def mark_refunded_if_paid(self, order_id: str, *, refunded_at: datetime) -> bool:
        return await self._compare_and_set(
            order_id,
            OrderStatus.PAID,
            status=OrderStatus.REFUNDED.value,
            refunded_at=refunded_at,
            updated_at=refunded_at,
        )

    async def flag_for_review(self, order_id: str, reason: str) -> None:
        await self.session.execute(
            update(PaymentOrderModel)
            .where(PaymentOrderModel.order_id == order_id)
            .values(needs_review=True, review_reason=reason)
            .execution_options(synchronize_session=False)
        )

    async def list_by_user(self, user_id: str, limit: int = 50) -> List[PaymentOrder]:
        result = await self.session.execute(
            select(PaymentOrderModel)
            .where(PaymentOrderModel.user_id == user_id)
            .order_by(PaymentOrderModel.created_at.desc(), PaymentOrderModel.id.desc())
            .limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_pending(self, created_before: datetime, limit: int = 100) -> List[PaymentOrder]:
        result = await self.session.execute(
            select(PaymentOrderModel)
            .where(
                PaymentOrderModel.status == OrderStatus.PENDING.value,
                PaymentOrderModel.created_at < created_before,
            )
            .order_by(PaymentOrderModel.created_at.asc())
            .limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]


class SQLAlchemySubscriptionRepository(SubscriptionRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_entity(model: SubscriptionModel) -> Subscription:
        return Subscription(
            id=model.id,
            user_id=model.user_id,
            plan=model.plan,
            status=model.status,
            start_date=model.start_date,
            end_date=model.end_date,
            source_order_id=model.source_order_id,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def get_by_user(self, user_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        stmt = select(SubscriptionModel).where(SubscriptionModel.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def save(self, subscription: Subscription) -> Subscription:
        values = dict(
            user_id=subscription.user_id,
            plan=subscription.plan,
            status=subscription.status.value,
            start_date=subscription.start_date,
            end_date=subscription.end_date,
            source_order_id=subscription.source_order_id,
            updated_at=subscription.updated_at,
        )
        if subscription.id is None:
            model = SubscriptionModel(**values, created_at=subscription.created_at or subscription.start_date)
            self.session.add(model)
            await self.session.flush()
            subscription.id = model.id
            return subscription
        await self.session.execute(
            update(SubscriptionModel)
            .where(SubscriptionModel.id == subscription.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return subscription


class SQLAlchemyWebhookEventRepository(WebhookEventRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def record_once(self, provider: PaymentProvider, event_id: str) -> bool:
        try:
            async with self.session.begin_nested():
                self.session.add(
                    WebhookEventModel(provider=PaymentProvider(provider).value, event_id=event_id)
                )
                await self.session.flush()
        except IntegrityError:
            return False
        return True

    async def exists(self, provider: PaymentProvider, event_id: str) -> bool:
        stmt = select(WebhookEventModel.id).where(
            WebhookEventModel.provider == PaymentProvider(provider).value,
            WebhookEventModel.event_id == event_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None
