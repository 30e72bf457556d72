"""
Order lifecycle use-cases: creation, the guarded paid transition and
subscription extension.

``apply_paid_transition`` is the only code path that moves an order to paid.
Webhooks, capture-on-return and status polling all funnel into it, and the
compare-and-set write at the repository decides which caller wins.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from application.dtos.payments import CreateOrderResult, OrderView, RedirectArtifact, SubscriptionView
from application.ports.notifier import PaymentNotifier
from application.ports.payment_gateway import GatewayRegistry
from core.logging_config import get_logger, get_security_logger
from domain.common.exceptions import DomainValidationException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    BillingCycle,
    OrderStatus,
    PaymentOrder,
    PaymentProvider,
    generate_order_id,
)
from domain.payment.events import VerifiedPayment
from domain.payment.exceptions import (
    AmountMismatchError,
    DuplicateEventError,
    OrderNotFoundException,
)
from domain.payment.pricing import PricingTable
from domain.subscription.entity import Subscription


logger = get_logger(__name__)
security_logger = get_security_logger()

UnitOfWorkFactory = Callable[[], AbstractUnitOfWork]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TransitionResult:
    applied: bool
    order: Optional[PaymentOrder] = None


class OrderLifecycleService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        gateways: GatewayRegistry,
        pricing: PricingTable,
        notifier: PaymentNotifier,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateways
        self._pricing = pricing
        self._notifier = notifier
        self._clock = clock

    async def create_order(
        self, user_id: str, plan: BillingCycle | str, provider: PaymentProvider | str
    ) -> CreateOrderResult:
        """Persist a pending order, then ask the provider for a payment artifact.

        A failed provider call leaves the order pending so it can be retried
        with ``resume_order``; the error propagates to the caller.
        """
        provider = PaymentProvider(provider)
        gateway = self._gateways.get(provider)
        quote = self._pricing.quote(provider, plan)
        now = self._clock()
        order = PaymentOrder(
            id=None,
            order_id=generate_order_id(provider, now_ms=int(now.timestamp() * 1000)),
            provider=provider,
            user_id=user_id,
            amount=quote.amount,
            currency=quote.currency,
            amount_unit=quote.amount_unit,
            billing_days=quote.billing_days,
            billing_cycle=quote.billing_cycle,
            status=OrderStatus.PENDING,
            created_at=now,
            updated_at=now,
            metadata={"plan": quote.billing_cycle.value, "days": quote.billing_days},
        )
        async with self._uow_factory() as uow:
            order = await uow.orders.create(order)
            await uow.commit()
        logger.info(
            "payment_order_created",
            order_id=order.order_id,
            provider=provider.value,
            user_id=user_id,
            amount=str(order.amount),
            currency=order.currency,
        )
        artifact = await self._request_artifact(gateway, order)
        return CreateOrderResult(order=OrderView.from_order(order), artifact=artifact)

    async def resume_order(self, order_id: str, user_id: str) -> CreateOrderResult:
        """Re-issue the provider artifact for a still-pending order (same order id)."""
        async with self._uow_factory() as uow:
            order = await uow.orders.get_for_user(order_id, user_id)
        if order is None:
            raise OrderNotFoundException(order_id)
        if not order.is_pending:
            raise DomainValidationException(
                f"Order {order_id} is {order.status.value} and cannot be resumed", field="order_id"
            )
        gateway = self._gateways.get(order.provider)
        logger.info("payment_order_resumed", order_id=order_id, provider=order.provider.value)
        artifact = await self._request_artifact(gateway, order)
        return CreateOrderResult(order=OrderView.from_order(order), artifact=artifact)

    async def _request_artifact(self, gateway, order: PaymentOrder) -> RedirectArtifact:
        try:
            artifact = await gateway.create(order)
        except Exception:
            logger.warning(
                "payment_order_provider_create_failed",
                order_id=order.order_id,
                provider=order.provider.value,
                exc_info=True,
            )
            raise
        if artifact.provider_order_ref and artifact.provider_order_ref != order.provider_order_ref:
            async with self._uow_factory() as uow:
                await uow.orders.set_provider_order_ref(order.order_id, artifact.provider_order_ref)
                await uow.commit()
            order.provider_order_ref = artifact.provider_order_ref
        return artifact

    async def apply_paid_transition(
        self,
        order_id: str,
        paid_amount: Decimal,
        paid_currency: str,
        provider_transaction_id: str,
        *,
        raw_payload: Optional[dict] = None,
        event: Optional[tuple[PaymentProvider, str]] = None,
        provider: Optional[PaymentProvider | str] = None,
    ) -> TransitionResult:
        """Guarded pending -> paid transition.

        ``event`` is the (provider, event id) pair of the delivering webhook; it
        is recorded in the same transaction so a crash before commit lets the
        provider's retry through. ``provider`` (defaulting to the event's) is
        the provider that verified the payment; an order placed with another
        provider is left untouched. Raises DuplicateEventError when the pair was
        already recorded and AmountMismatchError (after flagging the order for
        review) when the verified amount disagrees with the order.
        """
        if provider is None and event is not None:
            provider = event[0]
        mismatch: Optional[PaymentOrder] = None
        async with self._uow_factory() as uow:
            await self._record_event(uow, event)

            order = await uow.orders.get_by_order_id(order_id)
            if order is None:
                logger.warning("paid_transition_order_missing", order_id=order_id)
                return TransitionResult(applied=False)

            if not self._provider_matches(order, provider):
                return TransitionResult(applied=False, order=order)

            if not order.is_pending:
                logger.info("paid_transition_already_handled", order_id=order_id, status=order.status.value)
                return TransitionResult(applied=False, order=order)

            if not order.matches_amount(paid_amount, paid_currency):
                reason = f"amount mismatch: paid {paid_amount} {paid_currency}"
                await uow.orders.flag_for_review(order_id, reason)
                await uow.commit()
                order.flag_for_review(reason)
                mismatch = order
            else:
                now = self._clock()
                won = await uow.orders.mark_paid_if_pending(
                    order_id,
                    provider_transaction_id=provider_transaction_id,
                    paid_at=now,
                    raw_payload=raw_payload,
                )
                if not won:
                    logger.info("paid_transition_lost_race", order_id=order_id)
                    return TransitionResult(applied=False, order=order)
                await self._extend_subscription(uow, order, now)
                await uow.commit()
                order.mark_paid(provider_transaction_id, at=now, raw_payload=raw_payload)

        if mismatch is not None:
            security_logger.warning(
                "payment_amount_mismatch",
                order_id=order_id,
                provider=mismatch.provider.value,
                expected_amount=str(mismatch.amount),
                expected_currency=mismatch.currency,
                paid_amount=str(paid_amount),
                paid_currency=paid_currency,
            )
            await self._safe_notify(self._notifier.amount_mismatch(mismatch, str(paid_amount), paid_currency))
            raise AmountMismatchError(
                order_id=order_id,
                expected_amount=mismatch.amount,
                expected_currency=mismatch.currency,
                paid_amount=Decimal(paid_amount),
                paid_currency=paid_currency,
            )

        logger.info(
            "paid_transition_applied",
            order_id=order_id,
            provider=order.provider.value,
            provider_transaction_id=provider_transaction_id,
        )
        await self._safe_notify(self._notifier.payment_succeeded(order))
        return TransitionResult(applied=True, order=order)

    async def mark_failed(self, order_id: str) -> bool:
        """Provider closed or expired the trade; pending -> failed via CAS."""
        async with self._uow_factory() as uow:
            changed = await uow.orders.mark_failed_if_pending(order_id, at=self._clock())
            await uow.commit()
        if changed:
            logger.info("payment_order_failed", order_id=order_id)
        return changed

    async def record_refund(
        self,
        order_id: str,
        *,
        provider: Optional[PaymentProvider | str] = None,
        event: Optional[tuple[PaymentProvider, str]] = None,
    ) -> bool:
        """Out-of-band refund: paid -> refunded. Entitlement is left untouched.

        Reached from provider refund notifications and the ``payments.record_refund``
        task. Returns False when the order was not paid (already refunded included).
        """
        if provider is None and event is not None:
            provider = event[0]
        async with self._uow_factory() as uow:
            await self._record_event(uow, event)
            order = await uow.orders.get_by_order_id(order_id)
            if order is None:
                raise OrderNotFoundException(order_id)
            if not self._provider_matches(order, provider):
                return False
            changed = await uow.orders.mark_refunded_if_paid(order_id, refunded_at=self._clock())
            await uow.commit()
        logger.info("payment_order_refund_recorded", order_id=order_id, applied=changed)
        return changed

    async def _record_event(self, uow: AbstractUnitOfWork, event: Optional[tuple[PaymentProvider, str]]) -> None:
        if event is None:
            return
        provider, event_id = event
        if not await uow.webhook_events.record_once(provider, event_id):
            raise DuplicateEventError(PaymentProvider(provider).value, event_id)

    def _provider_matches(self, order: PaymentOrder, provider: Optional[PaymentProvider | str]) -> bool:
        if provider is None or order.provider is PaymentProvider(provider):
            return True
        security_logger.warning(
            "payment_provider_mismatch",
            order_id=order.order_id,
            order_provider=order.provider.value,
            reported_provider=PaymentProvider(provider).value,
        )
        return False

    async def _extend_subscription(self, uow: AbstractUnitOfWork, order: PaymentOrder, now: datetime) -> Subscription:
        plan = order.billing_cycle.value
        subscription = await uow.subscriptions.get_by_user(order.user_id, for_update=True)
        if subscription is None:
            subscription = Subscription.start(
                order.user_id, plan, order.billing_days, now=now, source_order_id=order.order_id
            )
        else:
            subscription.extend(order.billing_days, now=now, plan=plan, source_order_id=order.order_id)
        subscription = await uow.subscriptions.save(subscription)
        logger.info(
            "subscription_extended",
            user_id=order.user_id,
            order_id=order.order_id,
            days=order.billing_days,
            end_date=subscription.end_date.isoformat(),
        )
        return subscription

    async def _safe_notify(self, coro) -> None:
        try:
            await coro
        except Exception:
            # side effects never undo a committed transition
            logger.error("payment_notifier_failed", exc_info=True)

    async def list_orders(self, user_id: str, limit: int = 50) -> list[OrderView]:
        async with self._uow_factory() as uow:
            orders = await uow.orders.list_by_user(user_id, limit=limit)
        return [OrderView.from_order(o) for o in orders]

    async def current_subscription(self, user_id: str) -> Optional[SubscriptionView]:
        async with self._uow_factory() as uow:
            subscription = await uow.subscriptions.get_by_user(user_id)
        if subscription is None:
            return None
        return SubscriptionView.from_subscription(subscription, self._clock())

    async def apply_verified(self, verified: VerifiedPayment, *, record_event: bool = False) -> TransitionResult:
        """Run a verified provider result through ``apply_paid_transition``.

        Orders are matched by our order id, falling back to the provider-side
        reference (hosted checkout session id or PayPal order id).
        """
        order_id = await self._resolve_order_id(verified)
        if not order_id:
            logger.warning(
                "verified_payment_unmatched",
                provider=verified.provider.value,
                provider_order_ref=verified.provider_order_ref,
                event_id=verified.event_id,
            )
            return TransitionResult(applied=False)
        event = (verified.provider, verified.event_id) if record_event and verified.event_id else None
        return await self.apply_paid_transition(
            order_id,
            verified.paid_amount if verified.paid_amount is not None else Decimal("0"),
            verified.paid_currency or "",
            verified.provider_transaction_id or "",
            raw_payload=verified.raw or None,
            event=event,
            provider=verified.provider,
        )

    async def _resolve_order_id(self, verified: VerifiedPayment) -> Optional[str]:
        if verified.order_id:
            return verified.order_id
        if not verified.provider_order_ref:
            return None
        async with self._uow_factory() as uow:
            order = await uow.orders.get_by_provider_order_ref(verified.provider, verified.provider_order_ref)
        return order.order_id if order else None

    async def apply_refund(self, verified: VerifiedPayment, *, record_event: bool = False) -> bool:
        """Record a provider-reported refund; unknown orders are logged and skipped."""
        order_id = await self._resolve_order_id(verified)
        if not order_id:
            logger.warning(
                "refund_notification_unmatched",
                provider=verified.provider.value,
                provider_order_ref=verified.provider_order_ref,
                event_id=verified.event_id,
            )
            return False
        event = (verified.provider, verified.event_id) if record_event and verified.event_id else None
        try:
            return await self.record_refund(order_id, provider=verified.provider, event=event)
        except OrderNotFoundException:
            logger.warning("refund_notification_order_missing", order_id=order_id, provider=verified.provider.value)
            return False

    async def event_recorded(self, provider: PaymentProvider | str, event_id: str) -> bool:
        async with self._uow_factory() as uow:
            return await uow.webhook_events.exists(PaymentProvider(provider), event_id)
