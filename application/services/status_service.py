"""
Client-facing read path: status polling, capture-on-return and reconciliation.

Anything that learns of a payment here goes through the same guarded
transition as webhooks.
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable

from application.dtos.payments import CaptureRequest, OrderView
from application.ports.payment_gateway import GatewayRegistry
from application.services.order_lifecycle_service import OrderLifecycleService, UnitOfWorkFactory, _utcnow
from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import PaymentOrder, PaymentProvider
from domain.payment.events import VerifiedPayment
from domain.payment.exceptions import (
    AmountMismatchError,
    OrderNotFoundException,
    PaymentProviderError,
)


logger = get_logger(__name__)


class PaymentStatusService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        gateways: GatewayRegistry,
        lifecycle: OrderLifecycleService,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateways
        self._lifecycle = lifecycle
        self._clock = clock

    async def _load_for_user(self, order_id: str, user_id: str) -> PaymentOrder:
        async with self._uow_factory() as uow:
            order = await uow.orders.get_for_user(order_id, user_id)
        if order is None:
            raise OrderNotFoundException(order_id)
        return order

    async def get_status(self, order_id: str, user_id: str, *, sync: bool = False) -> OrderView:
        """Order status scoped to the caller; ``sync`` asks the provider about pending orders."""
        order = await self._load_for_user(order_id, user_id)
        if sync and order.is_pending and order.provider in self._gateways:
            if await self.sync_order(order):
                order = await self._load_for_user(order_id, user_id)
        return OrderView.from_order(order)

    async def sync_order(self, order: PaymentOrder) -> bool:
        """Query the provider for a pending order. Returns True when the stored order changed."""
        gateway = self._gateways.get(order.provider)
        try:
            verified = await gateway.query(order)
            if verified is not None and verified.requires_capture and verified.provider_order_ref:
                verified = await gateway.capture(verified.provider_order_ref)
        except PaymentProviderError as exc:
            logger.warning(
                "payment_status_query_failed",
                order_id=order.order_id,
                provider=order.provider.value,
                error=exc.message,
            )
            return False
        if verified is None:
            return False
        return await self._apply(verified, order)

    async def _apply(self, verified: VerifiedPayment, order: PaymentOrder) -> bool:
        if verified.succeeded:
            try:
                result = await self._lifecycle.apply_verified(verified)
            except AmountMismatchError:
                return True
            return result.applied
        if verified.failed:
            return await self._lifecycle.mark_failed(order.order_id)
        return False

    async def capture(self, user_id: str, req: CaptureRequest) -> OrderView:
        """Capture-on-return.

        PayPal orders are captured (idempotently: an already captured order is
        read back and still funnels into the guarded transition). Other
        providers fall back to a status sync.
        """
        order = await self._resolve_capture_target(user_id, req)
        if not order.is_pending:
            return OrderView.from_order(order)
        if order.provider is not PaymentProvider.PAYPAL:
            return await self.get_status(order.order_id, user_id, sync=True)

        gateway = self._gateways.get(order.provider)
        if not order.provider_order_ref:
            raise DomainValidationException("Order has no provider reference to capture", field="token")
        verified = await gateway.capture(order.provider_order_ref)
        logger.info("payment_capture_on_return", order_id=order.order_id, succeeded=verified.succeeded)
        if not verified.order_id:
            verified = _bind_order(verified, order.order_id)
        await self._apply(verified, order)
        return OrderView.from_order(await self._load_for_user(order.order_id, user_id))

    async def _resolve_capture_target(self, user_id: str, req: CaptureRequest) -> PaymentOrder:
        if req.order_id:
            return await self._load_for_user(req.order_id, user_id)
        if not req.token:
            raise DomainValidationException("token or orderId is required", field="token")
        async with self._uow_factory() as uow:
            order = await uow.orders.get_by_provider_order_ref(req.provider, req.token)
        if order is None or order.user_id != user_id:
            raise OrderNotFoundException(req.token)
        return order

    async def reconcile_pending(self, *, min_age_seconds: int, limit: int) -> dict[str, int]:
        """Sync pending orders older than ``min_age_seconds``; used by the beat task."""
        cutoff = self._clock() - timedelta(seconds=min_age_seconds)
        async with self._uow_factory() as uow:
            pending = await uow.orders.list_pending(cutoff, limit=limit)
        stats = {"checked": 0, "changed": 0, "skipped": 0}
        for order in pending:
            if order.provider not in self._gateways:
                stats["skipped"] += 1
                continue
            stats["checked"] += 1
            if await self.sync_order(order):
                stats["changed"] += 1
        logger.info("payment_reconcile_completed", **stats)
        return stats


def _bind_order(verified: VerifiedPayment, order_id: str) -> VerifiedPayment:
    return replace(verified, order_id=order_id)
