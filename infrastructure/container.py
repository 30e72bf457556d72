"""
Application container: wires the storage backend, gateways and services once
per process (FastAPI lifespan or a Celery task run).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from application.ports.notifier import PaymentNotifier
from application.ports.payment_gateway import GatewayRegistry
from application.services.order_lifecycle_service import OrderLifecycleService, UnitOfWorkFactory
from application.services.status_service import PaymentStatusService
from application.services.webhook_service import WebhookIngestionService
from core.config import Settings
from core.logging_config import get_logger
from core.settings import PaymentSettings
from domain.payment.pricing import PricingTable
from infrastructure.database import build_engine, build_session_factory
from infrastructure.external.payments import build_gateway_registry
from infrastructure.repositories.memory_repository import InMemoryStore
from infrastructure.tasks.notifier import CeleryPaymentNotifier, LoggingPaymentNotifier
from infrastructure.unit_of_work import InMemoryUnitOfWork, SQLAlchemyUnitOfWork

logger = get_logger(__name__)


@dataclass
class AppContainer:
    settings: Settings
    payment_settings: PaymentSettings
    gateways: GatewayRegistry
    uow_factory: UnitOfWorkFactory
    lifecycle: OrderLifecycleService
    webhooks: WebhookIngestionService
    status: PaymentStatusService
    engine: Optional[AsyncEngine] = None
    store: Optional[InMemoryStore] = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        payment_settings: PaymentSettings,
        *,
        gateways: Optional[GatewayRegistry] = None,
        notifier: Optional[PaymentNotifier] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "AppContainer":
        engine: Optional[AsyncEngine] = None
        store: Optional[InMemoryStore] = None
        if settings.order_store.backend == "memory":
            store = InMemoryStore()

            def uow_factory() -> InMemoryUnitOfWork:
                return InMemoryUnitOfWork(store)
        else:
            engine = build_engine(settings.database.url, echo=settings.database.echo)
            session_factory = build_session_factory(engine)

            def uow_factory() -> SQLAlchemyUnitOfWork:
                return SQLAlchemyUnitOfWork(session_factory)

        if gateways is None:
            gateways = build_gateway_registry(payment_settings, transport=transport)
        if notifier is None:
            notifier = CeleryPaymentNotifier() if settings.redis.url else LoggingPaymentNotifier()

        pricing = PricingTable(
            prices=payment_settings.pricing.prices,
            days=payment_settings.pricing.days,
        )
        lifecycle = OrderLifecycleService(uow_factory, gateways, pricing, notifier)
        container = cls(
            settings=settings,
            payment_settings=payment_settings,
            gateways=gateways,
            uow_factory=uow_factory,
            lifecycle=lifecycle,
            webhooks=WebhookIngestionService(gateways, lifecycle),
            status=PaymentStatusService(uow_factory, gateways, lifecycle),
            engine=engine,
            store=store,
        )
        logger.info(
            "container_built",
            backend=settings.order_store.backend,
            providers=[p.value for p in gateways.providers],
            notifier=type(notifier).__name__,
        )
        return container

    async def aclose(self) -> None:
        await self.gateways.aclose()
        if self.engine is not None:
            await self.engine.dispose()
