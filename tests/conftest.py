"""Pytest bootstrap configuration.

Mandatory environment variables are set before any module that reads
application settings is imported.
"""
import base64
import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("ORDER_STORE__BACKEND", "memory")

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from application.dtos.payments import RedirectArtifact, WebhookAck
from application.ports.payment_gateway import GatewayRegistry
from application.services.order_lifecycle_service import OrderLifecycleService
from application.services.status_service import PaymentStatusService
from application.services.webhook_service import WebhookIngestionService
from domain.payment.entity import PaymentProvider
from domain.payment.exceptions import PaymentProviderError
from domain.payment.pricing import PricingTable
from infrastructure.repositories.memory_repository import InMemoryStore
from infrastructure.unit_of_work import InMemoryUnitOfWork


T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeGateway:
    """Scriptable gateway: tests set the next verify/query/capture result."""

    def __init__(self, provider: PaymentProvider | str):
        self.provider = PaymentProvider(provider)
        self.created: list[str] = []
        self.captured: list[str] = []
        self.fail_create = False
        self.verify_result = None
        self.verify_error: Exception | None = None
        self.query_result = None
        self.query_error: Exception | None = None
        self.capture_result = None

    async def create(self, order):
        if self.fail_create:
            raise PaymentProviderError("provider down", provider=self.provider.value)
        self.created.append(order.order_id)
        ref = f"ref-{order.order_id}" if self.provider in (PaymentProvider.STRIPE, PaymentProvider.PAYPAL) else None
        return RedirectArtifact(kind="redirect_url", payload=f"https://pay.example/{order.order_id}",
                                provider_order_ref=ref)

    async def verify(self, headers, body):
        if self.verify_error is not None:
            raise self.verify_error
        return self.verify_result

    async def query(self, order):
        if self.query_error is not None:
            raise self.query_error
        return self.query_result

    async def capture(self, provider_order_ref):
        self.captured.append(provider_order_ref)
        return self.capture_result

    def success_ack(self):
        return WebhookAck(body={"ok": True})

    def failure_ack(self, reason=""):
        return WebhookAck(status_code=400, body={"ok": False, "reason": reason})

    async def aclose(self):
        return None


class RecordingNotifier:
    def __init__(self):
        self.paid: list[str] = []
        self.mismatches: list[tuple[str, str, str]] = []

    async def payment_succeeded(self, order):
        self.paid.append(order.order_id)

    async def amount_mismatch(self, order, paid_amount, paid_currency):
        self.mismatches.append((order.order_id, paid_amount, paid_currency))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def uow_factory(store):
    return lambda: InMemoryUnitOfWork(store)


@pytest.fixture
def gateways():
    return GatewayRegistry({p: FakeGateway(p) for p in PaymentProvider})


@pytest.fixture
def pricing():
    return PricingTable(
        prices={
            "CNY": {"monthly": Decimal("29.90"), "yearly": Decimal("299.00")},
            "USD": {"monthly": Decimal("4.99"), "yearly": Decimal("49.99")},
        },
        days={"monthly": 30, "yearly": 365},
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def lifecycle(uow_factory, gateways, pricing, notifier, clock):
    return OrderLifecycleService(uow_factory, gateways, pricing, notifier, clock=clock)


@pytest.fixture
def webhook_service(gateways, lifecycle):
    return WebhookIngestionService(gateways, lifecycle)


@pytest.fixture
def status_service(uow_factory, gateways, lifecycle, clock):
    return PaymentStatusService(uow_factory, gateways, lifecycle, clock=clock)


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def sign_sha256(key, message: str) -> str:
    """Base64 RSA-SHA256 PKCS#1 v1.5 signature, the scheme both wallets use."""
    signature = key.sign(message.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode("ascii")
