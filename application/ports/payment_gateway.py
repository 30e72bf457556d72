"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Mapping, Optional, Protocol, runtime_checkable

from application.dtos.payments import RedirectArtifact, WebhookAck
from domain.payment.entity import PaymentOrder, PaymentProvider
from domain.payment.events import VerifiedPayment
from domain.payment.exceptions import PaymentConfigError


@runtime_checkable
class PaymentGateway(Protocol):
    """One provider's signing, order creation and callback verification.

    ``verify`` raises PaymentSignatureError for anything it cannot authenticate.
    ``capture`` raises UnsupportedOperationError for providers without a capture step.
    """

    provider: PaymentProvider

    async def create(self, order: PaymentOrder) -> RedirectArtifact: ...

    async def verify(self, headers: Mapping[str, str], body: bytes) -> VerifiedPayment: ...

    async def query(self, order: PaymentOrder) -> Optional[VerifiedPayment]: ...

    async def capture(self, provider_order_ref: str) -> VerifiedPayment: ...

    def success_ack(self) -> WebhookAck: ...

    def failure_ack(self, reason: str = "") -> WebhookAck: ...

    async def aclose(self) -> None: ...


class GatewayRegistry:
    """Enabled gateways keyed by provider."""

    def __init__(self, gateways: Mapping[PaymentProvider, PaymentGateway] | None = None) -> None:
        self._gateways: dict[PaymentProvider, PaymentGateway] = dict(gateways or {})

    def register(self, gateway: PaymentGateway) -> None:
        self._gateways[PaymentProvider(gateway.provider)] = gateway

    def get(self, provider: PaymentProvider | str) -> PaymentGateway:
        key = PaymentProvider(provider)
        try:
            return self._gateways[key]
        except KeyError:
            raise PaymentConfigError(f"Payment provider {key.value} is not configured", provider=key.value)

    def __contains__(self, provider: object) -> bool:
        try:
            return PaymentProvider(provider) in self._gateways
        except ValueError:
            return False

    @property
    def providers(self) -> list[PaymentProvider]:
        return list(self._gateways)

    async def aclose(self) -> None:
        for gateway in self._gateways.values():
            await gateway.aclose()
