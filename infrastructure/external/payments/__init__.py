"""
Factory for payment gateway clients.

Only providers listed in ``enabled_providers`` are built; each must carry a
complete credential block or startup fails with PaymentConfigError.
"""
from __future__ import annotations

from typing import Optional

import httpx

from application.ports.payment_gateway import GatewayRegistry, PaymentGateway
from core.logging_config import get_logger
from core.settings import PaymentSettings
from domain.payment.entity import PaymentProvider
from domain.payment.exceptions import PaymentConfigError

API_PREFIX = "/api/v1"

logger = get_logger(__name__)


def webhook_url(settings: PaymentSettings, provider: PaymentProvider) -> str:
    return f"{settings.public_base_url.rstrip('/')}{API_PREFIX}/payments/webhooks/{provider.value}"


def build_gateway(
    provider: PaymentProvider | str,
    settings: PaymentSettings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PaymentGateway:
    provider = PaymentProvider(provider)
    missing = settings.missing_credentials(provider.value)
    if missing:
        raise PaymentConfigError(
            f"Payment provider {provider.value} is enabled but not configured",
            provider=provider.value,
            missing=missing,
        )
    result_url = f"{settings.frontend_base_url.rstrip('/')}/payment/result"
    cancel_url = f"{settings.frontend_base_url.rstrip('/')}/payment/cancel"
    if provider is PaymentProvider.WECHAT:
        from .wechatpay_client import WechatPayClient
        return WechatPayClient.from_settings(settings, notify_url=webhook_url(settings, provider))
    if provider is PaymentProvider.ALIPAY:
        from .alipay_client import AlipayClient
        return AlipayClient.from_settings(settings, notify_url=webhook_url(settings, provider), return_url=result_url)
    if provider is PaymentProvider.STRIPE:
        from .stripe_client import StripeClient
        return StripeClient.from_settings(settings, success_url=result_url, cancel_url=cancel_url)
    from .paypal_client import PayPalClient
    return PayPalClient.from_settings(settings, return_url=result_url, cancel_url=cancel_url, transport=transport)


def build_gateway_registry(
    settings: PaymentSettings, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> GatewayRegistry:
    registry = GatewayRegistry()
    for name in settings.enabled_providers:
        try:
            provider = PaymentProvider(name.lower())
        except ValueError:
            raise PaymentConfigError(f"Unknown payment provider: {name}", provider=name)
        registry.register(build_gateway(provider, settings, transport=transport))
        logger.info("payment_gateway_enabled", provider=provider.value)
    return registry
