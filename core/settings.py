"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Environment variables use the ``PAYMENT__`` prefix, e.g.
``PAYMENT__WECHAT__MCH_ID`` or ``PAYMENT__ENABLED_PROVIDERS='["wechat","stripe"]'``.
Key material may be given inline (PEM text) or as a file path.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 3.0
    write: float = 3.0
    total: float = 5.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks
    # Proxies whose X-Forwarded-For is believed; otherwise the connection peer is checked
    trusted_proxies: list[str] | None = None


class AlipaySettings(BaseModel):
    app_id: Optional[str] = None
    private_key: Optional[str] = None
    private_key_path: Optional[str] = None
    alipay_public_key: Optional[str] = None
    alipay_public_key_path: Optional[str] = None
    gateway: str = "https://openapi.alipay.com/gateway.do"
    sandbox_gateway: str = "https://openapi-sandbox.dl.alipaydev.com/gateway.do"
    sandbox: bool = False
    sign_type: str = "RSA2"


class WechatSettings(BaseModel):
    app_id: Optional[str] = None
    mch_id: Optional[str] = None
    mch_cert_serial_no: Optional[str] = None
    private_key: Optional[str] = None
    private_key_path: Optional[str] = None
    platform_cert_dir: Optional[str] = None  # *.pem platform certificates keyed by serial
    api_v3_key: Optional[str] = None


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None


class PayPalSettings(BaseModel):
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    webhook_id: Optional[str] = None
    sandbox: bool = True

    @property
    def base_url(self) -> str:
        return "https://api-m.sandbox.paypal.com" if self.sandbox else "https://api-m.paypal.com"


class PricingSettings(BaseModel):
    # Major units per currency and billing cycle
    prices: dict[str, dict[str, Decimal]] = Field(
        default_factory=lambda: {
            "CNY": {"monthly": Decimal("29.90"), "yearly": Decimal("299.00")},
            "USD": {"monthly": Decimal("4.99"), "yearly": Decimal("49.99")},
        }
    )
    days: dict[str, int] = Field(default_factory=lambda: {"monthly": 30, "yearly": 365})


class ReconcileSettings(BaseModel):
    pending_min_age_seconds: int = 120
    batch_size: int = 100
    interval_seconds: int = 300


# Credentials each enabled provider must carry; a key satisfied by either inline or *_path form
_REQUIRED = {
    "wechat": ["app_id", "mch_id", "mch_cert_serial_no", ("private_key", "private_key_path"),
               "platform_cert_dir", "api_v3_key"],
    "alipay": ["app_id", ("private_key", "private_key_path"),
               ("alipay_public_key", "alipay_public_key_path")],
    "stripe": ["secret_key", "webhook_secret"],
    "paypal": ["client_id", "client_secret", "webhook_id"],
}


class PaymentSettings(BaseSettings):
    enabled_providers: list[str] = Field(default_factory=list)
    public_base_url: str = "http://localhost:8000"
    frontend_base_url: str = "http://localhost:3000"
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    pricing: PricingSettings = Field(default_factory=PricingSettings)
    reconcile: ReconcileSettings = Field(default_factory=ReconcileSettings)

    alipay: AlipaySettings = Field(default_factory=AlipaySettings)
    wechat: WechatSettings = Field(default_factory=WechatSettings)
    stripe: StripeSettings = Field(default_factory=StripeSettings)
    paypal: PayPalSettings = Field(default_factory=PayPalSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    def missing_credentials(self, provider: str) -> list[str]:
        block = getattr(self, provider)
        missing: list[str] = []
        for req in _REQUIRED[provider]:
            names = req if isinstance(req, tuple) else (req,)
            if not any(getattr(block, n) for n in names):
                missing.append("|".join(names))
        return missing


payment_settings = PaymentSettings()
