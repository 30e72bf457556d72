import pytest
from cryptography.hazmat.primitives import serialization

from core.settings import PaymentSettings
from domain.payment.entity import PaymentProvider
from domain.payment.exceptions import PaymentConfigError
from infrastructure.external.payments import build_gateway, build_gateway_registry, webhook_url
from infrastructure.external.payments.alipay_client import AlipayClient
from infrastructure.external.payments.base import read_key_material
from infrastructure.external.payments.paypal_client import PayPalClient


def _pem_pair(key):
    private = key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    ).decode()
    public = key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()
    return private, public


def test_no_enabled_providers_builds_empty_registry():
    assert build_gateway_registry(PaymentSettings(enabled_providers=[])).providers == []


def test_enabled_provider_without_credentials_fails_startup():
    settings = PaymentSettings(enabled_providers=["stripe"], stripe={"secret_key": "sk_test"})
    with pytest.raises(PaymentConfigError) as exc:
        build_gateway_registry(settings)
    assert exc.value.details["missing"] == ["webhook_secret"]


def test_unknown_provider_name():
    with pytest.raises(PaymentConfigError):
        build_gateway_registry(PaymentSettings(enabled_providers=["applepay"]))


def test_key_material_inline_or_path(tmp_path):
    assert read_key_material("alipay", "private_key", "a\\nb", None) == b"a\nb"
    pem = tmp_path / "key.pem"
    pem.write_bytes(b"PEM")
    assert read_key_material("alipay", "private_key", None, str(pem)) == b"PEM"
    with pytest.raises(PaymentConfigError):
        read_key_material("alipay", "private_key", None, str(tmp_path / "missing.pem"))


def test_wechat_requires_platform_certificates(tmp_path, rsa_key):
    private, _ = _pem_pair(rsa_key)
    settings = PaymentSettings(
        enabled_providers=["wechat"],
        wechat={
            "app_id": "wx123",
            "mch_id": "1900000001",
            "mch_cert_serial_no": "5157F09EFDC096DE15EBE81A47057A7232F1B8E1",
            "private_key": private,
            "platform_cert_dir": str(tmp_path),
            "api_v3_key": "0123456789abcdef0123456789abcdef",
        },
    )
    with pytest.raises(PaymentConfigError) as exc:
        build_gateway(PaymentProvider.WECHAT, settings)
    assert exc.value.details["missing"] == ["platform_cert_dir"]


@pytest.mark.asyncio
async def test_registry_builds_configured_clients(rsa_key, other_rsa_key):
    private = rsa_key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.TraditionalOpenSSL, serialization.NoEncryption()
    ).decode()
    _, alipay_public = _pem_pair(other_rsa_key)
    settings = PaymentSettings(
        enabled_providers=["alipay", "PayPal"],
        public_base_url="https://pay.example.com/",
        alipay={"app_id": "2021000000000000", "private_key": private, "alipay_public_key": alipay_public},
        paypal={"client_id": "id", "client_secret": "secret", "webhook_id": "WH"},
    )
    registry = build_gateway_registry(settings)
    try:
        assert set(registry.providers) == {PaymentProvider.ALIPAY, PaymentProvider.PAYPAL}
        assert isinstance(registry.get("alipay"), AlipayClient)
        assert isinstance(registry.get(PaymentProvider.PAYPAL), PayPalClient)
        assert "stripe" not in registry
        with pytest.raises(PaymentConfigError):
            registry.get("stripe")
    finally:
        await registry.aclose()

    assert webhook_url(settings, PaymentProvider.ALIPAY) == (
        "https://pay.example.com/api/v1/payments/webhooks/alipay"
    )
