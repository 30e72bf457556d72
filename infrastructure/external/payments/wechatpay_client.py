"""
WeChat Pay v3 Native (QR code) adapter using the community `wechatpayv3` SDK.

Features used:
- Request signing with the merchant private key (v3)
- Platform certificate verification and callback resource decryption (AES-256-GCM)
- NATIVE flow and trade query by ``out_trade_no``

The SDK is synchronous; calls run in a worker thread. It does not bound the
callback timestamp, so freshness is checked here before verification.
"""
from __future__ import annotations

import asyncio
import json
import os
import time
from decimal import Decimal
from pathlib import Path
from typing import Callable, Mapping, Optional

from wechatpayv3 import WeChatPay, WeChatPayType

from application.dtos.payments import RedirectArtifact, WebhookAck
from core.settings import PaymentSettings
from domain.payment.entity import PaymentOrder, PaymentProvider
from domain.payment.events import (
    IgnoredNotification,
    VerifiedPayment,
    WechatRefundNotice,
    WechatTransactionNotice,
)
from domain.payment.exceptions import (
    PaymentConfigError,
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
)
from infrastructure.external.payments.base import (
    BasePaymentClient,
    json_ack,
    lower_headers,
    read_key_material,
)

CALLBACK_HEADERS = ("Wechatpay-Timestamp", "Wechatpay-Nonce", "Wechatpay-Signature", "Wechatpay-Serial")


class WechatPayClient(BasePaymentClient):
    provider = PaymentProvider.WECHAT

    def __init__(
        self,
        *,
        sdk: WeChatPay,
        mch_id: str,
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__()
        self._wx = sdk
        self._mch_id = mch_id
        self._tolerance = tolerance_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: PaymentSettings, *, notify_url: str) -> "WechatPayClient":
        cfg = settings.wechat
        private_key = read_key_material("wechat", "private_key", cfg.private_key, cfg.private_key_path)
        cert_dir = cfg.platform_cert_dir or ""
        if not any(Path(cert_dir).glob("*.pem")):
            raise PaymentConfigError(
                "No platform certificates found", provider="wechat", missing=["platform_cert_dir"]
            )
        if len((cfg.api_v3_key or "").encode("utf-8")) != 32:
            raise PaymentConfigError("api_v3_key must be 32 bytes", provider="wechat")
        try:
            sdk = WeChatPay(
                wechatpay_type=WeChatPayType.NATIVE,
                mchid=cfg.mch_id,
                private_key=private_key.decode("utf-8"),
                cert_serial_no=cfg.mch_cert_serial_no,
                apiv3_key=cfg.api_v3_key,
                appid=cfg.app_id,
                notify_url=notify_url,
                # SDK joins the directory and file name by concatenation
                cert_dir=os.path.join(cert_dir, ""),
                timeout=(settings.timeouts.connect, settings.timeouts.read),
            )
        except Exception as exc:
            raise PaymentConfigError(f"WeChat Pay SDK init failed: {exc}", provider="wechat") from exc
        return cls(sdk=sdk, mch_id=cfg.mch_id or "", tolerance_seconds=settings.webhook.tolerance_seconds)

    def _check(self, code: int, message: str) -> dict:
        """(status, text) pair returned by every SDK request."""
        try:
            body = json.loads(message) if message else {}
        except ValueError:
            body = {}
        if 200 <= code < 300:
            return body
        provider_code = str(body.get("code") or code)
        if code == 429 or code >= 500:
            raise PaymentRecoverableError(
                f"wechat returned HTTP {code}", provider=self.provider.value, provider_code=provider_code
            )
        raise PaymentProviderError(
            f"wechat error {provider_code}: {body.get('message') or message[:200]}",
            provider=self.provider.value,
            provider_code=provider_code,
        )

    async def create(self, order: PaymentOrder) -> RedirectArtifact:
        attach = json.dumps(
            {"userId": order.user_id, "planType": order.billing_cycle.value, "days": order.billing_days},
            separators=(",", ":"),
        )
        try:
            code, message = await asyncio.to_thread(
                self._wx.pay,
                description=f"Membership {order.billing_cycle.value}",
                out_trade_no=order.order_id,
                amount={"total": int(order.amount), "currency": order.currency},
                attach=attach,
                pay_type=WeChatPayType.NATIVE,
            )
            code_url = self._check(code, message).get("code_url")
            if not code_url:
                raise PaymentProviderError("Missing code_url in response", provider=self.provider.value)
            self._log("wechat_native_created", order_id=order.order_id)
            return RedirectArtifact(kind="qr_code", payload=code_url)
        except PaymentProviderError:
            raise
        except Exception as exc:
            raise PaymentProviderError(str(exc), provider=self.provider.value) from exc

    async def query(self, order: PaymentOrder) -> Optional[WechatTransactionNotice]:
        try:
            code, message = await asyncio.to_thread(self._wx.query, out_trade_no=order.order_id)
        except Exception as exc:
            raise PaymentRecoverableError(str(exc), provider=self.provider.value) from exc
        if code == 404:
            return None
        return self._notice(self._check(code, message))

    async def verify(self, headers: Mapping[str, str], body: bytes) -> VerifiedPayment:
        h = lower_headers(headers)
        canonical = {name: h.get(name.lower()) for name in CALLBACK_HEADERS}
        if not all(canonical.values()):
            raise PaymentSignatureError("Missing Wechatpay signature headers", provider=self.provider.value)
        try:
            skew = abs(self._clock() - int(canonical["Wechatpay-Timestamp"]))
        except ValueError:
            raise PaymentSignatureError("Invalid Wechatpay-Timestamp", provider=self.provider.value)
        if skew > self._tolerance:
            raise PaymentSignatureError(
                "Callback timestamp outside tolerance", provider=self.provider.value, details={"skew": skew}
            )
        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError:
            raise PaymentSignatureError("Callback body is not UTF-8", provider=self.provider.value)

        try:
            data = await asyncio.to_thread(self._wx.callback, canonical, text)
        except Exception as exc:
            raise PaymentSignatureError(
                f"Callback resource decryption failed: {type(exc).__name__}", provider=self.provider.value
            ) from exc
        if not data:
            raise PaymentSignatureError(
                "Callback signature or resource decryption failed",
                provider=self.provider.value,
                details={"serial": canonical["Wechatpay-Serial"]},
            )

        resource = data.get("resource")
        if not isinstance(resource, dict):
            raise PaymentSignatureError("Malformed callback resource", provider=self.provider.value)
        if resource.get("mchid") and resource["mchid"] != self._mch_id:
            raise PaymentSignatureError("mchid mismatch", provider=self.provider.value)

        event_type = str(data.get("event_type") or "")
        event_id = data.get("id")
        if event_type.startswith("REFUND."):
            return self._refund_notice(resource, event_id=event_id)
        if event_type.startswith("TRANSACTION.") or "trade_state" in resource:
            return self._notice(resource, event_id=event_id)
        return IgnoredNotification(
            provider=self.provider, order_id=resource.get("out_trade_no"), event_id=event_id, event_type=event_type
        )

    def _notice(self, transaction: dict, *, event_id: Optional[str] = None) -> WechatTransactionNotice:
        amount = transaction.get("amount") or {}
        total = amount.get("total", amount.get("payer_total"))
        return WechatTransactionNotice(
            provider=self.provider,
            order_id=transaction.get("out_trade_no"),
            provider_transaction_id=transaction.get("transaction_id"),
            paid_amount=Decimal(str(total)) if total is not None else None,
            paid_currency=amount.get("currency") or "CNY",
            event_id=event_id,
            trade_state=transaction.get("trade_state", ""),
            raw=transaction,
        )

    def _refund_notice(self, refund: dict, *, event_id: Optional[str]) -> WechatRefundNotice:
        amount = refund.get("amount") or {}
        return WechatRefundNotice(
            provider=self.provider,
            order_id=refund.get("out_trade_no"),
            provider_transaction_id=refund.get("transaction_id"),
            paid_amount=Decimal(str(amount["refund"])) if amount.get("refund") is not None else None,
            paid_currency=amount.get("currency") or "CNY",
            event_id=event_id,
            refund_status=refund.get("refund_status", ""),
            raw=refund,
        )

    def success_ack(self) -> WebhookAck:
        return json_ack({"code": "SUCCESS", "message": "OK"})

    def failure_ack(self, reason: str = "") -> WebhookAck:
        return json_ack({"code": "FAIL", "message": reason or "FAIL"}, status_code=400)
