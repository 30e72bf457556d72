"""
Alipay page-pay adapter using the official alipay-sdk-python.

Create renders the SDK's auto-submitting form. Asynchronous notifications are
form-encoded; their signature covers every non-empty parameter except ``sign``
and ``sign_type``, sorted by key and joined as ``k=v`` with ``&``.
"""
from __future__ import annotations

import asyncio
import json
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional
from urllib.parse import parse_qsl, quote

from alipay.aop.api.AlipayClientConfig import AlipayClientConfig
from alipay.aop.api.DefaultAlipayClient import DefaultAlipayClient
from alipay.aop.api.request.AlipayTradePagePayRequest import AlipayTradePagePayRequest
from alipay.aop.api.request.AlipayTradeQueryRequest import AlipayTradeQueryRequest
from alipay.aop.api.util.SignatureUtils import verify_with_rsa

from application.dtos.payments import RedirectArtifact, WebhookAck
from core.settings import PaymentSettings
from domain.payment.entity import PaymentOrder, PaymentProvider
from domain.payment.events import AlipayTradeNotice
from domain.payment.exceptions import PaymentProviderError, PaymentSignatureError
from infrastructure.external.payments.base import BasePaymentClient, read_key_material


def signing_string(params: Mapping[str, str]) -> str:
    return "&".join(
        f"{k}={params[k]}"
        for k in sorted(params)
        if k not in ("sign", "sign_type") and params[k] not in (None, "")
    )


def _decimal(value: Optional[str]) -> Optional[Decimal]:
    if not value:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise PaymentSignatureError("Invalid amount field", provider=PaymentProvider.ALIPAY.value)


class AlipayClient(BasePaymentClient):
    provider = PaymentProvider.ALIPAY

    def __init__(
        self,
        *,
        sdk: DefaultAlipayClient,
        app_id: str,
        alipay_public_key: str,
        notify_url: str,
        return_url: str,
        sign_type: str = "RSA2",
    ) -> None:
        super().__init__()
        self._client = sdk
        self._app_id = app_id
        self._public_key = alipay_public_key
        self._notify_url = notify_url
        self._return_url = return_url
        self._sign_type = sign_type

    @staticmethod
    def build_sdk(
        *, server_url: str, app_id: str, app_private_key: str, alipay_public_key: str, sign_type: str
    ) -> DefaultAlipayClient:
        alipay_client_config = AlipayClientConfig()
        alipay_client_config.server_url = server_url
        alipay_client_config.app_id = app_id
        alipay_client_config.app_private_key = app_private_key
        alipay_client_config.alipay_public_key = alipay_public_key
        alipay_client_config.sign_type = sign_type
        return DefaultAlipayClient(alipay_client_config=alipay_client_config)

    @classmethod
    def from_settings(cls, settings: PaymentSettings, *, notify_url: str, return_url: str) -> "AlipayClient":
        cfg = settings.alipay
        private_key = read_key_material("alipay", "private_key", cfg.private_key, cfg.private_key_path)
        public_key = read_key_material(
            "alipay", "alipay_public_key", cfg.alipay_public_key, cfg.alipay_public_key_path
        ).decode("utf-8")
        sdk = cls.build_sdk(
            server_url=cfg.sandbox_gateway if cfg.sandbox else cfg.gateway,
            app_id=cfg.app_id or "",
            app_private_key=private_key.decode("utf-8"),
            alipay_public_key=public_key,
            sign_type=cfg.sign_type,
        )
        return cls(
            sdk=sdk,
            app_id=cfg.app_id or "",
            alipay_public_key=public_key,
            notify_url=notify_url,
            return_url=return_url,
            sign_type=cfg.sign_type,
        )

    async def create(self, order: PaymentOrder) -> RedirectArtifact:
        passback = json.dumps(
            {"userId": order.user_id, "planType": order.billing_cycle.value, "days": order.billing_days},
            separators=(",", ":"),
        )
        request = AlipayTradePagePayRequest()
        request.notify_url = self._notify_url
        request.return_url = f"{self._return_url}?orderId={quote(order.order_id, safe='')}"
        request.biz_content = {
            "out_trade_no": order.order_id,
            "total_amount": f"{order.amount:.2f}",
            "subject": f"Membership {order.billing_cycle.value}",
            "product_code": "FAST_INSTANT_TRADE_PAY",
            "passback_params": quote(passback, safe=""),
        }
        try:
            form = await asyncio.to_thread(self._client.page_execute, request, http_method="POST")
        except Exception as exc:
            raise PaymentProviderError(str(exc), provider=self.provider.value) from exc
        self._log("alipay_page_pay_created", order_id=order.order_id)
        return RedirectArtifact(kind="form_html", payload=form)

    async def query(self, order: PaymentOrder) -> Optional[AlipayTradeNotice]:
        request = AlipayTradeQueryRequest()
        request.biz_content = {"out_trade_no": order.order_id}
        try:
            # response signature is checked by the SDK
            response_content = await asyncio.to_thread(self._client.execute, request)
            result = json.loads(response_content)
        except Exception as exc:
            raise PaymentProviderError(str(exc), provider=self.provider.value) from exc
        code = str(result.get("code", ""))
        if code == "40004" and result.get("sub_code") == "ACQ.TRADE_NOT_EXIST":
            return None
        if code != "10000":
            raise PaymentProviderError(
                result.get("sub_msg") or result.get("msg") or "Alipay query failed",
                provider=self.provider.value,
                provider_code=result.get("sub_code") or code,
            )
        return self._notice(result)

    async def verify(self, headers: Mapping[str, str], body: bytes) -> AlipayTradeNotice:
        try:
            params = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError:
            raise PaymentSignatureError("Notification body is not UTF-8", provider=self.provider.value)
        sign = params.get("sign")
        if not sign:
            raise PaymentSignatureError("Missing sign", provider=self.provider.value)
        if params.get("sign_type", self._sign_type) != self._sign_type:
            raise PaymentSignatureError(
                "Unexpected sign_type", provider=self.provider.value, details={"sign_type": params.get("sign_type")}
            )
        try:
            ok = verify_with_rsa(self._public_key, signing_string(params).encode("utf-8"), sign)
        except Exception:
            # rsa raises on mismatch instead of returning False
            ok = False
        if not ok:
            raise PaymentSignatureError("Notification signature mismatch", provider=self.provider.value)
        if params.get("app_id") != self._app_id:
            raise PaymentSignatureError(
                "app_id mismatch", provider=self.provider.value, details={"app_id": params.get("app_id")}
            )
        return self._notice(params, event_id=params.get("notify_id"))

    def _notice(self, fields: Mapping[str, str], *, event_id: Optional[str] = None) -> AlipayTradeNotice:
        return AlipayTradeNotice(
            provider=self.provider,
            order_id=fields.get("out_trade_no"),
            provider_transaction_id=fields.get("trade_no"),
            paid_amount=_decimal(fields.get("total_amount")),
            paid_currency="CNY",
            event_id=event_id,
            trade_status=fields.get("trade_status", ""),
            refund_fee=_decimal(fields.get("refund_fee")),
            raw=dict(fields),
        )

    def success_ack(self) -> WebhookAck:
        return WebhookAck(status_code=200, body="success", media_type="text/plain")

    def failure_ack(self, reason: str = "") -> WebhookAck:
        return WebhookAck(status_code=400, body="fail", media_type="text/plain")
