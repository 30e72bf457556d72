"""
PayPal Orders v2 adapter.

- Bearer tokens come from the client-credentials grant and are cached until
  shortly before expiry. Concurrent refreshes are allowed to race; the last
  token wins and every fetched token is valid.
- Orders are created with intent CAPTURE; funds move on ``capture``, which is
  idempotent: ``ORDER_ALREADY_CAPTURED`` is answered by reading the order back.
- Webhook authenticity is decided remotely by
  ``/v1/notifications/verify-webhook-signature``.
"""
from __future__ import annotations

import json
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional
from urllib.parse import quote

import httpx

from application.dtos.payments import RedirectArtifact, WebhookAck
from core.settings import PaymentSettings
from domain.payment.entity import PaymentOrder, PaymentProvider
from domain.payment.events import (
    IgnoredNotification,
    PayPalCaptureCompleted,
    PayPalOrderApproved,
    PayPalRefundNotice,
    VerifiedPayment,
)
from domain.payment.exceptions import PaymentProviderError, PaymentSignatureError
from infrastructure.external.payments.base import BasePaymentClient, json_ack, lower_headers

TRANSMISSION_HEADERS = {
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
    "transmission_sig": "paypal-transmission-sig",
    "cert_url": "paypal-cert-url",
    "auth_algo": "paypal-auth-algo",
}

CAPTURE_EVENTS = {"PAYMENT.CAPTURE.COMPLETED", "PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"}
REFUND_EVENTS = {"PAYMENT.CAPTURE.REFUNDED", "PAYMENT.CAPTURE.REVERSED"}


def _decimal(value: Any) -> Optional[Decimal]:
    try:
        return Decimal(str(value)) if value is not None else None
    except InvalidOperation:
        return None


def _custom(custom_id: Optional[str]) -> dict:
    if not custom_id:
        return {}
    try:
        data = json.loads(custom_id)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class PayPalClient(BasePaymentClient):
    provider = PaymentProvider.PAYPAL

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        webhook_id: str,
        base_url: str,
        return_url: str,
        cancel_url: str,
        token_skew_seconds: int = 60,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(timeouts=timeouts, retry=retry, transport=transport)
        self._client_id = client_id
        self._client_secret = client_secret
        self._webhook_id = webhook_id
        self._base_url = base_url.rstrip("/")
        self._return_url = return_url
        self._cancel_url = cancel_url
        self._skew = token_skew_seconds
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(
        cls,
        settings: PaymentSettings,
        *,
        return_url: str,
        cancel_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "PayPalClient":
        cfg = settings.paypal
        return cls(
            client_id=cfg.client_id or "",
            client_secret=cfg.client_secret or "",
            webhook_id=cfg.webhook_id or "",
            base_url=cfg.base_url,
            return_url=return_url,
            cancel_url=cancel_url,
            timeouts=settings.timeouts.model_dump(),
            retry={"max": settings.retry.max, "base": settings.retry.base_backoff},
            transport=transport,
        )

    async def _access_token(self) -> str:
        if self._token and self._clock() < self._token_expires_at:
            return self._token
        resp = await self._send(
            "POST",
            f"{self._base_url}/v1/oauth2/token",
            auth=(self._client_id, self._client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        self._raise_for_body(resp, code_field="error")
        data = resp.json()
        expires_in = int(data.get("expires_in", 3600))
        self._token = data["access_token"]
        self._token_expires_at = self._clock() + max(expires_in - self._skew, 0)
        self._log("paypal_token_refreshed", expires_in=expires_in)
        return self._token

    async def _api(
        self, method: str, path: str, *, payload: Optional[dict] = None, headers: Optional[dict] = None
    ) -> httpx.Response:
        for attempt in range(2):
            token = await self._access_token()
            all_headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
            all_headers.update(headers or {})
            resp = await self._send(method, f"{self._base_url}{path}", json=payload, headers=all_headers)
            if resp.status_code == 401 and attempt == 0:
                # token revoked or expired early
                self._token = None
                continue
            return resp
        return resp

    async def create(self, order: PaymentOrder) -> RedirectArtifact:
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": order.order_id,
                    "invoice_id": order.order_id,
                    "description": f"Membership ({order.billing_cycle.value})",
                    "custom_id": json.dumps(
                        {"userId": order.user_id, "planType": order.billing_cycle.value, "days": order.billing_days},
                        separators=(",", ":"),
                    ),
                    "amount": {"currency_code": order.currency, "value": f"{order.amount:.2f}"},
                }
            ],
            "application_context": {
                "return_url": f"{self._return_url}?orderId={quote(order.order_id, safe='')}",
                "cancel_url": f"{self._cancel_url}?orderId={quote(order.order_id, safe='')}",
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
            },
        }
        try:
            resp = await self._api(
                "POST",
                "/v2/checkout/orders",
                payload=payload,
                headers={"PayPal-Request-Id": f"create-{order.order_id}"},
            )
            self._raise_for_body(resp, code_field="name")
            body = resp.json()
            approve = next(
                (link["href"] for link in body.get("links", []) if link.get("rel") in ("approve", "payer-action")),
                None,
            )
            if not approve:
                raise PaymentProviderError("Missing approve link", provider=self.provider.value)
            self._log("paypal_order_created", order_id=order.order_id, paypal_order_id=body["id"])
            return RedirectArtifact(kind="redirect_url", payload=approve, provider_order_ref=body["id"])
        except PaymentProviderError:
            raise
        except Exception as exc:
            raise PaymentProviderError(str(exc), provider=self.provider.value) from exc

    async def capture(self, provider_order_ref: str) -> VerifiedPayment:
        ref = quote(provider_order_ref, safe="")
        resp = await self._api(
            "POST",
            f"/v2/checkout/orders/{ref}/capture",
            payload={},
            headers={"PayPal-Request-Id": f"capture-{provider_order_ref}", "Content-Type": "application/json"},
        )
        if resp.status_code == 422 and self._issue(resp) == "ORDER_ALREADY_CAPTURED":
            self._log("paypal_order_already_captured", paypal_order_id=provider_order_ref)
            resp = await self._api("GET", f"/v2/checkout/orders/{ref}")
        self._raise_for_body(resp, code_field="name")
        return self._from_order(resp.json())

    async def query(self, order: PaymentOrder) -> Optional[VerifiedPayment]:
        if not order.provider_order_ref:
            return None
        resp = await self._api("GET", f"/v2/checkout/orders/{quote(order.provider_order_ref, safe='')}")
        if resp.status_code == 404:
            return None
        self._raise_for_body(resp, code_field="name")
        return self._from_order(resp.json())

    @staticmethod
    def _issue(resp: httpx.Response) -> Optional[str]:
        try:
            details = resp.json().get("details") or []
        except ValueError:
            return None
        return details[0].get("issue") if details else None

    def _from_order(self, body: dict, *, event_id: Optional[str] = None) -> VerifiedPayment:
        unit = (body.get("purchase_units") or [{}])[0]
        order_id = unit.get("invoice_id") or unit.get("reference_id") or _custom(unit.get("custom_id")).get("orderId")
        captures = ((unit.get("payments") or {}).get("captures")) or []
        if body.get("status") == "APPROVED" and not captures:
            return PayPalOrderApproved(
                provider=self.provider,
                order_id=order_id,
                event_id=event_id,
                provider_order_ref=body.get("id"),
                raw=body,
            )
        capture = captures[0] if captures else {}
        amount = capture.get("amount") or unit.get("amount") or {}
        return PayPalCaptureCompleted(
            provider=self.provider,
            order_id=order_id,
            provider_transaction_id=capture.get("id"),
            paid_amount=_decimal(amount.get("value")),
            paid_currency=amount.get("currency_code"),
            event_id=event_id,
            provider_order_ref=body.get("id"),
            capture_status=capture.get("status", ""),
            raw=body,
        )

    def _from_capture(self, capture: dict, *, event_id: Optional[str]) -> PayPalCaptureCompleted:
        amount = capture.get("amount") or {}
        related = ((capture.get("supplementary_data") or {}).get("related_ids")) or {}
        return PayPalCaptureCompleted(
            provider=self.provider,
            order_id=capture.get("invoice_id") or _custom(capture.get("custom_id")).get("orderId"),
            provider_transaction_id=capture.get("id"),
            paid_amount=_decimal(amount.get("value")),
            paid_currency=amount.get("currency_code"),
            event_id=event_id,
            provider_order_ref=related.get("order_id"),
            capture_status=capture.get("status", ""),
            raw=capture,
        )

    def _from_refund(self, refund: dict, *, event_id: Optional[str]) -> PayPalRefundNotice:
        # refunds inherit invoice_id and custom_id from the refunded capture
        amount = refund.get("amount") or {}
        related = ((refund.get("supplementary_data") or {}).get("related_ids")) or {}
        return PayPalRefundNotice(
            provider=self.provider,
            order_id=refund.get("invoice_id") or _custom(refund.get("custom_id")).get("orderId"),
            provider_transaction_id=refund.get("id"),
            paid_amount=_decimal(amount.get("value")),
            paid_currency=amount.get("currency_code"),
            event_id=event_id,
            provider_order_ref=related.get("order_id"),
            refund_status=refund.get("status", ""),
            raw=refund,
        )

    async def verify(self, headers: Mapping[str, str], body: bytes) -> VerifiedPayment:
        h = lower_headers(headers)
        transmission = {field: h.get(header) for field, header in TRANSMISSION_HEADERS.items()}
        missing = [TRANSMISSION_HEADERS[f] for f, v in transmission.items() if not v]
        if missing:
            raise PaymentSignatureError(
                "Missing PayPal transmission headers", provider=self.provider.value, details={"missing": missing}
            )
        try:
            event = json.loads(body)
        except ValueError as exc:
            raise PaymentSignatureError("Invalid JSON body", provider=self.provider.value) from exc

        resp = await self._api(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            payload={**transmission, "webhook_id": self._webhook_id, "webhook_event": event},
            headers={"Content-Type": "application/json"},
        )
        self._raise_for_body(resp, code_field="name")
        if resp.json().get("verification_status") != "SUCCESS":
            raise PaymentSignatureError(
                "PayPal rejected webhook signature",
                provider=self.provider.value,
                details={"transmission_id": transmission["transmission_id"]},
            )

        event_type = event.get("event_type", "")
        event_id = event.get("id") or transmission["transmission_id"]
        resource = event.get("resource") or {}
        if event_type == "CHECKOUT.ORDER.APPROVED":
            verified = self._from_order(resource, event_id=event_id)
            if isinstance(verified, PayPalCaptureCompleted) and not verified.succeeded:
                # approved order that already carries a non-final capture
                return PayPalOrderApproved(
                    provider=self.provider,
                    order_id=verified.order_id,
                    event_id=event_id,
                    provider_order_ref=verified.provider_order_ref,
                    raw=resource,
                )
            return verified
        if event_type in CAPTURE_EVENTS:
            return self._from_capture(resource, event_id=event_id)
        if event_type in REFUND_EVENTS:
            return self._from_refund(resource, event_id=event_id)
        return IgnoredNotification(provider=self.provider, order_id=None, event_id=event_id, event_type=event_type)

    def success_ack(self) -> WebhookAck:
        return json_ack({"received": True})

    def failure_ack(self, reason: str = "") -> WebhookAck:
        return json_ack({"received": False, "error": reason}, status_code=400)
