"""
Base payment client implementing shared concerns: http, retry, logging, errors.

Concrete providers subclass and implement signing, creation and verification.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from application.dtos.payments import WebhookAck
from core.logging_config import get_logger
from domain.payment.entity import PaymentOrder, PaymentProvider
from domain.payment.events import VerifiedPayment
from domain.payment.exceptions import (
    PaymentConfigError,
    PaymentProviderError,
    PaymentRecoverableError,
    UnsupportedOperationError,
)


logger = get_logger(__name__)


def read_key_material(provider: str, name: str, inline: Optional[str], path: Optional[str]) -> bytes:
    """PEM text given inline wins over a path."""
    if inline:
        return inline.replace("\\n", "\n").encode("utf-8")
    if path:
        p = Path(path)
        if not p.is_file():
            raise PaymentConfigError(f"{name} file not found: {path}", provider=provider, missing=[name])
        return p.read_bytes()
    raise PaymentConfigError(f"{name} not configured", provider=provider, missing=[name])


class BasePaymentClient:
    provider: PaymentProvider

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 1.0, "read": 3.0, "write": 3.0, "total": 5.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            timeout=self._timeouts_cfg["total"],
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        try:
            yield self._client
        finally:
            # Keep open for reuse; explicit aclose() will close.
            ...

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send with transport retries; maps transport failures and 429/5xx to recoverable errors."""
        async def _do() -> httpx.Response:
            async with self.client() as http:
                return await http.request(method, url, **kwargs)

        try:
            resp = await self._retry(_do)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise PaymentRecoverableError(
                f"{self.provider.value} request failed: {exc}", provider=self.provider.value
            ) from exc
        if resp.status_code == 429 or resp.status_code >= 500:
            raise PaymentRecoverableError(
                f"{self.provider.value} returned HTTP {resp.status_code}",
                provider=self.provider.value,
                provider_code=str(resp.status_code),
            )
        return resp

    def _raise_for_body(self, resp: httpx.Response, *, code_field: str = "code") -> None:
        if resp.status_code < 400:
            return
        try:
            body = resp.json()
        except ValueError:
            body = {}
        code = str(body.get(code_field) or body.get("name") or resp.status_code)
        message = body.get("message") or resp.text[:200]
        raise PaymentProviderError(
            f"{self.provider.value} error {code}: {message}",
            provider=self.provider.value,
            provider_code=code,
        )

    async def capture(self, provider_order_ref: str) -> VerifiedPayment:
        raise UnsupportedOperationError("capture", provider=self.provider.value)

    async def query(self, order: PaymentOrder) -> Optional[VerifiedPayment]:
        return None

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider.value,
            **kwargs,
        )


def json_ack(body: dict, status_code: int = 200) -> WebhookAck:
    return WebhookAck(status_code=status_code, body=body, media_type="application/json")


def lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}
