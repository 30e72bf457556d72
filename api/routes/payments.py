"""
Payments API routes.

Thin HTTP layer over the order lifecycle, status and webhook services. Webhook
responses are the provider's own acknowledgement format, not the unified
response envelope.
"""
from __future__ import annotations

import ipaddress

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from api.dependencies import (
    get_container,
    get_current_user_id,
    get_lifecycle_service,
    get_status_service,
    get_webhook_service,
)
from application.dtos.payments import CaptureRequest, CreateOrderRequest, WebhookAck
from application.services.order_lifecycle_service import OrderLifecycleService
from application.services.status_service import PaymentStatusService
from application.services.webhook_service import WebhookIngestionService
from core.logging_config import get_logger, get_security_logger
from core.response import success_response
from infrastructure.container import AppContainer


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)
security_logger = get_security_logger()

FORM_PROVIDERS = {"alipay"}


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


def _ip_permitted(remote_ip: str, allowlist: list[str]) -> bool:
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            continue
    return False


def webhook_source_ip(request: Request, trusted_proxies: list[str]) -> str:
    """Connection peer; X-Forwarded-For is consulted only when that peer is a trusted proxy.

    Hops are read right to left and the first one that is not itself a trusted
    proxy is the sender.
    """
    peer = request.client.host if request.client else ""
    if not trusted_proxies or not _ip_permitted(peer, trusted_proxies):
        return peer
    hops = [h.strip() for h in (request.headers.get("X-Forwarded-For") or "").split(",") if h.strip()]
    for hop in reversed(hops):
        if not _ip_permitted(hop, trusted_proxies):
            return hop
    return peer


def _render_ack(ack: WebhookAck) -> Response:
    if isinstance(ack.body, dict):
        return JSONResponse(status_code=ack.status_code, content=ack.body)
    if ack.media_type == "text/plain":
        return PlainTextResponse(ack.body, status_code=ack.status_code)
    return Response(content=ack.body, status_code=ack.status_code, media_type=ack.media_type)


@router.post("/orders", summary="Create membership order")
async def create_order(
    payload: CreateOrderRequest,
    user_id: str = Depends(get_current_user_id),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle_service),
):
    result = await lifecycle.create_order(user_id, payload.plan, payload.provider)
    return success_response(data=_dump(result), message="Order created")


@router.post("/orders/capture", summary="Capture an approved order on return")
async def capture_order(
    payload: CaptureRequest,
    user_id: str = Depends(get_current_user_id),
    status_service: PaymentStatusService = Depends(get_status_service),
):
    view = await status_service.capture(user_id, payload)
    return success_response(data=_dump(view), message="Order status")


@router.get("/orders", summary="List my orders")
async def list_orders(
    limit: int = Query(default=50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle_service),
):
    orders = await lifecycle.list_orders(user_id, limit=limit)
    return success_response(data=[_dump(o) for o in orders])


@router.get("/orders/{order_id}", summary="Order status")
async def get_order_status(
    order_id: str,
    sync: bool = Query(default=False, description="Ask the provider when the order is still pending"),
    user_id: str = Depends(get_current_user_id),
    status_service: PaymentStatusService = Depends(get_status_service),
):
    view = await status_service.get_status(order_id, user_id, sync=sync)
    return success_response(data=_dump(view), message="Order status")


@router.post("/orders/{order_id}/retry", summary="Re-issue the payment artifact for a pending order")
async def retry_order(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle_service),
):
    result = await lifecycle.resume_order(order_id, user_id)
    return success_response(data=_dump(result), message="Order resumed")


@router.post("/webhooks/{provider}", summary="Provider payment notification", include_in_schema=False)
async def payments_webhook(
    provider: str,
    request: Request,
    container: AppContainer = Depends(get_container),
    webhooks: WebhookIngestionService = Depends(get_webhook_service),
):
    provider = provider.lower()
    if provider not in container.gateways:
        logger.warning("webhook_unknown_provider", provider=provider)
        return PlainTextResponse("unknown payment provider", status_code=404)
    gateway = webhooks.gateway_for(provider)

    content_type = (request.headers.get("content-type") or "").lower()
    expected = "application/x-www-form-urlencoded" if provider in FORM_PROVIDERS else "application/json"
    if expected not in content_type:
        logger.warning("webhook_content_type_rejected", provider=provider, content_type=content_type)
        return _render_ack(gateway.failure_ack("unsupported content type"))

    webhook_cfg = container.payment_settings.webhook
    if webhook_cfg.ip_allowlist:
        remote_ip = webhook_source_ip(request, webhook_cfg.trusted_proxies or [])
        if not _ip_permitted(remote_ip, webhook_cfg.ip_allowlist):
            security_logger.warning("webhook_ip_rejected", provider=provider, remote_ip=remote_ip)
            ack = gateway.failure_ack("source address not allowed")
            return _render_ack(ack.model_copy(update={"status_code": 403}))

    body = await request.body()
    ack = await webhooks.handle(provider, dict(request.headers), body)
    return _render_ack(ack)
