"""
Webhook ingestion: verify, deduplicate, transition, acknowledge.

Every outcome maps to one of the provider's own acknowledgements. Only a
signature failure or an unexpected processing error asks the provider to
retry; "already handled" outcomes are acknowledged as success.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Mapping

from application.dtos.payments import WebhookAck
from application.ports.payment_gateway import GatewayRegistry, PaymentGateway
from application.services.order_lifecycle_service import OrderLifecycleService
from core.logging_config import get_logger, get_security_logger
from domain.payment.entity import PaymentProvider
from domain.payment.events import VerifiedPayment
from domain.payment.exceptions import (
    AmountMismatchError,
    DuplicateEventError,
    PaymentSignatureError,
)


logger = get_logger(__name__)
security_logger = get_security_logger()


class WebhookIngestionService:
    def __init__(self, gateways: GatewayRegistry, lifecycle: OrderLifecycleService) -> None:
        self._gateways = gateways
        self._lifecycle = lifecycle

    def gateway_for(self, provider: PaymentProvider | str) -> PaymentGateway:
        return self._gateways.get(provider)

    async def handle(self, provider: PaymentProvider | str, headers: Mapping[str, str], body: bytes) -> WebhookAck:
        gateway = self._gateways.get(provider)
        try:
            verified = await gateway.verify(headers, body)
        except PaymentSignatureError as exc:
            security_logger.warning(
                "webhook_signature_rejected",
                provider=gateway.provider.value,
                reason=exc.message,
                details=exc.details,
            )
            return gateway.failure_ack("signature verification failed")
        except Exception:
            logger.error("webhook_verification_error", provider=gateway.provider.value, exc_info=True)
            return gateway.failure_ack("verification unavailable").model_copy(update={"status_code": 500})

        logger.info(
            "webhook_verified",
            provider=gateway.provider.value,
            order_id=verified.order_id,
            event_id=verified.event_id,
            kind=type(verified).__name__,
        )
        try:
            await self._dispatch(gateway, verified)
        except DuplicateEventError as exc:
            logger.info("webhook_duplicate_event", provider=exc.provider, event_id=exc.event_id)
        except AmountMismatchError:
            # flagged for manual review; redelivery cannot fix it
            pass
        except Exception:
            logger.error(
                "webhook_processing_failed",
                provider=gateway.provider.value,
                order_id=verified.order_id,
                event_id=verified.event_id,
                exc_info=True,
            )
            ack = gateway.failure_ack("processing error")
            return ack.model_copy(update={"status_code": 500})
        return gateway.success_ack()

    async def _dispatch(self, gateway: PaymentGateway, verified: VerifiedPayment) -> None:
        if verified.requires_capture:
            if verified.event_id and await self._lifecycle.event_recorded(verified.provider, verified.event_id):
                raise DuplicateEventError(verified.provider.value, verified.event_id)
            captured = await gateway.capture(verified.provider_order_ref or "")
            # keep the delivering event's id so redelivery of the approval dedupes
            if verified.event_id:
                captured = _with_event_id(captured, verified.event_id)
            if not captured.succeeded:
                logger.info("webhook_capture_not_completed", provider_order_ref=verified.provider_order_ref)
                return
            result = await self._lifecycle.apply_verified(captured, record_event=True)
            logger.info("webhook_capture_applied", order_id=captured.order_id, applied=result.applied)
        elif verified.refunded:
            changed = await self._lifecycle.apply_refund(verified, record_event=True)
            logger.info("webhook_refund", order_id=verified.order_id, applied=changed)
        elif verified.succeeded:
            result = await self._lifecycle.apply_verified(verified, record_event=True)
            logger.info("webhook_transition", order_id=verified.order_id, applied=result.applied)
        elif verified.failed and verified.order_id:
            await self._lifecycle.mark_failed(verified.order_id)
        else:
            logger.info(
                "webhook_ignored",
                provider=verified.provider.value,
                order_id=verified.order_id,
                kind=type(verified).__name__,
            )


def _with_event_id(verified: VerifiedPayment, event_id: str) -> VerifiedPayment:
    return replace(verified, event_id=event_id)
