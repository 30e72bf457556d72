"""Subscription read endpoint."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from api.dependencies import get_current_user_id, get_lifecycle_service
from application.services.order_lifecycle_service import OrderLifecycleService
from core.response import success_response


router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


@router.get("/me", summary="My membership")
async def my_subscription(
    user_id: str = Depends(get_current_user_id),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle_service),
):
    view = await lifecycle.current_subscription(user_id)
    return success_response(data=view.model_dump(mode="json", by_alias=True) if view else None)
