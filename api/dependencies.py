"""
API依赖项 - 调用方身份与服务注入
"""
from typing import Optional

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from application.services.order_lifecycle_service import OrderLifecycleService
from application.services.status_service import PaymentStatusService
from application.services.webhook_service import WebhookIngestionService
from core.config import settings
from core.exceptions import TokenInvalidException, UnauthorizedException
from infrastructure.container import AppContainer

http_bearer = HTTPBearer(
    scheme_name="Bearer",
    description="JWT Bearer token; the subject claim is the caller's user id",
    auto_error=False,
)


def get_container(request: Request) -> AppContainer:
    return request.app.state.container


def get_lifecycle_service(container: AppContainer = Depends(get_container)) -> OrderLifecycleService:
    return container.lifecycle


def get_status_service(container: AppContainer = Depends(get_container)) -> PaymentStatusService:
    return container.status


def get_webhook_service(container: AppContainer = Depends(get_container)) -> WebhookIngestionService:
    return container.webhooks


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> str:
    """从 Bearer Token 的 sub 中取出调用方 user id"""
    if credentials is None or not credentials.credentials:
        raise UnauthorizedException("未提供认证凭据")
    try:
        payload = jwt.decode(credentials.credentials, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.PyJWTError:
        raise TokenInvalidException()
    subject = payload.get("sub")
    if subject in (None, ""):
        raise TokenInvalidException("Token has no subject")
    user_id = str(subject)
    structlog.contextvars.bind_contextvars(user_id=user_id)
    return user_id
