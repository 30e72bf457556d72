"""
FastAPI应用主入口
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import LoggingMiddleware, RequestIDMiddleware
from api.routes import payments as payments_routes
from api.routes import subscriptions as subscriptions_routes
from core.config import settings
from core.exceptions import register_exception_handlers
from core.logging_config import get_logger
from core.response import success_response
from core.settings import payment_settings
from infrastructure.container import AppContainer
from infrastructure.database import create_tables


logger = get_logger(__name__)


def create_app(container: Optional[AppContainer] = None) -> FastAPI:
    """构建应用；传入 container 时跳过启动装配（测试使用）"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = container is None
        built = container or AppContainer.build(settings, payment_settings)
        # 生产环境使用 Alembic 迁移；DEBUG 下自动建表
        if built.engine is not None and settings.DEBUG:
            await create_tables(built.engine)
            logger.info("database_initialized", message="Database tables created (development)")
        app.state.container = built
        logger.info(
            "application_started",
            backend=settings.order_store.backend,
            providers=[p.value for p in built.gateways.providers],
        )
        yield
        if owned:
            await built.aclose()
        logger.info("application_shutdown", message="Application shutdown")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
        description="会员订阅支付服务：下单、回调验签、状态查询与订阅续期",
    )
    if container is not None:
        app.state.container = container

    # 中间件执行顺序：从下往上
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(payments_routes.router, prefix="/api/v1")
    app.include_router(subscriptions_routes.router, prefix="/api/v1")

    @app.get("/", tags=["Root"])
    async def root():
        return success_response(
            data={
                "name": settings.PROJECT_NAME,
                "version": settings.VERSION,
                "docs": "/docs",
            },
            message="Welcome",
        )

    @app.get("/health", tags=["Health"])
    async def health_check():
        return success_response(data={"status": "healthy"})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
