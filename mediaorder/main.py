"""
FastAPI 应用入口

配置 FastAPI 应用，注册路由，创建 GatewayClient 和 OrderService，
并把 GatewayError 按错误类型映射为 HTTP 状态码。
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mediaorder.config import get_settings
from mediaorder.infra.gateway_client import GatewayClient
from mediaorder.infra.gateway_errors import ErrorKind, GatewayError
from mediaorder.routes import (
    account_router,
    ai_router,
    catalog_router,
    orders_router,
    pricing_router,
)
from mediaorder.services.order_service import OrderService

logger = logging.getLogger(__name__)


# 错误类型 -> (HTTP 状态码, 业务错误码)
ERROR_STATUS: dict[ErrorKind, tuple[int, int]] = {
    ErrorKind.VALIDATION: (400, 1001),
    ErrorKind.AUTH: (401, 1005),
    ErrorKind.RATE_LIMIT: (429, 1006),
    ErrorKind.TIMEOUT: (504, 1007),
    ErrorKind.NETWORK: (502, 1002),
    ErrorKind.SERVER: (502, 1002),
    ErrorKind.REQUEST_FAILED: (502, 1002),
    ErrorKind.UNKNOWN: (500, 1004),
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    应用生命周期管理

    启动时创建 GatewayClient（API Key 缺失时立即失败）和 OrderService，
    关闭时停止所有轮询。
    """
    settings = get_settings()

    gateway = GatewayClient(settings=settings)
    order_service = OrderService(gateway, settings=settings)
    app.state.gateway = gateway
    app.state.order_service = order_service
    logger.info(f"Fulfillment gateway ready at {gateway.base_url}")

    yield

    await order_service.close()
    await gateway.aclose()


def create_app() -> FastAPI:
    """
    创建 FastAPI 应用实例

    Returns:
        FastAPI: 配置完成的应用实例
    """
    app = FastAPI(
        title="Media Order 订单服务",
        description="库存素材与 AI 图像订单的定价、下单、状态轮询和下载服务。",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(pricing_router)
    app.include_router(catalog_router)
    app.include_router(orders_router)
    app.include_router(ai_router)
    app.include_router(account_router)

    @app.exception_handler(GatewayError)
    async def gateway_exception_handler(request: Request, exc: GatewayError) -> JSONResponse:
        """GatewayError 按错误类型映射为 HTTP 状态码"""
        status_code, code = ERROR_STATUS.get(exc.kind, (500, 1004))
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        headers = None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            headers = {"Retry-After": str(int(retry_after))}
        return JSONResponse(
            status_code=status_code,
            content={
                "code": code,
                "msg": exc.message,
                "data": {
                    "kind": exc.kind.value,
                    "retryable": exc.retryable,
                    "recovery_action": exc.recovery_action,
                },
            },
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """全局异常处理器"""
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "code": 1004,
                "msg": f"内部错误: {str(exc)}",
                "data": None,
            },
        )

    @app.get("/health", tags=["health"])
    async def health_check(request: Request) -> dict:
        """健康检查"""
        order_service: OrderService | None = getattr(request.app.state, "order_service", None)
        active = 0
        if order_service is not None:
            active = order_service.get_active_poll_count()
        return {"status": "healthy", "active_polls": active}

    return app


# 创建应用实例
app = create_app()
