"""
Orders API Routes

处理库存订单相关的 HTTP 请求：
- POST /orders - 创建库存订单（定价后提交，并开始轮询）
- GET /orders - 列出订单
- GET /orders/{order_id} - 查询订单状态
- GET /orders/{order_id}/download - 获取已完成订单的下载链接
"""

from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from mediaorder.models import Order, OrderKind
from mediaorder.schemas import (
    DownloadData,
    DownloadResponse,
    ErrorResponse,
    LinkType,
    OrderData,
    OrderListResponse,
    OrderResponse,
    StockOrderRequest,
)
from mediaorder.services.order_service import OrderNotFoundError, OrderService


router = APIRouter(prefix="/orders", tags=["orders"])


def raise_order_not_found(order_id: str) -> NoReturn:
    """抛出订单不存在的 HTTP 异常"""
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": 1003, "msg": f"订单不存在: {order_id}", "data": None},
    )


def get_order_service(request: Request) -> OrderService:
    """依赖注入：获取应用级 OrderService"""
    return request.app.state.order_service


def order_data(order: Order) -> OrderData:
    return OrderData(
        id=order.id,
        kind=order.kind.value,
        status=order.status.value,
        cost=order.cost,
        units=order.units,
        progress=order.progress,
        result_files=order.result_files,
        download_url=order.download_url,
        error_message=order.error_message,
        created_at=order.created_at.isoformat(),
        updated_at=order.updated_at.isoformat(),
    )


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse, "description": "参数错误"},
        502: {"model": ErrorResponse, "description": "外部服务错误"},
    },
)
async def create_order(
    request: StockOrderRequest,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """创建库存订单"""
    order = await service.create_stock_order(
        request.provider, request.item_id, units=request.units, url=request.url
    )
    return OrderResponse(data=order_data(order))


@router.get("", response_model=OrderListResponse)
async def list_orders(
    kind: OrderKind | None = Query(default=None, description="stock / ai"),
    service: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    """列出订单"""
    orders = await service.list_orders(kind)
    return OrderListResponse(data=[order_data(o) for o in orders])


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse, "description": "订单不存在"}},
)
async def get_order(
    order_id: str,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """查询订单状态"""
    try:
        order = await service.get_order(order_id)
    except OrderNotFoundError:
        raise_order_not_found(order_id)
    return OrderResponse(data=order_data(order))


@router.get(
    "/{order_id}/download",
    response_model=DownloadResponse,
    responses={
        400: {"model": ErrorResponse, "description": "订单未完成"},
        404: {"model": ErrorResponse, "description": "订单不存在"},
        502: {"model": ErrorResponse, "description": "外部服务错误"},
    },
)
async def get_download_link(
    order_id: str,
    link_type: LinkType = Query(default=LinkType.ANY, description="下载链接类型"),
    service: OrderService = Depends(get_order_service),
) -> DownloadResponse:
    """获取已完成订单的下载链接"""
    try:
        url = await service.get_download_link(order_id, link_type)
    except OrderNotFoundError:
        raise_order_not_found(order_id)
    return DownloadResponse(
        data=DownloadData(order_id=order_id, link_type=link_type.value, url=url)
    )
