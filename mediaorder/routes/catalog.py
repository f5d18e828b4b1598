"""
Catalog API Routes

处理库存素材目录相关的 HTTP 请求：
- GET /catalog - 查询可用站点及价格
- GET /catalog/{provider}/{item_id} - 查询素材信息
"""

from fastapi import APIRouter, Depends, Query, Request

from mediaorder.infra.gateway_client import GatewayClient
from mediaorder.schemas import CatalogResponse, ErrorResponse, StockItemResponse


router = APIRouter(prefix="/catalog", tags=["catalog"])


def get_gateway(request: Request) -> GatewayClient:
    """依赖注入：获取应用级 GatewayClient"""
    return request.app.state.gateway


@router.get(
    "",
    response_model=CatalogResponse,
    responses={502: {"model": ErrorResponse, "description": "外部服务错误"}},
)
async def get_catalog(gateway: GatewayClient = Depends(get_gateway)) -> CatalogResponse:
    """查询可用的库存站点"""
    return CatalogResponse(data=await gateway.get_catalog())


@router.get(
    "/{provider}/{item_id}",
    response_model=StockItemResponse,
    responses={
        400: {"model": ErrorResponse, "description": "参数错误"},
        502: {"model": ErrorResponse, "description": "外部服务错误"},
    },
)
async def get_item_info(
    provider: str,
    item_id: str,
    url: str | None = Query(default=None, description="素材原始 URL"),
    gateway: GatewayClient = Depends(get_gateway),
) -> StockItemResponse:
    """查询素材信息"""
    return StockItemResponse(data=await gateway.get_item_info(provider, item_id, url))
