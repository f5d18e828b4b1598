"""
Account API Routes

- GET /account/balance - 查询 Fulfillment 账户余额
"""

from fastapi import APIRouter, Depends

from mediaorder.infra.gateway_client import GatewayClient
from mediaorder.routes.catalog import get_gateway
from mediaorder.schemas import BalanceResponse, ErrorResponse


router = APIRouter(prefix="/account", tags=["account"])


@router.get(
    "/balance",
    response_model=BalanceResponse,
    responses={
        401: {"model": ErrorResponse, "description": "API Key 无效"},
        502: {"model": ErrorResponse, "description": "外部服务错误"},
    },
)
async def get_balance(gateway: GatewayClient = Depends(get_gateway)) -> BalanceResponse:
    """查询账户余额"""
    return BalanceResponse(data=await gateway.get_account_balance())
