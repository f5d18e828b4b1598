"""
Pricing API Routes

处理定价相关的 HTTP 请求：
- POST /pricing/quote - 计算订单价格
- GET /pricing/tiers - 查询档位表
"""

from fastapi import APIRouter, Depends, Request

from mediaorder.schemas import (
    ErrorResponse,
    QuoteData,
    QuoteRequest,
    QuoteResponse,
    TierBreakdownData,
    TierData,
    TierListResponse,
)
from mediaorder.services.pricing_service import PricingEngine, PricingResult, PricingTier


router = APIRouter(prefix="/pricing", tags=["pricing"])


def get_pricing_engine(request: Request) -> PricingEngine:
    """依赖注入：获取应用级定价引擎"""
    return request.app.state.order_service.pricing


def tier_data(tier: PricingTier) -> TierData:
    return TierData(
        label=tier.label,
        min_units=tier.min_units,
        max_units=tier.max_units,
        rate_per_unit=tier.rate_per_unit,
    )


def quote_data(result: PricingResult) -> QuoteData:
    return QuoteData(
        total_units=result.total_units,
        total_cost=result.total_cost,
        average_cost_per_unit=result.average_cost_per_unit,
        tier=tier_data(result.tier),
        tier_breakdown=[
            TierBreakdownData(
                tier=tier_data(row.tier),
                units_in_tier=row.units_in_tier,
                tier_cost=row.tier_cost,
                is_used=row.is_used,
            )
            for row in result.tier_breakdown
        ],
        total_savings=result.total_savings,
        savings_percentage=result.savings_percentage,
        summary=PricingEngine.format_result(result),
    )


@router.post(
    "/quote",
    response_model=QuoteResponse,
    responses={
        400: {"model": ErrorResponse, "description": "单位数不合法"},
    },
)
async def create_quote(
    request: QuoteRequest,
    engine: PricingEngine = Depends(get_pricing_engine),
) -> QuoteResponse:
    """计算订单价格"""
    return QuoteResponse(data=quote_data(engine.price(request.units)))


@router.get("/tiers", response_model=TierListResponse)
async def list_tiers(
    engine: PricingEngine = Depends(get_pricing_engine),
) -> TierListResponse:
    """查询档位表"""
    return TierListResponse(data=[tier_data(t) for t in engine.tiers])
