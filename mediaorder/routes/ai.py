"""
AI Jobs API Routes

处理 AI 图像生成相关的 HTTP 请求：
- POST /ai/jobs - 提交生成任务
- GET /ai/jobs/{job_id} - 查询任务状态
- POST /ai/jobs/{job_id}/actions - 对已完成任务执行 vary / upscale
"""

from fastapi import APIRouter, Depends, status

from mediaorder.routes.orders import get_order_service, order_data, raise_order_not_found
from mediaorder.schemas import AIActionRequest, AIJobRequest, ErrorResponse, OrderResponse
from mediaorder.services.order_service import OrderNotFoundError, OrderService


router = APIRouter(prefix="/ai", tags=["ai"])


@router.post(
    "/jobs",
    response_model=OrderResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse, "description": "参数错误"},
        502: {"model": ErrorResponse, "description": "外部服务错误"},
    },
)
async def create_job(
    request: AIJobRequest,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """提交 AI 生成任务"""
    order = await service.create_ai_job(request.prompt, units=request.units)
    return OrderResponse(data=order_data(order))


@router.get(
    "/jobs/{job_id}",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse, "description": "任务不存在"}},
)
async def get_job(
    job_id: str,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """查询 AI 任务状态"""
    try:
        order = await service.get_order(job_id)
    except OrderNotFoundError:
        raise_order_not_found(job_id)
    return OrderResponse(data=order_data(order))


@router.post(
    "/jobs/{job_id}/actions",
    response_model=OrderResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse, "description": "参数错误或任务未完成"},
        404: {"model": ErrorResponse, "description": "任务不存在"},
    },
)
async def perform_action(
    job_id: str,
    request: AIActionRequest,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """对已完成的 AI 任务执行 vary / upscale"""
    try:
        order = await service.perform_ai_action(
            job_id,
            request.action,
            request.index,
            vary_type=request.vary_type,
            units=request.units,
        )
    except OrderNotFoundError:
        raise_order_not_found(job_id)
    return OrderResponse(data=order_data(order))
