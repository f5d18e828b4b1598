"""
Order Service

业务逻辑层：串联定价、下单、轮询和下载。
- 下单前先定价（单位数不合法时不会发起任何外部请求）
- 下单成功后保存订单并启动 StatusPoller
- 轮询事件通过只前进的状态转换写回订单
- 订单完成后按需获取下载链接
"""

import logging

from mediaorder.config import Settings, get_settings
from mediaorder.infra.gateway_client import GatewayClient
from mediaorder.infra.gateway_errors import GatewayError, PollingTimeoutError, ValidationError
from mediaorder.infra.status_poller import (
    JobSnapshot,
    PollingHandle,
    PollingOptions,
    PollingSession,
    StatusPoller,
)
from mediaorder.models import Order, OrderKind, OrderStatus
from mediaorder.repositories.order_repository import OrderRepository
from mediaorder.schemas import AIAction, LinkType, VaryType
from mediaorder.services.pricing_service import PricingEngine, PricingResult, get_pricing_engine

logger = logging.getLogger(__name__)


class OrderNotFoundError(Exception):
    """订单不存在异常"""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class OrderService:
    """
    订单服务

    持有两个 StatusPoller：库存订单按 /order/{id}/status 轮询，
    AI 任务按 /aig/public/{id} 轮询。
    """

    def __init__(
        self,
        gateway: GatewayClient,
        repository: OrderRepository | None = None,
        pricing: PricingEngine | None = None,
        settings: Settings | None = None,
    ):
        """
        初始化订单服务

        Args:
            gateway: Fulfillment API 客户端
            repository: 订单存储，默认新建内存存储
            pricing: 定价引擎，默认使用默认档位表
            settings: 配置
        """
        self.gateway = gateway
        self.repository = repository or OrderRepository()
        self.pricing = pricing or get_pricing_engine()
        self._settings = settings or get_settings()
        self._pollers = {
            OrderKind.STOCK: StatusPoller(self.order_snapshot, self._settings),
            OrderKind.AI: StatusPoller(self.ai_snapshot, self._settings),
        }
        self._handles: dict[str, PollingHandle] = {}

    async def close(self) -> None:
        """停止所有轮询"""
        for poller in self._pollers.values():
            await poller.close()
        self._handles.clear()

    # ========== 快照适配 ==========

    async def order_snapshot(self, order_id: str) -> JobSnapshot:
        """将库存订单状态转换为轮询快照"""
        result = await self.gateway.get_order_status(order_id)
        return JobSnapshot(job_id=order_id, status=result.status, message=result.message)

    async def ai_snapshot(self, job_id: str) -> JobSnapshot:
        """将 AI 任务结果转换为轮询快照"""
        result = await self.gateway.get_ai_result(job_id)
        files = tuple(f.download or f.thumb_lg or f.thumb_sm for f in result.files)
        return JobSnapshot(
            job_id=job_id,
            status=result.status,
            progress=result.percentage_complete,
            files=tuple(f for f in files if f),
            message=result.error_message,
        )

    # ========== 定价与下单 ==========

    def quote(self, units: int) -> PricingResult:
        """计算订单价格"""
        return self.pricing.price(units)

    async def create_stock_order(
        self,
        provider: str,
        item_id: str,
        units: int = 1,
        url: str | None = None,
    ) -> Order:
        """
        创建库存订单并开始轮询

        Args:
            provider: 站点名称
            item_id: 素材 ID
            units: 本订单消耗的单位数
            url: 素材原始 URL

        Returns:
            Order: 新订单（pending）

        Raises:
            ValidationError: 单位数或参数不合法
            GatewayError: 外部请求失败
        """
        pricing = self.quote(units)
        order_id = await self.gateway.create_order(provider, item_id, url)
        order = Order(
            id=order_id,
            kind=OrderKind.STOCK,
            cost=pricing.total_cost,
            units=units,
            provider=provider,
            item_id=item_id,
        )
        await self.repository.add(order)
        logger.info(f"Stock order {order_id} created ({units} units, cost {pricing.total_cost})")
        await self._start_tracking(order)
        return order

    async def create_ai_job(self, prompt: str, units: int = 1) -> Order:
        """
        提交 AI 生成任务并开始轮询

        Raises:
            ValidationError: 单位数或提示词不合法
            GatewayError: 外部请求失败
        """
        pricing = self.quote(units)
        job_id = await self.gateway.create_ai_job(prompt)
        order = Order(
            id=job_id,
            kind=OrderKind.AI,
            cost=pricing.total_cost,
            units=units,
            prompt=prompt,
        )
        await self.repository.add(order)
        logger.info(f"AI job {job_id} created ({units} units, cost {pricing.total_cost})")
        await self._start_tracking(order)
        return order

    async def perform_ai_action(
        self,
        order_id: str,
        action: str | AIAction,
        index: int,
        vary_type: str | VaryType | None = None,
        units: int = 1,
    ) -> Order:
        """
        对已完成的 AI 任务执行 vary / upscale，生成新的 AI 订单

        Raises:
            OrderNotFoundError: 原订单不存在
            ValidationError: 原订单不是已完成的 AI 任务，或参数不合法
        """
        source = await self.get_order(order_id)
        if source.kind != OrderKind.AI:
            raise ValidationError(f"Order {order_id} is not an AI job", field="order_id")
        if source.status != OrderStatus.COMPLETED:
            raise ValidationError(
                f"AI job {order_id} is {source.status.value}, actions require a completed job",
                field="order_id",
            )

        pricing = self.quote(units)
        new_job_id = await self.gateway.perform_ai_action(order_id, action, index, vary_type)
        order = Order(
            id=new_job_id,
            kind=OrderKind.AI,
            cost=pricing.total_cost,
            units=units,
            prompt=source.prompt,
        )
        await self.repository.add(order)
        await self._start_tracking(order)
        return order

    # ========== 查询 ==========

    async def get_order(self, order_id: str) -> Order:
        """
        获取订单

        Raises:
            OrderNotFoundError: 订单不存在
        """
        order = await self.repository.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def list_orders(self, kind: OrderKind | None = None) -> list[Order]:
        """列出订单"""
        return await self.repository.list_orders(kind)

    async def get_download_link(
        self,
        order_id: str,
        link_type: str | LinkType = LinkType.ANY,
    ) -> str:
        """
        获取已完成库存订单的下载链接，并记录到订单上

        Raises:
            OrderNotFoundError: 订单不存在
            ValidationError: 订单不是库存订单或尚未完成
        """
        order = await self.get_order(order_id)
        if order.kind != OrderKind.STOCK:
            raise ValidationError(f"Order {order_id} is not a stock order", field="order_id")
        if order.status != OrderStatus.COMPLETED:
            raise ValidationError(
                f"Order {order_id} is {order.status.value}, download requires a completed order",
                field="order_id",
            )
        url = await self.gateway.get_download_link(order_id, link_type)
        await self.repository.set_download_url(order_id, url)
        logger.info(f"Download link issued for order {order_id}")
        return url

    # ========== 轮询 ==========

    async def track(self, order_id: str) -> PollingHandle | None:
        """
        恢复对已存在订单的轮询（例如从外部存储重新加载后）

        Returns:
            PollingHandle: 轮询句柄；订单已处于终态时返回 None
        """
        order = await self.get_order(order_id)
        if order.is_terminal:
            return None
        return await self._start_tracking(order)

    def get_polling_handle(self, order_id: str) -> PollingHandle | None:
        """获取订单当前的轮询句柄，轮询结束后返回 None"""
        return self._handles.get(order_id)

    async def wait_for(self, order_id: str) -> Order:
        """
        等待订单的轮询结束并返回最新订单

        Raises:
            OrderNotFoundError: 订单不存在
        """
        handle = self._handles.get(order_id)
        if handle is not None:
            await handle.wait()
        return await self.get_order(order_id)

    def is_tracking(self, order_id: str) -> bool:
        return any(p.is_polling(order_id) for p in self._pollers.values())

    def get_active_poll_count(self) -> int:
        """获取活跃轮询数量"""
        return sum(p.get_active_poll_count() for p in self._pollers.values())

    async def _start_tracking(self, order: Order) -> PollingHandle:
        poller = self._pollers[order.kind]
        handle = await poller.start_polling(order.id, self._polling_options())
        self._handles[order.id] = handle
        return handle

    def _polling_options(self) -> PollingOptions:
        return PollingOptions(
            interval=self._settings.poll_interval,
            max_polling_time=self._settings.max_polling_time,
            stop_on_error=False,
            on_status_change=self._sync_order,
            on_progress=self._sync_order,
            on_error=self._handle_polling_error,
        )

    async def _sync_order(self, session: PollingSession) -> None:
        """将轮询会话的状态和进度写回订单"""
        snapshot = session.last_snapshot
        status = OrderStatus(session.state.value)
        order = await self.repository.update_status(
            session.job_id,
            status,
            progress=snapshot.progress if snapshot else None,
            result_files=list(snapshot.files) if snapshot and snapshot.files else None,
            error_message=snapshot.message if snapshot and status == OrderStatus.FAILED else None,
        )
        if order is None:
            logger.warning(f"Polling update for unknown order {session.job_id}")
        elif order.is_terminal:
            self._handles.pop(order.id, None)
            logger.info(f"Order {order.id} finished with status {order.status.value}")

    async def _handle_polling_error(self, session: PollingSession, error: GatewayError) -> None:
        if isinstance(error, PollingTimeoutError):
            self._handles.pop(session.job_id, None)
            logger.warning(f"Stopped tracking order {session.job_id}: {error}")
        elif not error.retryable:
            self._handles.pop(session.job_id, None)
            logger.error(f"Tracking order {session.job_id} aborted: {error}")
