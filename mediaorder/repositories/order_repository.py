"""
OrderRepository - 订单存储

内存中的订单集合，提供按 ID 查询、按类型列出、状态更新等操作。
持久化由外部存储负责，本仓储只作为进程内的集合使用。
"""

import asyncio
import logging

from mediaorder.models import Order, OrderKind, OrderStatus

logger = logging.getLogger(__name__)


class OrderRepository:
    """
    订单 Repository

    提供以下操作：
    - add: 保存新订单
    - get_by_id: 根据外部订单 ID 获取订单
    - list_orders: 按类型列出订单
    - update_status: 推进订单状态并更新进度、结果
    - get_pending_orders: 获取尚未结束的订单
    """

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def add(self, order: Order) -> Order:
        """
        保存新订单

        Args:
            order: 订单对象

        Returns:
            保存的订单

        Raises:
            ValueError: 订单 ID 已存在
        """
        async with self._lock:
            if order.id in self._orders:
                raise ValueError(f"Order already exists: {order.id}")
            self._orders[order.id] = order
        logger.debug(f"Stored order {order.id}")
        return order

    async def get_by_id(self, order_id: str) -> Order | None:
        """
        根据外部订单 ID 获取订单

        Returns:
            订单对象，不存在则返回 None
        """
        return self._orders.get(order_id)

    async def list_orders(self, kind: OrderKind | None = None) -> list[Order]:
        """按创建时间倒序列出订单"""
        orders = [o for o in self._orders.values() if kind is None or o.kind == kind]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def update_status(
        self,
        order_id: str,
        status: OrderStatus,
        progress: int | None = None,
        result_files: list[str] | None = None,
        error_message: str | None = None,
    ) -> Order | None:
        """
        更新订单状态

        状态不变时只更新进度和结果；终态订单不会再被修改。

        Args:
            order_id: 外部订单 ID
            status: 新状态
            progress: 进度百分比
            result_files: 结果文件
            error_message: 错误信息 (失败时)

        Returns:
            更新后的订单对象，不存在则返回 None

        Raises:
            InvalidStatusTransitionError: 状态转换无效
        """
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return None

            if status != order.status:
                order.transition_to(status)
            elif order.is_terminal:
                return order

            if progress is not None:
                order.progress = progress
            if result_files is not None:
                order.result_files = list(result_files)
            if error_message is not None:
                order.error_message = error_message
            if status == OrderStatus.COMPLETED:
                order.progress = 100
            order.touch()
            return order

    async def set_download_url(self, order_id: str, url: str) -> Order | None:
        """记录订单的下载地址"""
        async with self._lock:
            order = self._orders.get(order_id)
            if order is not None:
                order.download_url = url
                order.touch()
            return order

    async def get_pending_orders(self) -> list[Order]:
        """
        获取所有未结束的订单（pending 或 processing 状态）

        Returns:
            待处理订单列表
        """
        return [o for o in self._orders.values() if not o.is_terminal]
