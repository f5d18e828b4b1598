"""
Domain Models

定义订单的领域模型和状态机。
- Order: 已提交到 Fulfillment API 的库存订单或 AI 生成任务
- OrderStatus: pending -> processing -> completed / failed / cancelled

订单存储由外部集合负责，这里只描述订单本身。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum


# ============== 枚举类型 ==============

class OrderKind(str, Enum):
    """订单类型"""
    STOCK = "stock"
    AI = "ai"


class OrderStatus(str, Enum):
    """订单状态"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self]


# 有效的状态转换映射
VALID_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.PROCESSING,
        OrderStatus.COMPLETED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PROCESSING: {
        OrderStatus.COMPLETED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.COMPLETED: set(),  # 终态
    OrderStatus.FAILED: set(),  # 终态
    OrderStatus.CANCELLED: set(),  # 终态
}


class InvalidStatusTransitionError(Exception):
    """无效的状态转换异常"""

    def __init__(self, current_status: OrderStatus, target_status: OrderStatus):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Invalid status transition: {current_status.value} -> {target_status.value}"
        )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============== 领域模型 ==============

@dataclass
class Order:
    """
    订单

    id 为外部系统返回的订单 / 任务 ID。
    status 只能沿 VALID_TRANSITIONS 前进，进入终态后不再变化。
    """
    id: str
    kind: OrderKind
    cost: Decimal
    units: int
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    progress: int | None = None
    result_files: list[str] | None = None
    provider: str | None = None
    item_id: str | None = None
    prompt: str | None = None
    error_message: str | None = None
    download_url: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def can_transition_to(self, target: OrderStatus) -> bool:
        return target in VALID_TRANSITIONS[self.status]

    def transition_to(self, target: OrderStatus) -> None:
        """
        推进订单状态

        Raises:
            InvalidStatusTransitionError: 状态转换无效
        """
        if not self.can_transition_to(target):
            raise InvalidStatusTransitionError(self.status, target)
        self.status = target
        self.touch()

    def touch(self) -> None:
        self.updated_at = utcnow()

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, kind={self.kind.value}, "
            f"status={self.status.value}, cost={self.cost})>"
        )
