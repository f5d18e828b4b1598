"""
Repository Layer

数据访问层：封装订单集合的读写操作。
"""

from mediaorder.repositories.order_repository import OrderRepository

__all__ = ["OrderRepository"]
