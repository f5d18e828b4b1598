"""
请求限流器

保证同一个 GatewayClient 发出的任意两次外部请求之间至少间隔 min_interval 秒。
并发调用方在锁上排队，等待期间不会报错，只会延迟。
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """最小请求间隔限流器"""

    def __init__(
        self,
        min_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        初始化限流器

        Args:
            min_interval: 最小请求间隔（秒）
            clock: 单调时钟，测试时可注入
            sleep: 异步等待函数，测试时可注入
        """
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_request_at: float | None = None

    @property
    def last_request_at(self) -> float | None:
        """最近一次放行的时间戳"""
        return self._last_request_at

    async def acquire(self) -> float:
        """
        等待直到允许发出下一次请求

        Returns:
            float: 本次实际等待的秒数
        """
        async with self._lock:
            waited = 0.0
            if self._last_request_at is not None:
                remaining = self.min_interval - (self._clock() - self._last_request_at)
                if remaining > 0:
                    logger.debug(f"Rate limiter delaying request by {remaining:.3f}s")
                    await self._sleep(remaining)
                    waited = remaining
            self._last_request_at = self._clock()
            return waited
