"""
Fulfillment API 错误分类和重试逻辑

实现：
- 封闭的错误类型集合（ErrorKind），每个错误都携带 retryable 标记
- 错误分类器（传输异常、HTTP 状态码、业务信封失败）
- 调用方使用的指数退避重试包装器

GatewayClient 本身从不重试，只负责分类并抛出。
"""

import asyncio
import logging
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, ParamSpec, TypeVar

import httpx

from mediaorder.config import get_settings

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class ErrorKind(str, Enum):
    """错误类型"""

    TIMEOUT = "timeout"
    NETWORK = "network"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    SERVER = "server"
    REQUEST_FAILED = "request_failed"
    UNKNOWN = "unknown"


# 业务信封中表示临时失败的错误码
TRANSIENT_SERVER_CODES = frozenset({
    "TIMEOUT",
    "RATE_LIMIT",
    "SERVER_BUSY",
    "TEMPORARILY_UNAVAILABLE",
    "NOT_READY",
})

RECOVERY_ACTIONS: dict[ErrorKind, str] = {
    ErrorKind.AUTH: "reauthenticate",
    ErrorKind.RATE_LIMIT: "backoff_and_retry",
    ErrorKind.VALIDATION: "fix_input",
}


class GatewayError(Exception):
    """Fulfillment API 错误基类"""

    default_kind: ErrorKind = ErrorKind.UNKNOWN
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        kind: ErrorKind | None = None,
        http_status: int | None = None,
        retryable: bool | None = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.http_status = http_status
        self.retryable = self.default_retryable if retryable is None else retryable
        self.details = details

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"

    @property
    def recovery_action(self) -> str:
        """调用方建议的恢复动作"""
        return RECOVERY_ACTIONS.get(self.kind, "retry")

    def to_dict(self) -> dict[str, Any]:
        """转换为结构化字典，用于日志和 API 响应"""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "http_status": self.http_status,
            "retryable": self.retryable,
            "details": self.details,
        }


class ConfigurationError(Exception):
    """配置错误（启动时快速失败）"""


class RequestTimeoutError(GatewayError):
    """请求超时"""

    default_kind = ErrorKind.TIMEOUT
    default_retryable = True

    def __init__(self, message: str = "Request timed out", **kwargs: Any):
        super().__init__(message, **kwargs)


class PollingTimeoutError(RequestTimeoutError):
    """轮询超过 max_polling_time，任务可能仍在服务端运行"""

    def __init__(self, job_id: str, elapsed: float):
        super().__init__(
            f"Polling for {job_id} exceeded {elapsed:.3f}s",
            details={"job_id": job_id, "elapsed": elapsed},
        )
        self.job_id = job_id
        self.elapsed = elapsed


class NetworkError(GatewayError):
    """DNS / 连接失败"""

    default_kind = ErrorKind.NETWORK
    default_retryable = True

    def __init__(self, message: str = "Network connection failed", **kwargs: Any):
        super().__init__(message, **kwargs)


class AuthError(GatewayError):
    """鉴权错误 (401/403)"""

    default_kind = ErrorKind.AUTH

    def __init__(self, message: str = "Invalid API key or insufficient permissions", **kwargs: Any):
        super().__init__(message, **kwargs)


class RateLimitError(GatewayError):
    """频率限制 (429)"""

    default_kind = ErrorKind.RATE_LIMIT
    default_retryable = True

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: float | None = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("http_status", 429)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ValidationError(GatewayError):
    """输入校验失败（在发起传输之前）"""

    default_kind = ErrorKind.VALIDATION

    def __init__(self, message: str, field: str | None = None, **kwargs: Any):
        if field is not None:
            kwargs.setdefault("details", {"field": field})
        super().__init__(message, **kwargs)
        self.field = field


class ServerError(GatewayError):
    """服务器错误 (5xx)"""

    default_kind = ErrorKind.SERVER
    default_retryable = True

    def __init__(self, message: str = "Server error", **kwargs: Any):
        kwargs.setdefault("http_status", 500)
        super().__init__(message, **kwargs)


class RequestFailedError(GatewayError):
    """HTTP 2xx 但业务信封声明失败 (success: false)"""

    default_kind = ErrorKind.REQUEST_FAILED

    def __init__(
        self,
        message: str = "Request failed",
        code: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.code = code


def _parse_retry_after(value: str | None) -> float | None:
    """解析 Retry-After 头（秒数或 HTTP 日期）"""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        moment = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return max(0.0, (moment - datetime.now(timezone.utc)).total_seconds())


def _extract_error_detail(response: httpx.Response) -> tuple[str, Any]:
    """从错误响应中提取消息和原始数据"""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase, None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if isinstance(message, str) and message:
            return message, body
    return response.text or response.reason_phrase, body


class ErrorClassifier:
    """错误分类器"""

    @staticmethod
    def handle_response_error(response: httpx.Response) -> None:
        """
        处理 HTTP 响应错误

        Args:
            response: httpx 响应对象

        Raises:
            GatewayError: 根据状态码抛出对应的错误
        """
        status_code = response.status_code

        if status_code < 400:
            return

        error_detail, body = _extract_error_detail(response)

        match status_code:
            case 401 | 403:
                raise AuthError(
                    f"Authentication failed: {error_detail}",
                    http_status=status_code,
                    details=body,
                )
            case 429:
                raise RateLimitError(
                    f"Rate limit exceeded: {error_detail}",
                    retry_after=_parse_retry_after(response.headers.get("retry-after")),
                    details=body,
                )
            case _ if status_code >= 500:
                raise ServerError(
                    f"Server error: {error_detail}",
                    http_status=status_code,
                    details=body,
                )
            case _:
                raise GatewayError(
                    f"Unexpected error: {error_detail}",
                    kind=ErrorKind.UNKNOWN,
                    http_status=status_code,
                    details=body,
                )

    @staticmethod
    def classify(error: BaseException) -> GatewayError:
        """
        将任意异常映射为带类型的 GatewayError

        Args:
            error: 原始异常

        Returns:
            GatewayError: 已分类的错误（已分类的错误原样返回）
        """
        if isinstance(error, GatewayError):
            return error
        if isinstance(error, httpx.TimeoutException):
            return RequestTimeoutError(f"Request timed out: {error}")
        if isinstance(error, asyncio.TimeoutError):
            return RequestTimeoutError("Request timed out")
        if isinstance(error, httpx.TransportError):
            # ConnectError / ReadError / RemoteProtocolError 等
            return NetworkError(f"Network connection failed: {error}")
        if isinstance(error, httpx.HTTPStatusError):
            try:
                ErrorClassifier.handle_response_error(error.response)
            except GatewayError as classified:
                return classified
        return GatewayError(
            f"Unexpected error: {error}",
            kind=ErrorKind.UNKNOWN,
            details={"type": type(error).__name__},
        )

    @staticmethod
    def request_failed(message: str | None, code: str | None, retryable: bool | None, details: Any = None) -> RequestFailedError:
        """根据信封中的服务端错误码构造 RequestFailedError"""
        if retryable is None:
            retryable = bool(code) and code.upper() in TRANSIENT_SERVER_CODES
        return RequestFailedError(
            message or "Request failed",
            code=code,
            retryable=retryable,
            details=details,
        )

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        """
        判断错误是否可重试

        Args:
            error: 异常对象

        Returns:
            bool: 是否可重试
        """
        return ErrorClassifier.classify(error).retryable


async def with_retry(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    max_attempts: int | None = None,
    base_delay: float | None = None,
    max_delay: float | None = None,
    **kwargs: P.kwargs,
) -> T:
    """
    带指数退避重试的函数执行器（调用方的重试策略）

    Args:
        func: 要执行的异步函数
        *args: 函数位置参数
        max_attempts: 最大尝试次数，默认从配置读取
        base_delay: 基础延迟（秒），默认从配置读取
        max_delay: 最大延迟（秒），默认从配置读取
        **kwargs: 函数关键字参数

    Returns:
        函数返回值

    Raises:
        GatewayError: 不可重试或重试耗尽后抛出最后一个错误
    """
    settings = get_settings()
    max_attempts = max_attempts or settings.retry_max_attempts
    base_delay = settings.retry_base_delay if base_delay is None else base_delay
    max_delay = settings.retry_max_delay if max_delay is None else max_delay

    for attempt in range(max_attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            classified = ErrorClassifier.classify(e)

            if not classified.retryable:
                raise

            if attempt == max_attempts - 1:
                logger.error(
                    f"Retry exhausted after {max_attempts} attempts: {classified}"
                )
                raise

            delay = min(base_delay * (2**attempt), max_delay)
            if isinstance(classified, RateLimitError) and classified.retry_after:
                delay = max(delay, classified.retry_after)
            logger.warning(
                f"Attempt {attempt + 1}/{max_attempts} failed: {classified}. "
                f"Retrying in {delay:.1f}s..."
            )
            await asyncio.sleep(delay)

    raise RuntimeError("Unexpected retry loop exit")
