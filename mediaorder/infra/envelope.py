"""
响应信封解码

Fulfillment API 的每个响应都包裹在 {success, data | message} 信封中。
在传输边界处一次性解码为 EnvelopeOk / EnvelopeErr，下游代码不再检查 success 标记。
"""

from dataclasses import dataclass, field
from typing import Any

from mediaorder.infra.gateway_errors import ErrorClassifier, RequestFailedError


@dataclass(frozen=True)
class EnvelopeOk:
    """成功信封"""
    payload: Any

    def unwrap(self) -> Any:
        return self.payload


@dataclass(frozen=True)
class EnvelopeErr:
    """失败信封（HTTP 2xx，但 success 为 false）"""
    message: str
    code: str | None = None
    retryable: bool | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_error(self) -> RequestFailedError:
        return ErrorClassifier.request_failed(
            self.message, self.code, self.retryable, details=self.details
        )

    def unwrap(self) -> Any:
        raise self.to_error()


Envelope = EnvelopeOk | EnvelopeErr


def _is_failure(body: dict[str, Any]) -> bool:
    if body.get("success") is False:
        return True
    # 部分端点使用 {"error": true, "message": "..."} 表示失败
    return body.get("error") is True


def decode_envelope(body: Any) -> Envelope:
    """
    解码响应信封

    - 缺少 success 字段的对象（如 /stocksites 站点映射）视为成功
    - 存在 data 字段时，data 即为负载；否则负载为去掉 success 后的整个对象

    Args:
        body: 已解析的 JSON 响应体

    Returns:
        Envelope: EnvelopeOk 或 EnvelopeErr
    """
    if not isinstance(body, dict):
        return EnvelopeOk(body)

    if _is_failure(body):
        message = body.get("message")
        if not isinstance(message, str) or not message:
            error = body.get("error")
            message = error if isinstance(error, str) and error else "Request failed"
        code = body.get("code")
        retryable = body.get("retryable")
        return EnvelopeErr(
            message=message,
            code=str(code) if code is not None else None,
            retryable=retryable if isinstance(retryable, bool) else None,
            details=body,
        )

    if "data" in body:
        return EnvelopeOk(body["data"])
    return EnvelopeOk({k: v for k, v in body.items() if k != "success"})
