"""
属性测试：错误分类、信封解码与重试

验证 HTTP 状态码、传输异常和业务信封到错误类型的映射，以及 retryable 标记。
"""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest
from hypothesis import given, strategies as st

from mediaorder.infra.envelope import EnvelopeErr, EnvelopeOk, decode_envelope
from mediaorder.infra.gateway_errors import (
    AuthError,
    ErrorClassifier,
    ErrorKind,
    GatewayError,
    NetworkError,
    RateLimitError,
    RequestFailedError,
    RequestTimeoutError,
    ServerError,
    ValidationError,
    with_retry,
)


def make_response(status_code: int, json=None, headers=None, text=None) -> httpx.Response:
    request = httpx.Request("GET", "https://api.test/x")
    if json is not None:
        return httpx.Response(status_code, json=json, headers=headers, request=request)
    return httpx.Response(status_code, text=text or "", headers=headers, request=request)


# ============== Property 7: HTTP 状态码分类 ==============
# **Feature: media-order, Property 7: HTTP 状态码分类**


@given(status_code=st.integers(min_value=200, max_value=399))
def test_success_status_codes_pass(status_code: int):
    """
    **Feature: media-order, Property 7: HTTP 状态码分类**

    *For any* 小于 400 的状态码，handle_response_error SHALL 不抛出异常。
    """
    ErrorClassifier.handle_response_error(make_response(status_code, json={}))


@given(status_code=st.integers(min_value=500, max_value=599))
def test_server_errors_are_retryable(status_code: int):
    """
    **Feature: media-order, Property 7: HTTP 状态码分类**

    *For any* 5xx 状态码，SHALL 抛出可重试的 ServerError 并保留状态码。
    """
    with pytest.raises(ServerError) as exc_info:
        ErrorClassifier.handle_response_error(
            make_response(status_code, json={"message": "boom"})
        )
    assert exc_info.value.retryable is True
    assert exc_info.value.http_status == status_code
    assert "boom" in exc_info.value.message


@given(status_code=st.sampled_from([401, 403]))
def test_auth_errors_are_not_retryable(status_code: int):
    with pytest.raises(AuthError) as exc_info:
        ErrorClassifier.handle_response_error(make_response(status_code, text="denied"))
    assert exc_info.value.retryable is False
    assert exc_info.value.recovery_action == "reauthenticate"


@given(status_code=st.integers(min_value=400, max_value=499).filter(lambda c: c not in (401, 403, 429)))
def test_other_client_errors_are_unknown(status_code: int):
    with pytest.raises(GatewayError) as exc_info:
        ErrorClassifier.handle_response_error(make_response(status_code, json={"error": "bad"}))
    assert exc_info.value.kind == ErrorKind.UNKNOWN
    assert exc_info.value.retryable is False


@given(seconds=st.integers(min_value=0, max_value=3600))
def test_rate_limit_parses_retry_after(seconds: int):
    with pytest.raises(RateLimitError) as exc_info:
        ErrorClassifier.handle_response_error(
            make_response(429, json={}, headers={"Retry-After": str(seconds)})
        )
    assert exc_info.value.retry_after == seconds
    assert exc_info.value.retryable is True
    assert exc_info.value.recovery_action == "backoff_and_retry"


def test_rate_limit_without_retry_after():
    with pytest.raises(RateLimitError) as exc_info:
        ErrorClassifier.handle_response_error(make_response(429, text="slow down"))
    assert exc_info.value.retry_after is None


# ============== Property 8: 传输异常分类 ==============
# **Feature: media-order, Property 8: 传输异常分类**


@pytest.mark.parametrize(
    "error,expected",
    [
        (httpx.ReadTimeout("read timed out"), RequestTimeoutError),
        (httpx.ConnectTimeout("connect timed out"), RequestTimeoutError),
        (asyncio.TimeoutError(), RequestTimeoutError),
        (httpx.ConnectError("dns failure"), NetworkError),
        (httpx.RemoteProtocolError("peer closed"), NetworkError),
    ],
)
def test_transport_errors_are_retryable(error, expected):
    classified = ErrorClassifier.classify(error)
    assert isinstance(classified, expected)
    assert classified.retryable is True
    assert ErrorClassifier.is_retryable(error) is True


def test_unexpected_exceptions_become_unknown():
    classified = ErrorClassifier.classify(KeyError("x"))
    assert classified.kind == ErrorKind.UNKNOWN
    assert classified.retryable is False
    assert classified.details == {"type": "KeyError"}


def test_classified_errors_pass_through():
    error = ValidationError("bad", field="prompt")
    assert ErrorClassifier.classify(error) is error
    assert error.to_dict() == {
        "kind": "validation",
        "message": "bad",
        "http_status": None,
        "retryable": False,
        "details": {"field": "prompt"},
    }
    assert error.recovery_action == "fix_input"


def test_http_status_error_is_classified_by_response():
    response = make_response(503, text="unavailable")
    error = httpx.HTTPStatusError("503", request=response.request, response=response)
    assert isinstance(ErrorClassifier.classify(error), ServerError)


# ============== Property 9: 业务信封解码 ==============
# **Feature: media-order, Property 9: 业务信封解码**


@given(
    message=st.text(min_size=1, max_size=50),
    code=st.sampled_from(["SERVER_BUSY", "NOT_READY", "INSUFFICIENT_BALANCE", "INVALID_ITEM"]),
)
def test_failed_envelope_becomes_request_failed(message: str, code: str):
    """
    **Feature: media-order, Property 9: 业务信封解码**

    *For any* success=false 的信封，SHALL 解码为 EnvelopeErr，
    retryable 由错误码是否属于临时错误决定。
    """
    envelope = decode_envelope({"success": False, "message": message, "code": code})
    assert isinstance(envelope, EnvelopeErr)
    with pytest.raises(RequestFailedError) as exc_info:
        envelope.unwrap()
    error = exc_info.value
    assert error.kind == ErrorKind.REQUEST_FAILED
    assert error.message == message
    assert error.code == code
    assert error.retryable is (code in ("SERVER_BUSY", "NOT_READY"))


@given(retryable=st.booleans())
def test_server_retryable_flag_wins(retryable: bool):
    envelope = decode_envelope({"success": False, "message": "x", "code": "SERVER_BUSY", "retryable": retryable})
    assert envelope.to_error().retryable is retryable


@given(payload=st.dictionaries(st.text(min_size=1, max_size=10), st.integers(), max_size=5))
def test_successful_envelope_unwraps_data(payload: dict):
    """
    **Feature: media-order, Property 9: 业务信封解码**

    *For any* success=true 的信封，负载 SHALL 为 data 字段。
    """
    envelope = decode_envelope({"success": True, "data": payload})
    assert envelope == EnvelopeOk(payload)
    assert envelope.unwrap() == payload


def test_envelope_without_data_keeps_body():
    assert decode_envelope({"success": True, "task_id": "abc"}).unwrap() == {"task_id": "abc"}
    assert decode_envelope({"shutterstock": {"active": True}}).unwrap() == {"shutterstock": {"active": True}}
    assert decode_envelope([1, 2]).unwrap() == [1, 2]


def test_error_flag_envelope():
    envelope = decode_envelope({"error": True, "message": "Invalid item"})
    assert isinstance(envelope, EnvelopeErr)
    assert envelope.message == "Invalid item"
    assert decode_envelope({"success": False}).message == "Request failed"


# ============== with_retry ==============


@pytest.mark.asyncio
async def test_with_retry_retries_transient_errors():
    func = AsyncMock(side_effect=[ServerError("busy"), NetworkError(), "ok"])
    assert await with_retry(func, "a", max_attempts=3, base_delay=0, max_delay=0) == "ok"
    assert func.await_count == 3
    func.assert_awaited_with("a")


@pytest.mark.asyncio
async def test_with_retry_does_not_retry_permanent_errors():
    func = AsyncMock(side_effect=AuthError())
    with pytest.raises(AuthError):
        await with_retry(func, max_attempts=3, base_delay=0, max_delay=0)
    assert func.await_count == 1


@pytest.mark.asyncio
async def test_with_retry_gives_up_after_max_attempts():
    func = AsyncMock(side_effect=ServerError("busy"))
    with pytest.raises(ServerError):
        await with_retry(func, max_attempts=2, base_delay=0, max_delay=0)
    assert func.await_count == 2
