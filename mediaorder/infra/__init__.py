# Infrastructure (Fulfillment client, Rate limiter, Status poller)

from mediaorder.infra.gateway_client import GatewayClient
from mediaorder.infra.gateway_errors import (
    AuthError,
    ConfigurationError,
    ErrorClassifier,
    ErrorKind,
    GatewayError,
    NetworkError,
    PollingTimeoutError,
    RateLimitError,
    RequestFailedError,
    RequestTimeoutError,
    ServerError,
    ValidationError,
    with_retry,
)
from mediaorder.infra.rate_limiter import RateLimiter
from mediaorder.infra.status_poller import (
    BatchPollingHandle,
    JobSnapshot,
    PollingEvent,
    PollingEventType,
    PollingHandle,
    PollingOptions,
    PollingSession,
    PollingState,
    StatusPoller,
)

__all__ = [
    "GatewayClient",
    "AuthError",
    "ConfigurationError",
    "ErrorClassifier",
    "ErrorKind",
    "GatewayError",
    "NetworkError",
    "PollingTimeoutError",
    "RateLimitError",
    "RequestFailedError",
    "RequestTimeoutError",
    "ServerError",
    "ValidationError",
    "with_retry",
    "RateLimiter",
    "BatchPollingHandle",
    "JobSnapshot",
    "PollingEvent",
    "PollingEventType",
    "PollingHandle",
    "PollingOptions",
    "PollingSession",
    "PollingState",
    "StatusPoller",
]
