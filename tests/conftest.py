"""
测试公共设施

FakeFulfillmentApi 作为 httpx.MockTransport 的处理函数，按路径模拟 Fulfillment API。
"""

import itertools

import httpx
import pytest

from mediaorder.config import Settings
from mediaorder.infra.gateway_client import GatewayClient
from mediaorder.services.order_service import OrderService


def ok(payload) -> httpx.Response:
    return httpx.Response(200, json={"success": True, "data": payload})


class FakeFulfillmentApi:
    """按路径分发的 Fulfillment API 模拟"""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._ids = itertools.count(101)
        self.stock_script = ["processing", "ready"]
        self.ai_script = [
            {"status": "processing", "percentage_complete": 40},
            {
                "status": "completed",
                "percentage_complete": 100,
                "files": [{"index": 0, "thumb_sm": "s0", "download": "https://ai.test/0.png"}],
            },
        ]
        self.stock_statuses: dict[str, list[str]] = {}
        self.ai_results: dict[str, list[dict]] = {}
        self.fail_with: httpx.Response | None = None

    @staticmethod
    def _next(script: list):
        return script.pop(0) if len(script) > 1 else script[0]

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return self.fail_with

        path = request.url.path
        parts = path.strip("/").split("/")

        match parts:
            case ["stocksites"]:
                return httpx.Response(200, json={
                    "shutterstock": {"active": True, "price": 1},
                    "istockphoto": {"active": False, "price": 2},
                })
            case ["stockinfo", site, item_id]:
                return ok({"id": item_id, "source": site, "title": "Sunset", "cost": 1})
            case ["stockorder", _, _]:
                order_id = f"ord-{next(self._ids)}"
                self.stock_statuses[order_id] = list(self.stock_script)
                return ok({"task_id": order_id})
            case ["order", order_id, "status"]:
                return ok({"status": self._next(self.stock_statuses[order_id])})
            case ["v2", "order", order_id, "download"]:
                return ok({"status": "ready", "downloadLink": f"https://dl.test/{order_id}.jpg"})
            case ["aig", "create"] | ["aig", "actions"]:
                job_id = f"job-{next(self._ids)}"
                self.ai_results[job_id] = [dict(step) for step in self.ai_script]
                return ok({"job_id": job_id})
            case ["aig", "public", job_id]:
                body = {"__id": job_id, "prompt": "a cat"}
                body.update(self._next(self.ai_results[job_id]))
                return httpx.Response(200, json=body)
            case ["me"]:
                return ok({"username": "demo", "balance": "42.5"})
            case _:
                return httpx.Response(404, json={"message": "not found"})


@pytest.fixture
def fake_api() -> FakeFulfillmentApi:
    return FakeFulfillmentApi()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        fulfillment_api_key="test-key",
        fulfillment_base_url="https://api.test",
        rate_limit_min_interval=0.0,
        poll_interval=0.01,
        batch_poll_interval=0.01,
        max_polling_time=5.0,
    )


@pytest.fixture
def gateway(fake_api: FakeFulfillmentApi, test_settings: Settings) -> GatewayClient:
    return GatewayClient(
        settings=test_settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake_api)),
    )


@pytest.fixture
def order_service(gateway: GatewayClient, test_settings: Settings) -> OrderService:
    return OrderService(gateway, settings=test_settings)
