"""
属性测试：API Routes 层

使用 httpx.ASGITransport 直接调用 FastAPI 应用，外部 API 由 FakeFulfillmentApi 模拟。
"""

import importlib.util
from decimal import Decimal
from pathlib import Path

import httpx
import pytest
import uvicorn
from hypothesis import given, settings, HealthCheck, strategies as st
from httpx import ASGITransport, AsyncClient

from mediaorder.config import Settings
from mediaorder.main import create_app


def create_test_app(gateway, order_service):
    """创建测试用 FastAPI 应用（不运行 lifespan，直接注入依赖）"""
    app = create_app()
    app.state.gateway = gateway
    app.state.order_service = order_service
    return app


def client_for(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


# ============== Property 20: 定价接口 ==============
# **Feature: media-order, Property 20: 定价接口**


@pytest.mark.asyncio
@settings(max_examples=30, suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(units=st.integers(min_value=1, max_value=500))
async def test_quote_matches_pricing_engine(units: int, gateway, order_service):
    """
    **Feature: media-order, Property 20: 定价接口**

    *For any* 有效单位数，/pricing/quote SHALL 返回与定价引擎一致的金额。
    """
    app = create_test_app(gateway, order_service)
    async with client_for(app) as client:
        response = await client.post("/pricing/quote", json={"units": units})

    assert response.status_code == 200
    body = response.json()
    expected = order_service.quote(units)
    assert body["code"] == 0
    assert Decimal(body["data"]["total_cost"]) == expected.total_cost
    assert body["data"]["tier"]["label"] == expected.tier.label
    assert len(body["data"]["tier_breakdown"]) == 8


@pytest.mark.asyncio
@pytest.mark.parametrize("units", [0, -5, 501])
async def test_quote_rejects_out_of_range_units(units: int, gateway, order_service):
    app = create_test_app(gateway, order_service)
    async with client_for(app) as client:
        response = await client.post("/pricing/quote", json={"units": units})

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == 1001
    assert body["data"]["kind"] == "validation"
    assert body["data"]["retryable"] is False


@pytest.mark.asyncio
@pytest.mark.parametrize("units", [1.5, 150.0, "150", True])
async def test_quote_rejects_non_integer_units(units, gateway, order_service, fake_api):
    """单位数必须是 JSON 整数，整数值的浮点数和数字字符串同样被拒绝"""
    app = create_test_app(gateway, order_service)
    async with client_for(app) as client:
        response = await client.post("/pricing/quote", json={"units": units})
        order = await client.post(
            "/orders", json={"provider": "shutterstock", "item_id": "1", "units": units}
        )
    assert response.status_code == 422
    assert order.status_code == 422
    assert fake_api.requests == []


@pytest.mark.asyncio
async def test_tiers_endpoint(gateway, order_service):
    app = create_test_app(gateway, order_service)
    async with client_for(app) as client:
        response = await client.get("/pricing/tiers")

    tiers = response.json()["data"]
    assert [t["label"] for t in tiers][:2] == ["Starter", "Basic"]
    assert tiers[-1]["max_units"] == 500


# ============== 订单接口 ==============


@pytest.mark.asyncio
async def test_stock_order_lifecycle(gateway, order_service, fake_api):
    app = create_test_app(gateway, order_service)
    async with client_for(app) as client:
        response = await client.post(
            "/orders", json={"provider": "shutterstock", "item_id": "987", "units": 10}
        )
        assert response.status_code == 202
        data = response.json()["data"]
        assert data["status"] == "pending"
        assert Decimal(data["cost"]) == Decimal("5.00")

        await order_service.wait_for(data["id"])

        response = await client.get(f"/orders/{data['id']}")
        assert response.json()["data"]["status"] == "completed"

        response = await client.get(f"/orders/{data['id']}/download", params={"link_type": "asia"})
        assert response.status_code == 200
        assert response.json()["data"] == {
            "order_id": data["id"],
            "link_type": "asia",
            "url": f"https://dl.test/{data['id']}.jpg",
        }

        response = await client.get("/orders", params={"kind": "stock"})
        assert [o["id"] for o in response.json()["data"]] == [data["id"]]

    assert fake_api.requests[-1].url.params["responsetype"] == "asia"
    await order_service.close()


@pytest.mark.asyncio
async def test_unknown_order_returns_404(gateway, order_service):
    app = create_test_app(gateway, order_service)
    async with client_for(app) as client:
        response = await client.get("/orders/missing")
        download = await client.get("/orders/missing/download")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == 1003
    assert download.status_code == 404


@pytest.mark.asyncio
async def test_ai_job_and_action(gateway, order_service):
    app = create_test_app(gateway, order_service)
    async with client_for(app) as client:
        response = await client.post("/ai/jobs", json={"prompt": "a cat"})
        assert response.status_code == 202
        job_id = response.json()["data"]["id"]

        await order_service.wait_for(job_id)
        response = await client.get(f"/ai/jobs/{job_id}")
        assert response.json()["data"]["result_files"] == ["https://ai.test/0.png"]

        response = await client.post(
            f"/ai/jobs/{job_id}/actions",
            json={"action": "vary", "index": 0, "vary_type": "strong"},
        )
        assert response.status_code == 202
        assert response.json()["data"]["id"] != job_id

        bad = await client.post(f"/ai/jobs/{job_id}/actions", json={"action": "remix", "index": 0})
        assert bad.status_code == 422
    await order_service.close()


@pytest.mark.asyncio
async def test_ai_action_on_unfinished_job_is_rejected(gateway, order_service, fake_api):
    fake_api.ai_script = [{"status": "processing", "percentage_complete": 5}]
    app = create_test_app(gateway, order_service)
    async with client_for(app) as client:
        job_id = (await client.post("/ai/jobs", json={"prompt": "a cat"})).json()["data"]["id"]
        response = await client.post(f"/ai/jobs/{job_id}/actions", json={"action": "upscale", "index": 0})

    assert response.status_code == 400
    assert response.json()["data"]["recovery_action"] == "fix_input"
    await order_service.close()


# ============== 目录与账户 ==============


@pytest.mark.asyncio
async def test_catalog_item_and_balance(gateway, order_service):
    app = create_test_app(gateway, order_service)
    async with client_for(app) as client:
        catalog = await client.get("/catalog")
        item = await client.get("/catalog/shutterstock/42")
        balance = await client.get("/account/balance")

    assert set(catalog.json()["data"]) == {"shutterstock", "istockphoto"}
    assert item.json()["data"]["id"] == "42"
    assert item.json()["data"]["source"] == "shutterstock"
    assert balance.json()["data"]["username"] == "demo"


# ============== Property 21: 错误类型映射为 HTTP 状态码 ==============
# **Feature: media-order, Property 21: 错误类型映射**


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "upstream,status_code,kind",
    [
        (httpx.Response(401, json={"message": "bad key"}), 401, "auth"),
        (httpx.Response(429, headers={"Retry-After": "7"}), 429, "rate_limit"),
        (httpx.Response(500, text="oops"), 502, "server"),
        (httpx.Response(200, json={"success": False, "message": "Insufficient balance"}), 502, "request_failed"),
        (httpx.Response(418, text="teapot"), 500, "unknown"),
    ],
)
async def test_gateway_errors_map_to_http_status(upstream, status_code, kind, gateway, order_service, fake_api):
    """
    **Feature: media-order, Property 21: 错误类型映射**

    外部 API 的每种错误 SHALL 映射为固定的 HTTP 状态码，并返回 {code, msg, data} 结构。
    """
    fake_api.fail_with = upstream
    app = create_test_app(gateway, order_service)
    async with client_for(app) as client:
        response = await client.get("/account/balance")

    assert response.status_code == status_code
    body = response.json()
    assert body["data"]["kind"] == kind
    assert set(body) == {"code", "msg", "data"}
    if kind == "rate_limit":
        assert response.headers["Retry-After"] == "7"


@pytest.mark.asyncio
async def test_health(gateway, order_service):
    app = create_test_app(gateway, order_service)
    async with client_for(app) as client:
        response = await client.get("/health")
    assert response.json() == {"status": "healthy", "active_polls": 0}


# ============== 启动脚本 ==============


@pytest.mark.parametrize("reload", [False, True])
def test_launcher_reads_reload_from_settings(reload: bool, monkeypatch):
    spec = importlib.util.spec_from_file_location(
        "launcher", Path(__file__).resolve().parent.parent / "main.py"
    )
    launcher = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(launcher)

    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setattr(launcher, "get_settings", lambda: Settings(reload=reload, log_level="debug"))
    launcher.main()

    assert calls == [(
        "mediaorder.main:app",
        {"host": "0.0.0.0", "port": 8000, "reload": reload, "log_level": "debug"},
    )]
