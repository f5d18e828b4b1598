"""
Fulfillment API 客户端

封装与外部 Fulfillment API 的交互，包括：
- 库存站点目录、素材信息、库存订单、订单状态、下载链接
- AI 生成任务的创建、结果查询、vary / upscale 操作
- 账户余额

每个调用都先经过 RateLimiter，再发起传输，失败统一交给 ErrorClassifier 分类。
客户端不做自动重试，重试策略由调用方（StatusPoller 或 with_retry）决定。
"""

import logging
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from mediaorder.config import Settings, get_settings
from mediaorder.infra.envelope import decode_envelope
from mediaorder.infra.gateway_errors import (
    ConfigurationError,
    ErrorClassifier,
    RequestFailedError,
    ServerError,
    ValidationError,
)
from mediaorder.infra.rate_limiter import RateLimiter
from mediaorder.schemas import (
    AccountBalance,
    AIAction,
    AIJobResult,
    DownloadLinkResult,
    LinkType,
    OrderStatusResult,
    StockItem,
    StockSite,
    VaryType,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _require(value: str | None, field: str) -> str:
    """校验必填字符串参数"""
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required", field=field)
    return str(value).strip()


class GatewayClient:
    """Fulfillment API 客户端"""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        rate_limiter: RateLimiter | None = None,
        http_client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
    ):
        """
        初始化客户端

        Args:
            base_url: API 基础 URL，默认从配置读取
            api_key: API Key，默认从配置读取；为空时立即失败
            timeout: 传输超时（秒）
            rate_limiter: 限流器，默认按配置的最小间隔新建
            http_client: 可选的 httpx 异步客户端，用于测试注入

        Raises:
            ConfigurationError: API Key 或 base URL 缺失
        """
        self._settings = settings or get_settings()
        self.base_url = (base_url or self._settings.fulfillment_base_url).rstrip("/")
        self._api_key = (api_key if api_key is not None else self._settings.fulfillment_api_key).strip()
        self.timeout = timeout if timeout is not None else self._settings.http_timeout

        if not self._api_key:
            raise ConfigurationError("Fulfillment API key is missing")
        if not self.base_url:
            raise ConfigurationError("Fulfillment API base URL is missing")

        self.rate_limiter = rate_limiter or RateLimiter(self._settings.rate_limit_min_interval)
        self._http_client = http_client

    @property
    def headers(self) -> dict[str, str]:
        return {
            "X-Api-Key": self._api_key,
            "Content-Type": "application/json",
        }

    async def __aenter__(self) -> "GatewayClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """关闭注入的 HTTP 客户端"""
        if self._http_client is not None:
            await self._http_client.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        """获取 HTTP 客户端"""
        if self._http_client:
            return self._http_client
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
        )

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        """
        发起一次限流后的请求并解码信封

        Returns:
            信封中的负载

        Raises:
            GatewayError: 已分类的错误
        """
        await self.rate_limiter.acquire()

        client = self._get_client()
        try:
            logger.debug(f"{method} {path} params={params}")
            try:
                response = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    params=params,
                    json=json,
                    headers=self.headers,
                )
            except httpx.HTTPError as e:
                classified = ErrorClassifier.classify(e)
                logger.warning(f"{method} {path} failed: {classified}")
                raise classified from e

            ErrorClassifier.handle_response_error(response)
            try:
                body = response.json()
            except ValueError as e:
                raise ServerError(
                    f"Invalid JSON in response from {path}",
                    http_status=response.status_code,
                    details={"body": response.text[:500]},
                ) from e
        finally:
            if not self._http_client:
                await client.aclose()

        envelope = decode_envelope(body)
        payload = envelope.unwrap()
        logger.debug(f"{method} {path} -> {response.status_code}")
        return payload

    @staticmethod
    def _expect_mapping(payload: Any, path: str) -> dict[str, Any]:
        if not isinstance(payload, dict):
            raise ServerError(f"Unexpected payload shape from {path}", details={"payload": payload})
        return payload

    @staticmethod
    def _parse(model: type[ModelT], payload: Any, path: str) -> ModelT:
        """
        按响应模型校验负载

        Raises:
            ServerError: 负载缺少字段或字段类型不符
        """
        try:
            return model.model_validate(payload)
        except SchemaValidationError as e:
            errors = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]
            logger.warning(f"Unexpected {model.__name__} payload from {path}: {errors}")
            raise ServerError(
                f"Unexpected payload shape from {path}",
                details={"model": model.__name__, "errors": errors},
            ) from e

    # ========== 库存素材 ==========

    async def get_catalog(self) -> dict[str, StockSite]:
        """
        获取可用的库存站点及价格

        Returns:
            dict[str, StockSite]: 站点名 -> 站点信息
        """
        payload = self._expect_mapping(await self._request("GET", "/stocksites"), "/stocksites")
        return {
            name: self._parse(StockSite, site, "/stocksites")
            for name, site in payload.items()
            if isinstance(site, dict)
        }

    async def get_item_info(
        self,
        provider: str,
        item_id: str,
        url: str | None = None,
    ) -> StockItem:
        """
        获取素材信息（标题、预览图、花费等）

        Args:
            provider: 站点名称
            item_id: 素材 ID
            url: 可选的素材原始 URL
        """
        provider = _require(provider, "provider")
        item_id = _require(item_id, "item_id")
        params = {"url": url} if url else None
        path = f"/stockinfo/{provider}/{item_id}"
        payload = self._expect_mapping(await self._request("GET", path, params=params), path)
        return self._parse(StockItem, payload, path)

    async def create_order(
        self,
        provider: str,
        item_id: str,
        url: str | None = None,
    ) -> str:
        """
        创建库存订单

        Returns:
            str: 外部订单 ID (task_id)
        """
        provider = _require(provider, "provider")
        item_id = _require(item_id, "item_id")
        params = {"url": url} if url else None
        path = f"/stockorder/{provider}/{item_id}"
        payload = self._expect_mapping(await self._request("GET", path, params=params), path)
        order_id = payload.get("task_id")
        if not order_id:
            raise RequestFailedError("Order created without task_id", details=payload)
        logger.info(f"Created stock order {order_id} for {provider}/{item_id}")
        return str(order_id)

    async def get_order_status(
        self,
        order_id: str,
        response_type: str = "any",
    ) -> OrderStatusResult:
        """
        查询库存订单状态

        Returns:
            OrderStatusResult: processing / ready / error
        """
        order_id = _require(order_id, "order_id")
        if response_type not in ("any", "gdrive"):
            raise ValidationError(
                f"response_type must be 'any' or 'gdrive', got {response_type!r}",
                field="response_type",
            )
        path = f"/order/{order_id}/status"
        payload = self._expect_mapping(
            await self._request("GET", path, params={"responsetype": response_type}),
            path,
        )
        return self._parse(OrderStatusResult, payload, path)

    async def get_download_link(
        self,
        order_id: str,
        link_type: str | LinkType = LinkType.ANY,
    ) -> str:
        """
        获取订单下载链接

        Returns:
            str: 下载 URL

        Raises:
            RequestFailedError: 文件仍在准备中（可重试）
        """
        order_id = _require(order_id, "order_id")
        try:
            link_type = LinkType(link_type)
        except ValueError:
            raise ValidationError(f"Unsupported link type: {link_type!r}", field="link_type") from None
        path = f"/v2/order/{order_id}/download"
        payload = self._expect_mapping(
            await self._request("GET", path, params={"responsetype": link_type.value}),
            path,
        )
        result = self._parse(DownloadLinkResult, payload, path)
        if result.status != "ready" or not result.download_link:
            raise RequestFailedError(
                f"Download link for {order_id} is not ready (status={result.status})",
                code="NOT_READY",
                retryable=True,
                details=payload,
            )
        return result.download_link

    # ========== AI 生成 ==========

    async def create_ai_job(self, prompt: str) -> str:
        """
        提交 AI 图像生成任务

        Returns:
            str: AI 任务 ID (job_id)
        """
        prompt = _require(prompt, "prompt")
        payload = self._expect_mapping(
            await self._request("POST", "/aig/create", json={"prompt": prompt}),
            "/aig/create",
        )
        job_id = payload.get("job_id")
        if not job_id:
            raise RequestFailedError("AI job created without job_id", details=payload)
        logger.info(f"Created AI job {job_id}")
        return str(job_id)

    async def get_ai_result(self, job_id: str) -> AIJobResult:
        """查询 AI 任务结果（状态、完成百分比、文件列表）"""
        job_id = _require(job_id, "job_id")
        path = f"/aig/public/{job_id}"
        payload = self._expect_mapping(await self._request("GET", path), path)
        return self._parse(AIJobResult, payload, path)

    async def perform_ai_action(
        self,
        job_id: str,
        action: str | AIAction,
        index: int,
        vary_type: str | VaryType | None = None,
    ) -> str:
        """
        对 AI 结果执行 vary / upscale 操作

        Returns:
            str: 新的 AI 任务 ID
        """
        job_id = _require(job_id, "job_id")
        try:
            action = AIAction(action)
        except ValueError:
            raise ValidationError(f"Unsupported AI action: {action!r}", field="action") from None
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise ValidationError("index must be a non-negative integer", field="index")

        request: dict[str, Any] = {"job_id": job_id, "action": action.value, "index": index}
        if vary_type is not None:
            try:
                vary_type = VaryType(vary_type)
            except ValueError:
                raise ValidationError(f"Unsupported vary type: {vary_type!r}", field="vary_type") from None
            if action is AIAction.VARY:
                request["vary_type"] = vary_type.value

        payload = self._expect_mapping(
            await self._request("POST", "/aig/actions", json=request),
            "/aig/actions",
        )
        new_job_id = payload.get("job_id")
        if not new_job_id:
            raise RequestFailedError("AI action returned no job_id", details=payload)
        logger.info(f"AI action {action.value}[{index}] on {job_id} -> {new_job_id}")
        return str(new_job_id)

    # ========== 账户 ==========

    async def get_account_balance(self) -> AccountBalance:
        """获取账户余额"""
        payload = self._expect_mapping(await self._request("GET", "/me"), "/me")
        return self._parse(AccountBalance, payload, "/me")
