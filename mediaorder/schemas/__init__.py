"""
Pydantic Schemas

定义 Fulfillment API 的响应负载，以及本服务 HTTP 接口的请求体和响应体。
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============== 枚举类型 ==============

class LinkType(str, Enum):
    """下载链接类型"""
    ANY = "any"
    GDRIVE = "gdrive"
    MYDRIVELINK = "mydrivelink"
    ASIA = "asia"


class AIAction(str, Enum):
    """AI 结果操作"""
    VARY = "vary"
    UPSCALE = "upscale"


class VaryType(str, Enum):
    """变体强度"""
    SUBTLE = "subtle"
    STRONG = "strong"


# ============== Fulfillment API 负载 ==============

class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)


class StockSite(_Payload):
    """库存站点"""
    active: bool = Field(default=False, description="站点是否可用")
    price: Decimal = Field(default=Decimal("0"), description="单次下载价格（点数）")


class StockItem(_Payload):
    """库存素材信息"""
    id: str = Field(..., description="素材 ID")
    source: str = Field(default="", description="来源站点")
    title: str = Field(default="", description="标题")
    image: str | None = Field(default=None, description="预览图")
    cost: Decimal = Field(default=Decimal("0"), description="下载花费（点数）")
    ext: str | None = Field(default=None, description="文件扩展名")
    name: str | None = Field(default=None, description="文件名")
    author: str | None = Field(default=None, description="作者")
    size_in_bytes: str | None = Field(default=None, alias="sizeInBytes", description="文件大小")


class OrderStatusResult(_Payload):
    """库存订单状态"""
    status: Literal["processing", "ready", "error"] = Field(..., description="订单状态")
    message: str | None = Field(default=None, description="附加信息")


class DownloadLinkResult(_Payload):
    """下载链接"""
    status: str = Field(..., description="downloading / ready")
    download_link: str | None = Field(default=None, alias="downloadLink", description="下载地址")
    file_name: str | None = Field(default=None, alias="fileName", description="文件名")
    link_type: str | None = Field(default=None, alias="linkType", description="链接类型")


class AIFile(_Payload):
    """AI 生成的文件"""
    index: int = Field(..., description="文件序号")
    thumb_sm: str | None = Field(default=None, description="小缩略图")
    thumb_lg: str | None = Field(default=None, description="大缩略图")
    download: str | None = Field(default=None, description="下载地址")


class AIJobResult(_Payload):
    """AI 任务结果"""
    id: str = Field(default="", alias="__id", description="任务 ID")
    prompt: str = Field(default="", description="提示词")
    type: str | None = Field(default=None, description="imagine / vary / upscale")
    cost: Decimal | None = Field(default=None, description="花费")
    status: str = Field(..., description="processing / completed / failed")
    percentage_complete: int = Field(default=0, ge=0, le=100, description="完成百分比")
    error_message: str | None = Field(default=None, description="错误信息")
    files: list[AIFile] = Field(default_factory=list, description="生成文件")

    @field_validator("percentage_complete", mode="before")
    @classmethod
    def clamp_percentage(cls, v: Any) -> int:
        if v is None:
            return 0
        return max(0, min(100, int(float(v))))

    @field_validator("files", mode="before")
    @classmethod
    def default_files(cls, v: Any) -> Any:
        return v or []


class AccountBalance(_Payload):
    """账户余额"""
    username: str = Field(default="", description="用户名")
    balance: Decimal = Field(default=Decimal("0"), description="余额（点数）")


# ============== 请求模型 ==============

class QuoteRequest(BaseModel):
    """定价请求"""
    units: int = Field(..., strict=True, description="购买单位数")


class StockOrderRequest(BaseModel):
    """库存订单请求"""
    provider: str = Field(..., min_length=1, description="站点名称")
    item_id: str = Field(..., min_length=1, description="素材 ID")
    url: str | None = Field(default=None, description="素材原始 URL")
    units: int = Field(default=1, strict=True, description="本订单消耗的单位数")


class AIJobRequest(BaseModel):
    """AI 生成请求"""
    prompt: str = Field(..., min_length=1, description="提示词")
    units: int = Field(default=1, strict=True, description="本任务消耗的单位数")


class AIActionRequest(BaseModel):
    """AI 结果操作请求"""
    action: AIAction = Field(..., description="vary / upscale")
    index: int = Field(..., ge=0, description="图片序号")
    vary_type: VaryType | None = Field(default=None, description="变体强度 (仅 vary)")
    units: int = Field(default=1, strict=True, description="本操作消耗的单位数")


# ============== 响应模型 ==============

class TierData(BaseModel):
    """定价档位"""
    label: str
    min_units: int
    max_units: int
    rate_per_unit: Decimal


class TierBreakdownData(BaseModel):
    """档位明细（仅供展示，不参与计价）"""
    tier: TierData
    units_in_tier: int
    tier_cost: Decimal
    is_used: bool


class QuoteData(BaseModel):
    """定价结果"""
    total_units: int
    total_cost: Decimal
    average_cost_per_unit: Decimal
    tier: TierData
    tier_breakdown: list[TierBreakdownData]
    total_savings: Decimal
    savings_percentage: Decimal
    summary: str


class QuoteResponse(BaseModel):
    """定价响应"""
    code: int = Field(default=0, description="响应码，0 表示成功")
    msg: str = Field(default="success", description="响应消息")
    data: QuoteData


class OrderData(BaseModel):
    """订单数据"""
    id: str = Field(..., description="外部订单 / 任务 ID")
    kind: str = Field(..., description="stock / ai")
    status: str = Field(..., description="订单状态")
    cost: Decimal = Field(..., description="订单金额")
    units: int = Field(..., description="单位数")
    progress: int | None = Field(default=None, description="进度百分比")
    result_files: list[str] | None = Field(default=None, description="结果文件")
    download_url: str | None = Field(default=None, description="下载地址")
    error_message: str | None = Field(default=None, description="错误信息")
    created_at: str
    updated_at: str


class OrderResponse(BaseModel):
    """订单响应"""
    code: int = Field(default=0, description="响应码")
    msg: str = Field(default="success", description="响应消息")
    data: OrderData


class OrderListResponse(BaseModel):
    """订单列表响应"""
    code: int = Field(default=0, description="响应码")
    msg: str = Field(default="success", description="响应消息")
    data: list[OrderData]


class DownloadData(BaseModel):
    """下载链接数据"""
    order_id: str
    link_type: str
    url: str


class DownloadResponse(BaseModel):
    """下载链接响应"""
    code: int = Field(default=0, description="响应码")
    msg: str = Field(default="success", description="响应消息")
    data: DownloadData


class ErrorResponse(BaseModel):
    """错误响应"""
    code: int = Field(..., description="错误码")
    msg: str = Field(..., description="错误消息")
    data: dict[str, Any] | None = Field(default=None, description="错误详情")


class TierListResponse(BaseModel):
    """档位表响应"""
    code: int = Field(default=0, description="响应码")
    msg: str = Field(default="success", description="响应消息")
    data: list[TierData]


class CatalogResponse(BaseModel):
    """库存站点响应"""
    code: int = Field(default=0, description="响应码")
    msg: str = Field(default="success", description="响应消息")
    data: dict[str, StockSite]


class StockItemResponse(BaseModel):
    """素材信息响应"""
    code: int = Field(default=0, description="响应码")
    msg: str = Field(default="success", description="响应消息")
    data: StockItem


class BalanceResponse(BaseModel):
    """账户余额响应"""
    code: int = Field(default=0, description="响应码")
    msg: str = Field(default="success", description="响应消息")
    data: AccountBalance
