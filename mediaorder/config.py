"""
配置管理模块

使用 Pydantic Settings 管理环境变量配置。
支持从 .env 文件或环境变量加载配置。
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """应用配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Fulfillment API 配置
    fulfillment_base_url: str = Field(
        default="https://nehtw.com/api",
        description="Fulfillment API 基础 URL",
    )
    fulfillment_api_key: str = Field(
        default="",
        description="Fulfillment API Key (X-Api-Key 请求头)",
    )

    # HTTP 客户端配置
    http_timeout: float = Field(
        default=30.0,
        description="HTTP 请求超时时间（秒）",
    )
    rate_limit_min_interval: float = Field(
        default=2.0,
        description="两次外部请求之间的最小间隔（秒）",
    )

    # 轮询配置
    poll_interval: float = Field(
        default=2.0,
        description="单任务轮询间隔（秒）",
    )
    batch_poll_interval: float = Field(
        default=5.0,
        description="批量轮询间隔（秒）",
    )
    max_polling_time: float = Field(
        default=1800.0,
        description="轮询最长时间（秒）",
    )
    poll_max_backoff: float = Field(
        default=30.0,
        description="限流退避的最大延迟（秒）",
    )
    terminal_cache_size: int = Field(
        default=1000,
        description="每个轮询器缓存的终态会话数量上限",
    )

    # 重试配置（调用方使用 with_retry 时生效）
    retry_max_attempts: int = Field(
        default=3,
        description="最大重试次数",
    )
    retry_base_delay: float = Field(
        default=2.0,
        description="重试基础延迟（秒）",
    )
    retry_max_delay: float = Field(
        default=10.0,
        description="重试最大延迟（秒）",
    )

    # 定价配置
    max_supported_units: int = Field(
        default=500,
        description="单次可定价的最大单位数",
    )

    log_level: str = Field(
        default="info",
        description="uvicorn 日志级别",
    )
    reload: bool = Field(
        default=False,
        description="uvicorn 热重载（仅开发环境）",
    )


@lru_cache
def get_settings() -> Settings:
    """
    获取应用配置（单例模式）

    Returns:
        Settings: 应用配置实例
    """
    return Settings()
