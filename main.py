"""
Media Order 订单服务启动脚本

使用 uvicorn 启动 FastAPI 应用。
"""

import uvicorn

from mediaorder.config import get_settings


def main() -> None:
    """
    启动应用

    配置 uvicorn 启动参数并运行服务。
    """
    settings = get_settings()

    uvicorn.run(
        "mediaorder.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.reload,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
