"""应用主入口"""

import asyncio
import sys
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

# 在读取配置前，从 .env 文件加载环境变量
try:
    load_dotenv()
except Exception as e:  # noqa: BLE001
    # logger 还未配置，使用 print 输出警告
    print(f"Warning: Failed to load .env file: {e}. Continuing with environment variables...")

from fastapi import FastAPI
from loguru import logger

from . import __version__
from .config_loader import ConfigError, Settings, load_settings
from .infrastructure import (
    ServerManager,
    ServerStartupError,
    ShutdownTimeoutError,
    setup_logging,
    sign_payload,
)
from .infrastructure.microapp import MicroAppClient


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：仅记录启动与关闭"""
    settings: Settings = app.state.settings
    logger.info("=" * 80)
    logger.info(f"[服务] 小程序接口演示启动，AppID: {settings.appid or '未配置'}")

    yield

    logger.info("[服务] 应用关闭")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """创建FastAPI应用实例"""
    settings = settings or load_settings()

    app = FastAPI(
        title="MicroApp Demo",
        description="字节跳动小程序服务端接口演示",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.microapp_client = MicroAppClient(
        appid=settings.appid,
        secret=settings.secret,
        api_base=settings.api_base,
    )
    app.state.signer = sign_payload

    @app.get("/health")
    async def health_check():
        """健康检查接口"""
        return {"status": "ok", "service": "microapp-demo"}

    from .presentation.routes import microapp
    app.include_router(microapp.router, prefix="/microapp", tags=["microapp"])

    return app


def main() -> None:
    """读取配置并启动服务，收到 SIGINT / SIGTERM 后优雅关闭"""
    try:
        settings = load_settings()
        host, port = settings.listen_address
    except ConfigError as exc:
        logger.critical(f"[配置] {exc}")
        sys.exit(1)

    setup_logging(settings.log_level, settings.log_dir)

    manager = ServerManager(
        create_app(settings),
        host=host,
        port=port,
        shutdown_timeout=settings.shutdown_timeout,
    )
    try:
        asyncio.run(manager.run())
    except (ServerStartupError, ShutdownTimeoutError) as exc:
        logger.critical(f"[服务] {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
