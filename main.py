"""
DataBoard 主入口：启动 FastAPI 后端服务。
"""

import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from databoard import api
from databoard.auth.ldap_client import DirectoryClient
from databoard.auth.manager import AuthManager
from databoard.config_loader import AppConfig, load_config
from databoard.executor import Executor
from databoard.mail import MailService
from databoard.secrets_controller import SecretsController
from databoard.settings import SettingsManager
from databoard.storage import Storage

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """启动时创建默认管理员并清理过期的重置 token；关闭时关闭数据库。"""
    storage = app.state.storage
    app.state.auth_manager.create_default_admin()
    removed = storage.cleanup_expired_tokens()
    if removed:
        logger.info(f"已清理 {removed} 个过期的密码重置 token")

    yield  # 应用运行中

    logger.info("正在关闭...")
    storage.close()


def create_app(
    config: AppConfig | None = None,
    storage: Storage | None = None,
    secrets_controller: SecretsController | None = None,
) -> FastAPI:
    """创建并配置 FastAPI 应用。"""
    if config is None:
        logger.info("正在加载配置...")
        config = load_config()

    app = FastAPI(
        title="DataBoard API",
        description="Dashboard builder backend: data sources, dashboards and cards",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── 初始化核心组件 ────────────────────────────────────────
    data_dir = config.data_path()
    if storage is None:
        storage = Storage(data_dir / "databoard.json")

    # 设置中的敏感字段单独存放
    if secrets_controller is None:
        secrets_controller = SecretsController(data_dir)
    settings_manager = SettingsManager(storage, secrets_controller)

    mail_service = MailService(settings_manager, frontend_url=config.frontend_url)

    directory_timeout = config.directory.timeout_seconds
    auth_manager = AuthManager(
        storage,
        settings_manager,
        security=config.security,
        mail=mail_service,
        directory_factory=lambda ldap_settings: DirectoryClient(ldap_settings, timeout=directory_timeout),
    )

    executor = Executor(storage, timeout=config.fetch.timeout_seconds)

    # 注入依赖到 API 模块
    api.init_api(
        storage=storage,
        executor=executor,
        auth_manager=auth_manager,
        settings_manager=settings_manager,
        mail_service=mail_service,
    )
    app.include_router(api.router)

    # 将组件存到 app.state，供 lifespan 访问
    app.state.config = config
    app.state.storage = storage
    app.state.auth_manager = auth_manager
    app.state.executor = executor

    return app


def main():
    """主入口。"""
    config = load_config()
    port = int(sys.argv[1]) if len(sys.argv) > 1 else config.server.port

    logger.info(f"🚀 启动 DataBoard 后端 (port={port})...")

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
