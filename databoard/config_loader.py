"""
配置加载器：将 YAML 配置文件解析为 Pydantic 模型。
环境变量可覆盖部分关键项（数据目录、签名密钥、前端地址）。
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ── 配置段 ────────────────────────────────────────────

class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 5000
    cors_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:5000", "http://localhost:5173"]
    )


class StorageConfig(BaseModel):
    data_dir: str = "data"


class SecurityConfig(BaseModel):
    secret_key: str = "development-secret-key"
    token_expire_minutes: int = 24 * 60
    algorithm: str = "HS256"


class FetchConfig(BaseModel):
    timeout_seconds: float = 30.0


class DirectoryConfig(BaseModel):
    timeout_seconds: float = 5.0


# ── 顶层配置 ──────────────────────────────────────────

class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    directory: DirectoryConfig = Field(default_factory=DirectoryConfig)
    frontend_url: str = "http://localhost:5000"

    def data_path(self) -> Path:
        path = Path(self.storage.data_dir)
        if not path.is_absolute():
            path = Path(os.getenv("DATABOARD_ROOT", ".")) / path
        return path


# ── 加载 ──────────────────────────────────────────────

_CONFIG_SEARCH_PATHS = [
    "config/config.yaml",
    "config/config.yml",
    "config.yaml",
]


def find_config_file() -> Optional[Path]:
    base = Path(os.getenv("DATABOARD_ROOT", "."))
    for p in _CONFIG_SEARCH_PATHS:
        path = base / p
        if path.is_file():
            return path
    return None


def _apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    secret = os.getenv("DATABOARD_SECRET_KEY")
    if secret:
        raw.setdefault("security", {})["secret_key"] = secret
    frontend_url = os.getenv("FRONTEND_URL")
    if frontend_url:
        raw["frontend_url"] = frontend_url
    return raw


def load_config(path: Optional[str | Path] = None) -> AppConfig:
    """
    加载配置文件；找不到时使用默认值。
    """
    if path is None:
        path = find_config_file()

    raw: Dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        with open(path, "r", encoding="utf-8") as fp:
            raw = yaml.safe_load(fp) or {}
        logger.info(f"已加载配置文件: {path}")
    else:
        logger.info("未找到配置文件，使用默认配置")

    config = AppConfig.model_validate(_apply_env_overrides(raw))
    if config.security.secret_key == SecurityConfig().secret_key:
        logger.warning("正在使用默认签名密钥，生产环境请设置 DATABOARD_SECRET_KEY")
    return config
