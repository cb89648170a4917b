"""
数据模型：用户、仪表盘、数据源、卡片、设置、密码重置 token，
以及按数据源类型区分的配置（tagged union）。

持久化和 API 使用 camelCase 字段名，与前端契约一致。
"""

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from databoard.errors import ValidationError
from databoard.refresh import RefreshUnit, effective_refresh_ms

GRID_SIZE = 20
MIN_CARD_WIDTH = 200
MIN_CARD_HEIGHT = 150


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def snap_to_grid(value: float) -> int:
    # 与前端 Math.round 一致：.5 向上取整
    return int(math.floor(value / GRID_SIZE + 0.5)) * GRID_SIZE


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> dict[str, Any]:
        """序列化为可写入 TinyDB / 返回给前端的 dict。"""
        return self.model_dump(mode="json", by_alias=True)


# ── 枚举 ──────────────────────────────────────────────

class Role(str, Enum):
    ADMIN = "admin"
    STANDARD = "standard"


class AuthMethod(str, Enum):
    LOCAL = "local"
    LDAP = "ldap"


class SourceType(str, Enum):
    API = "api"
    JIRA = "jira"
    SMAX = "smax"
    SCRAPING = "scraping"
    DATABASE = "database"


class VisualizationType(str, Enum):
    TABLE = "table"
    CHART = "chart"
    GRAPH = "graph"


# ── 用户 ──────────────────────────────────────────────

class User(CamelModel):
    id: str = Field(default_factory=new_id)
    username: str
    email: str
    password: Optional[str] = None  # bcrypt hash
    role: Role = Role.STANDARD
    auth_method: AuthMethod = AuthMethod.LOCAL
    is_active: bool = True
    last_login: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def public(self) -> dict[str, Any]:
        """去掉密码 hash 后的表示。"""
        record = self.to_record()
        record.pop("password", None)
        return record


class UserCreate(CamelModel):
    username: str
    email: str
    password: Optional[str] = None
    role: Role = Role.STANDARD
    auth_method: AuthMethod = AuthMethod.LOCAL
    is_active: bool = True


class UserUpdate(CamelModel):
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[Role] = None
    auth_method: Optional[AuthMethod] = None
    is_active: Optional[bool] = None


# ── 仪表盘 ────────────────────────────────────────────

class Dashboard(CamelModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    logo_url: Optional[str] = None
    owner_id: str
    access_level: str = "private"
    is_public: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DashboardCreate(CamelModel):
    name: str
    description: Optional[str] = None
    logo_url: Optional[str] = None
    access_level: str = "private"
    is_public: bool = False


class DashboardUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    # 显式传 null 表示移除 logo
    logo_url: Optional[str] = None
    access_level: Optional[str] = None
    is_public: Optional[bool] = None


# ── 卡片 ──────────────────────────────────────────────

class Position(BaseModel):
    x: int = 0
    y: int = 0

    def snapped(self) -> "Position":
        return Position(x=snap_to_grid(max(0, self.x)), y=snap_to_grid(max(0, self.y)))


class Size(BaseModel):
    width: int = 300
    height: int = 200

    def snapped(self) -> "Size":
        return Size(
            width=snap_to_grid(max(MIN_CARD_WIDTH, self.width)),
            height=snap_to_grid(max(MIN_CARD_HEIGHT, self.height)),
        )


class DashboardCard(CamelModel):
    id: str = Field(default_factory=new_id)
    dashboard_id: str
    data_source_id: Optional[str] = None
    title: str
    visualization_type: VisualizationType = VisualizationType.TABLE
    position: Position = Field(default_factory=Position)
    size: Size = Field(default_factory=Size)
    config: Dict[str, Any] = Field(default_factory=dict)
    refresh_interval: Optional[int] = 60  # 秒
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("position")
    @classmethod
    def _snap_position(cls, v: Position) -> Position:
        return v.snapped()

    @field_validator("size")
    @classmethod
    def _snap_size(cls, v: Size) -> Size:
        return v.snapped()


class CardCreate(CamelModel):
    data_source_id: Optional[str] = None
    title: str
    visualization_type: VisualizationType = VisualizationType.TABLE
    position: Position = Field(default_factory=Position)
    size: Size = Field(default_factory=Size)
    config: Dict[str, Any] = Field(default_factory=dict)
    refresh_interval: Optional[int] = 60


class CardUpdate(CamelModel):
    data_source_id: Optional[str] = None
    title: Optional[str] = None
    visualization_type: Optional[VisualizationType] = None
    position: Optional[Position] = None
    size: Optional[Size] = None
    config: Optional[Dict[str, Any]] = None
    refresh_interval: Optional[int] = None


# ── 数据源 ────────────────────────────────────────────

class DataSource(CamelModel):
    id: str = Field(default_factory=new_id)
    name: str
    type: SourceType
    config: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    last_pull_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class DataSourceCreate(CamelModel):
    name: str
    type: SourceType
    config: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class DataSourceUpdate(CamelModel):
    name: Optional[str] = None
    type: Optional[SourceType] = None
    config: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class SourceTestRequest(CamelModel):
    type: SourceType
    config: Dict[str, Any] = Field(default_factory=dict)


# ── 设置 / 密码重置 ───────────────────────────────────

class Setting(CamelModel):
    key: str
    value: Any = None
    updated_at: datetime = Field(default_factory=utcnow)


class PasswordResetToken(CamelModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    token: str
    expires_at: datetime
    is_used: bool = False
    created_at: datetime = Field(default_factory=utcnow)


# ── 数据源配置（按 type 区分） ─────────────────────────

class BaseSourceConfig(CamelModel):
    selected_fields: List[str] = Field(default_factory=list)
    field_display_names: Dict[str, str] = Field(default_factory=dict)
    refresh_interval: int = Field(default=5, ge=1, le=999)
    refresh_unit: RefreshUnit = RefreshUnit.MINUTES

    def require(self, *names: str):
        """检查必填字段，缺失时抛出 ValidationError（使用前端字段名）。"""
        for name in names:
            value = getattr(self, name)
            if value is None or (isinstance(value, str) and not value.strip()):
                alias = type(self).model_fields[name].alias or name
                raise ValidationError(f"Missing required field: {alias}")

    def refresh_ms(self) -> Optional[int]:
        return effective_refresh_ms(self.refresh_interval, self.refresh_unit.value)


class ApiConfig(BaseSourceConfig):
    curl_request: str = ""
    data_path: Optional[str] = None  # JSONPath，选取记录数组


class JiraConfig(BaseSourceConfig):
    jira_url: str = ""
    jira_username: str = ""
    jira_password: str = ""
    selected_jira_project: Optional[str] = None
    jira_query: Optional[str] = None


class SmaxConfig(BaseSourceConfig):
    smax_url: str = ""
    smax_tenant_id: str = ""
    smax_username: str = ""
    smax_password: str = ""
    selected_smax_service: Optional[str] = None
    smax_query: Optional[str] = None


class ColumnMapping(BaseModel):
    name: str
    expr: str  # CSS Selector，相对于行元素
    type: str = "str"  # str / int / float / bool


class ScrapingConfig(BaseSourceConfig):
    url: str = ""
    row_selector: str = ""
    columns: List[ColumnMapping] = Field(default_factory=list)


class DatabaseConfig(BaseSourceConfig):
    connection_url: str = ""
    query: str = ""
    row_limit: int = Field(default=1000, ge=1)


SourceConfig = Union[ApiConfig, JiraConfig, SmaxConfig, ScrapingConfig, DatabaseConfig]

SOURCE_CONFIG_MODELS: dict[SourceType, type[BaseSourceConfig]] = {
    SourceType.API: ApiConfig,
    SourceType.JIRA: JiraConfig,
    SourceType.SMAX: SmaxConfig,
    SourceType.SCRAPING: ScrapingConfig,
    SourceType.DATABASE: DatabaseConfig,
}


def parse_source_type(source_type: str | SourceType) -> SourceType:
    try:
        return SourceType(source_type)
    except ValueError:
        raise ValidationError(f"Unsupported data source type: {source_type}")


def parse_source_config(source_type: str | SourceType, raw: dict[str, Any] | None) -> SourceConfig:
    """根据数据源类型把原始 config dict 校验为对应的配置模型。"""
    stype = parse_source_type(source_type)
    model = SOURCE_CONFIG_MODELS[stype]
    try:
        return model.model_validate(raw or {})
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationError(f"Invalid {stype.value} configuration: {location} {first.get('msg')}".strip())
