"""
FastAPI 路由：暴露 REST API 供仪表盘前端调用。
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import AliasChoices, Field

from databoard.adapters.base import FetchResult
from databoard.auth.manager import hash_password
from databoard.errors import MailError, SourceError, ValidationError
from databoard.models import (
    AuthMethod,
    CamelModel,
    CardCreate,
    CardUpdate,
    Dashboard,
    DashboardCard,
    DashboardCreate,
    DashboardUpdate,
    DataSource,
    DataSourceCreate,
    DataSourceUpdate,
    Role,
    SourceTestRequest,
    User,
    UserCreate,
    UserUpdate,
    parse_source_config,
)
from databoard.settings import LDAP_KEY, MAIL_KEY
from databoard.source_state import SourceStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# 这些全局引用会在 main.py 中注入
_storage = None
_executor = None
_auth_manager = None
_settings = None
_mail = None

DATA_SOURCE_NOT_FOUND = "Data source not found"


def init_api(storage, executor, auth_manager, settings_manager, mail_service):
    """注入全局依赖（由 main.py 调用）。"""
    global _storage, _executor, _auth_manager, _settings, _mail
    _storage = storage
    _executor = executor
    _auth_manager = auth_manager
    _settings = settings_manager
    _mail = mail_service


# ── 请求体 ────────────────────────────────────────────

class LoginRequest(CamelModel):
    # 用户名或邮箱；兼容旧请求中的 username 字段
    identifier: str = Field(validation_alias=AliasChoices("identifier", "username"))
    password: str


class ResetRequest(CamelModel):
    email: str


class ResetConfirm(CamelModel):
    token: str
    password: str


class SettingWrite(CamelModel):
    key: str
    value: Any = None


class LdapTestRequest(CamelModel):
    username: str
    password: str
    config: dict[str, Any] = Field(default_factory=dict)


class MailTestRequest(CamelModel):
    to: str
    config: dict[str, Any] = Field(default_factory=dict)


# ── 鉴权依赖 ──────────────────────────────────────────

_bearer = HTTPBearer(auto_error=False)


async def current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)) -> User:
    if credentials is None:
        raise HTTPException(401, "Not authenticated", headers={"WWW-Authenticate": "Bearer"})
    user = _auth_manager.user_from_token(credentials.credentials)
    if user is None:
        raise HTTPException(401, "Invalid or expired token", headers={"WWW-Authenticate": "Bearer"})
    return user


async def require_admin(user: User = Depends(current_user)) -> User:
    if user.role != Role.ADMIN:
        raise HTTPException(403, "Admin access required")
    return user


# ── 认证 ──────────────────────────────────────────────

@router.post("/auth/login")
async def login(body: LoginRequest) -> dict[str, Any]:
    user = await _auth_manager.authenticate(body.identifier, body.password)
    if user is None:
        raise HTTPException(401, "Invalid credentials")
    logger.info(f"用户登录: {user.username} ({user.auth_method.value})")
    return {"token": _auth_manager.create_access_token(user), "user": user.public()}


@router.post("/auth/logout")
async def logout() -> dict[str, Any]:
    # token 无状态，由前端丢弃
    return {"message": "Logged out"}


@router.get("/auth/me")
async def me(user: User = Depends(current_user)) -> dict[str, Any]:
    return user.public()


@router.post("/auth/password-reset/request")
async def password_reset_request(body: ResetRequest) -> dict[str, Any]:
    try:
        await _auth_manager.request_password_reset(body.email)
    except ValidationError as e:
        raise HTTPException(400, e.message)
    except MailError as e:
        logger.error(f"发送密码重置邮件失败: {e}")
        raise HTTPException(500, "Failed to send password reset email")
    return {"message": "If the email exists, a password reset link has been sent"}


@router.get("/auth/verify-reset-token")
async def verify_reset_token(token: str) -> dict[str, Any]:
    try:
        _auth_manager.verify_reset_token(token)
    except ValidationError as e:
        raise HTTPException(400, e.message)
    return {"valid": True}


@router.post("/auth/password-reset/confirm")
async def password_reset_confirm(body: ResetConfirm) -> dict[str, Any]:
    try:
        _auth_manager.reset_password(body.token, body.password)
    except ValidationError as e:
        raise HTTPException(400, e.message)
    return {"message": "Password has been reset"}


# ── 用户管理（管理员） ────────────────────────────────

def _changes(body: CamelModel, nullable: tuple[str, ...] = ()) -> dict[str, Any]:
    """请求中出现的字段；不可为空的字段传 null 视为未修改。"""
    return {
        key: value
        for key, value in body.model_dump(exclude_unset=True).items()
        if value is not None or key in nullable
    }


def _hash_if_present(changes: dict[str, Any]) -> dict[str, Any]:
    if changes.get("password"):
        changes["password"] = hash_password(changes["password"])
    else:
        changes.pop("password", None)
    return changes


@router.get("/users")
async def list_users(admin: User = Depends(require_admin)) -> list[dict]:
    return [u.public() for u in _storage.list_users()]


@router.post("/users")
async def create_user(body: UserCreate, admin: User = Depends(require_admin)) -> dict[str, Any]:
    if _storage.get_user_by_username(body.username):
        raise HTTPException(400, "Username already exists")
    if _storage.get_user_by_email(body.email):
        raise HTTPException(400, "Email already exists")
    if body.auth_method == AuthMethod.LOCAL and not body.password:
        raise HTTPException(400, "Password is required for local users")

    user = User(**_hash_if_present(body.model_dump()))
    _storage.create_user(user)
    logger.info(f"用户已创建: {user.username} by {admin.username}")
    return user.public()


@router.put("/users/{user_id}")
async def update_user(user_id: str, body: UserUpdate, admin: User = Depends(require_admin)) -> dict[str, Any]:
    changes = _hash_if_present(_changes(body))
    for key, lookup in (("username", _storage.get_user_by_username), ("email", _storage.get_user_by_email)):
        if changes.get(key):
            other = lookup(changes[key])
            if other is not None and other.id != user_id:
                raise HTTPException(400, f"{key.capitalize()} already exists")
    user = _storage.update_user(user_id, changes)
    if user is None:
        raise HTTPException(404, "User not found")
    return user.public()


@router.delete("/users/{user_id}")
async def delete_user(user_id: str, admin: User = Depends(require_admin)) -> dict[str, Any]:
    if user_id == admin.id:
        raise HTTPException(400, "Cannot delete your own account")
    if not _storage.delete_user(user_id):
        raise HTTPException(404, "User not found")
    return {"message": "User deleted"}


@router.post("/users/deactivate-ldap")
async def deactivate_ldap_users(admin: User = Depends(require_admin)) -> dict[str, Any]:
    count = _auth_manager.deactivate_ldap_users()
    return {"message": f"Deactivated {count} LDAP users", "count": count}


# ── 仪表盘 ────────────────────────────────────────────

def _owned_dashboard(dashboard_id: str, user: User) -> Dashboard:
    dashboard = _storage.get_dashboard(dashboard_id)
    if dashboard is None:
        raise HTTPException(404, "Dashboard not found")
    if dashboard.owner_id != user.id and user.role != Role.ADMIN:
        raise HTTPException(403, "Access denied")
    return dashboard


@router.get("/dashboards")
async def list_dashboards(user: User = Depends(current_user)) -> list[dict]:
    owner = None if user.role == Role.ADMIN else user.id
    return [d.to_record() for d in _storage.list_dashboards(owner_id=owner)]


@router.post("/dashboards")
async def create_dashboard(body: DashboardCreate, user: User = Depends(current_user)) -> dict[str, Any]:
    dashboard = Dashboard(owner_id=user.id, **body.model_dump())
    return _storage.create_dashboard(dashboard).to_record()


@router.get("/dashboards/{dashboard_id}")
async def get_dashboard(dashboard_id: str, user: User = Depends(current_user)) -> dict[str, Any]:
    return _owned_dashboard(dashboard_id, user).to_record()


@router.put("/dashboards/{dashboard_id}")
async def update_dashboard(
    dashboard_id: str, body: DashboardUpdate, user: User = Depends(current_user)
) -> dict[str, Any]:
    _owned_dashboard(dashboard_id, user)
    updated = _storage.update_dashboard(dashboard_id, _changes(body, nullable=("description", "logo_url")))
    return updated.to_record()


@router.delete("/dashboards/{dashboard_id}")
async def delete_dashboard(dashboard_id: str, user: User = Depends(current_user)) -> dict[str, Any]:
    _owned_dashboard(dashboard_id, user)
    _storage.delete_dashboard(dashboard_id)
    return {"message": "Dashboard deleted"}


# ── 卡片 ──────────────────────────────────────────────

def _owned_card(card_id: str, user: User) -> DashboardCard:
    card = _storage.get_card(card_id)
    if card is None:
        raise HTTPException(404, "Card not found")
    _owned_dashboard(card.dashboard_id, user)
    return card


async def _card_data(card: DashboardCard) -> dict[str, Any]:
    """卡片引用的数据源可能已被删除，此时返回错误而不是 404。"""
    source = _storage.get_data_source(card.data_source_id) if card.data_source_id else None
    if source is None:
        return FetchResult(error=DATA_SOURCE_NOT_FOUND).to_response()
    result = await _executor.fetch_source(source)
    return result.to_response()


@router.get("/dashboards/{dashboard_id}/cards")
async def list_cards(dashboard_id: str, user: User = Depends(current_user)) -> list[dict]:
    _owned_dashboard(dashboard_id, user)
    return [c.to_record() for c in _storage.list_cards(dashboard_id)]


@router.post("/dashboards/{dashboard_id}/cards")
async def create_card(dashboard_id: str, body: CardCreate, user: User = Depends(current_user)) -> dict[str, Any]:
    _owned_dashboard(dashboard_id, user)
    card = DashboardCard(dashboard_id=dashboard_id, **body.model_dump())
    return _storage.create_card(card).to_record()


@router.put("/cards/{card_id}")
async def update_card(card_id: str, body: CardUpdate, user: User = Depends(current_user)) -> dict[str, Any]:
    _owned_card(card_id, user)
    updated = _storage.update_card(card_id, _changes(body, nullable=("data_source_id", "refresh_interval")))
    return updated.to_record()


@router.delete("/cards/{card_id}")
async def delete_card(card_id: str, user: User = Depends(current_user)) -> dict[str, Any]:
    _owned_card(card_id, user)
    _storage.delete_card(card_id)
    return {"message": "Card deleted"}


@router.get("/cards/{card_id}/data")
async def get_card_data(card_id: str, user: User = Depends(current_user)) -> dict[str, Any]:
    return await _card_data(_owned_card(card_id, user))


# ── 数据源 ────────────────────────────────────────────

def _get_source(source_id: str) -> DataSource:
    source = _storage.get_data_source(source_id)
    if source is None:
        raise HTTPException(404, DATA_SOURCE_NOT_FOUND)
    return source


def _check_config(source_type, config: dict[str, Any]):
    try:
        parse_source_config(source_type, config)
    except ValidationError as e:
        raise HTTPException(400, e.message)


def _source_summary(source: DataSource) -> dict[str, Any]:
    """数据源记录 + 有效刷新间隔 + 运行时状态。"""
    record = source.to_record()
    try:
        record["refreshMs"] = parse_source_config(source.type, source.config).refresh_ms()
    except ValidationError:
        record["refreshMs"] = None
    state = _executor.get_source_state(source.id)
    record["status"] = state.status.value if source.is_active else SourceStatus.DISABLED.value
    record["message"] = state.message
    return record


@router.get("/data-sources")
async def list_data_sources(user: User = Depends(current_user)) -> list[dict]:
    return [_source_summary(s) for s in _storage.list_data_sources()]


@router.post("/data-sources")
async def create_data_source(body: DataSourceCreate, user: User = Depends(current_user)) -> dict[str, Any]:
    _check_config(body.type, body.config)
    source = _storage.create_data_source(DataSource(**body.model_dump()))
    logger.info(f"[{source.id}] 数据源已创建: {source.name} ({source.type.value})")
    return _source_summary(source)


@router.post("/data-sources/test")
async def test_unsaved_source(body: SourceTestRequest, user: User = Depends(current_user)) -> dict[str, Any]:
    try:
        result = await _executor.test_source(body.type, body.config)
    except SourceError as e:
        logger.info(f"数据源测试失败 ({body.type.value}): {e.message}")
        raise HTTPException(400, e.message)
    return result.to_response()


@router.put("/data-sources/{source_id}")
async def update_data_source(
    source_id: str, body: DataSourceUpdate, user: User = Depends(current_user)
) -> dict[str, Any]:
    source = _get_source(source_id)
    changes = _changes(body)
    if "type" in changes or "config" in changes:
        _check_config(changes.get("type") or source.type, changes.get("config", source.config))
    updated = _storage.update_data_source(source_id, changes)
    return _source_summary(updated)


@router.delete("/data-sources/{source_id}")
async def delete_data_source(source_id: str, user: User = Depends(current_user)) -> dict[str, Any]:
    _get_source(source_id)
    _storage.delete_data_source(source_id)
    _executor.forget_source(source_id)
    logger.info(f"[{source_id}] 数据源已删除")
    return {"message": "Data source deleted"}


@router.post("/data-sources/{source_id}/toggle")
async def toggle_data_source(source_id: str, user: User = Depends(current_user)) -> dict[str, Any]:
    source = _get_source(source_id)
    updated = _storage.update_data_source(source_id, {"is_active": not source.is_active})
    logger.info(f"[{source_id}] 数据源已{'启用' if updated.is_active else '停用'}")
    return _source_summary(updated)


@router.post("/data-sources/{source_id}/test")
async def test_saved_source(source_id: str, user: User = Depends(current_user)) -> dict[str, Any]:
    source = _get_source(source_id)
    try:
        result = await _executor.test_source(source.type, source.config)
    except SourceError as e:
        raise HTTPException(400, e.message)
    return result.to_response()


@router.get("/data-sources/{source_id}/data")
async def get_source_data(source_id: str, user: User = Depends(current_user)) -> dict[str, Any]:
    """返回标准化数据；数据源存在时总是 200，错误放在 error 字段中。"""
    source = _get_source(source_id)
    result = await _executor.fetch_source(source)
    return result.to_response()


# ── 公开访问（默认无需登录） ──────────────────────────────

async def require_public(credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)):
    access = _settings.get_access()
    if not access.allow_public_dashboards:
        raise HTTPException(403, "Public dashboards are disabled")
    if access.require_public_auth:
        if credentials is None or _auth_manager.user_from_token(credentials.credentials) is None:
            raise HTTPException(401, "Authentication required", headers={"WWW-Authenticate": "Bearer"})


def _public_dashboard(dashboard_id: str) -> Dashboard:
    dashboard = _storage.get_dashboard(dashboard_id)
    if dashboard is None or not dashboard.is_public:
        raise HTTPException(404, "Dashboard not found")
    return dashboard


@router.get("/public/dashboards", dependencies=[Depends(require_public)])
async def list_public_dashboards() -> list[dict]:
    return [d.to_record() for d in _storage.list_public_dashboards()]


@router.get("/public/dashboards/{dashboard_id}", dependencies=[Depends(require_public)])
async def get_public_dashboard(dashboard_id: str) -> dict[str, Any]:
    return _public_dashboard(dashboard_id).to_record()


@router.get("/public/dashboards/{dashboard_id}/cards", dependencies=[Depends(require_public)])
async def list_public_cards(dashboard_id: str) -> list[dict]:
    _public_dashboard(dashboard_id)
    return [c.to_record() for c in _storage.list_cards(dashboard_id)]


@router.get("/public/cards/{card_id}/data", dependencies=[Depends(require_public)])
async def get_public_card_data(card_id: str) -> dict[str, Any]:
    card = _storage.get_card(card_id)
    if card is None:
        raise HTTPException(404, "Card not found")
    _public_dashboard(card.dashboard_id)
    return await _card_data(card)


# ── 系统设置（管理员） ────────────────────────────────

def _apply_settings(update, changes: dict[str, Any]) -> dict[str, Any]:
    try:
        return _settings.masked(update(changes))
    except ValidationError as e:
        raise HTTPException(400, e.message)


@router.get("/settings")
async def list_settings(admin: User = Depends(require_admin)) -> list[dict]:
    return _settings.list_raw()


@router.post("/settings")
async def write_setting(body: SettingWrite, admin: User = Depends(require_admin)) -> dict[str, Any]:
    try:
        return _settings.set_raw(body.key, body.value)
    except ValidationError as e:
        raise HTTPException(400, e.message)


@router.get("/settings/ldap")
async def get_ldap_settings(admin: User = Depends(require_admin)) -> dict[str, Any]:
    return _settings.masked(_settings.get_ldap())


@router.put("/settings/ldap")
async def update_ldap_settings(changes: dict[str, Any], admin: User = Depends(require_admin)) -> dict[str, Any]:
    return _apply_settings(_settings.update_ldap, changes)


@router.post("/settings/ldap/test")
async def test_ldap_settings(
    changes: Optional[dict[str, Any]] = None, admin: User = Depends(require_admin)
) -> dict[str, Any]:
    try:
        ldap_settings = _settings.preview(LDAP_KEY, changes)
    except ValidationError as e:
        raise HTTPException(400, e.message)
    ok = await _auth_manager.directory(ldap_settings).test_connection()
    return {
        "success": ok,
        "message": "LDAP connection successful" if ok else "LDAP connection failed",
    }


@router.post("/auth/test-ldap")
async def test_ldap_login(body: LdapTestRequest, admin: User = Depends(require_admin)) -> dict[str, Any]:
    """用给定账号测试 LDAP 登录（配置可未保存）。"""
    try:
        ldap_settings = _settings.preview(LDAP_KEY, body.config)
    except ValidationError as e:
        raise HTTPException(400, e.message)
    ok = await _auth_manager.directory(ldap_settings).test_login(body.username, body.password)
    return {
        "success": ok,
        "message": f"LDAP authentication successful for {body.username}" if ok else "LDAP authentication failed",
    }


@router.get("/settings/mail")
async def get_mail_settings(admin: User = Depends(require_admin)) -> dict[str, Any]:
    return _settings.masked(_settings.get_mail())


@router.put("/settings/mail")
async def update_mail_settings(changes: dict[str, Any], admin: User = Depends(require_admin)) -> dict[str, Any]:
    return _apply_settings(_settings.update_mail, changes)


@router.post("/settings/mail/test")
async def test_mail_settings(body: MailTestRequest, admin: User = Depends(require_admin)) -> dict[str, Any]:
    try:
        mail_settings = _settings.preview(MAIL_KEY, body.config)
        await _mail.send_test(mail_settings, body.to)
    except (ValidationError, MailError) as e:
        raise HTTPException(400, str(e))
    return {"success": True, "message": f"Test email sent to {body.to}"}


@router.get("/settings/access")
async def get_access_settings(admin: User = Depends(require_admin)) -> dict[str, Any]:
    return _settings.masked(_settings.get_access())


@router.put("/settings/access")
async def update_access_settings(changes: dict[str, Any], admin: User = Depends(require_admin)) -> dict[str, Any]:
    return _apply_settings(_settings.update_access, changes)

