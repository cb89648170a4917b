"""
系统设置：LDAP、邮件、访问策略。

每类设置是一个独立校验的结构体，持久化时仍按 key 存储在 settings 表中
（ldap_config / mail_config / access_config），以兼容旧的键值接口。
旧版前端使用的 key "access" 及其字段名（defaultAccess、allowPublicView）
在读写时映射到 access_config。
敏感字段不进入 settings 表，而是交给 SecretsController。
"""

import logging
from typing import Any, Optional

from pydantic import Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from databoard.errors import ValidationError
from databoard.models import CamelModel, Role, Setting
from databoard.secrets_controller import SecretsController
from databoard.storage import Storage

logger = logging.getLogger(__name__)

MASK = "********"


class LdapSettings(CamelModel):
    enabled: bool = False
    url: str = "ldap://localhost:389"
    base_dn: str = Field(default="ou=users,dc=example,dc=com", alias="baseDN")
    bind_dn: Optional[str] = Field(default=None, alias="bindDN")
    bind_credentials: Optional[str] = None
    search_filter: str = "(uid={username})"
    tls_reject_unauthorized: bool = False

    @field_validator("url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        if not v.startswith(("ldap://", "ldaps://")):
            raise ValueError("url must start with ldap:// or ldaps://")
        return v

    @field_validator("search_filter")
    @classmethod
    def _check_filter(cls, v: str) -> str:
        if "{username}" not in v:
            raise ValueError("searchFilter must contain {username}")
        return v


class MailSettings(CamelModel):
    enabled: bool = False
    host: str = "smtp.gmail.com"
    port: int = Field(default=587, ge=1, le=65535)
    secure: bool = False  # 465 端口用 True，其他端口走 STARTTLS
    auth_user: str = ""
    auth_pass: str = ""
    from_address: str = ""

    @model_validator(mode="after")
    def _check_enabled(self) -> "MailSettings":
        if self.enabled and not self.host:
            raise ValueError("host is required when mail is enabled")
        return self


class AccessSettings(CamelModel):
    allow_public_dashboards: bool = True
    allow_local_login: bool = True
    default_role: Role = Role.STANDARD
    password_reset_enabled: bool = True
    # 为 True 时公开仪表盘也需要登录
    require_public_auth: bool = False
    # 会话时长（分钟），未设置时使用配置文件中的 token_expire_minutes
    session_timeout: Optional[int] = Field(default=None, ge=1)


# key -> (模型, 敏感字段)
_KINDS: dict[str, tuple[type[CamelModel], tuple[str, ...]]] = {
    "ldap_config": (LdapSettings, ("bind_credentials",)),
    "mail_config": (MailSettings, ("auth_pass",)),
    "access_config": (AccessSettings, ()),
}

LDAP_KEY = "ldap_config"
MAIL_KEY = "mail_config"
ACCESS_KEY = "access_config"

# 旧版前端写入的 key 与字段名 -> 当前的 key 与字段名
_LEGACY_KEYS = {"access": ACCESS_KEY}
_LEGACY_FIELDS = {
    ACCESS_KEY: {"defaultAccess": "defaultRole", "allowPublicView": "allowPublicDashboards"},
}


def _migrate(key: str, value: dict[str, Any]) -> dict[str, Any]:
    """把旧字段名改写为当前字段名；同时出现时以当前字段名为准。"""
    renames = _LEGACY_FIELDS.get(key, {})
    migrated = {}
    for field, item in value.items():
        target = renames.get(field, field)
        if target != field and target in value:
            continue
        migrated[target] = item
    return migrated


def _alias(model: type[CamelModel], name: str) -> str:
    return model.model_fields[name].alias or name


class SettingsManager:
    def __init__(self, storage: Storage, secrets: SecretsController):
        self._storage = storage
        self._secrets = secrets

    # ── 通用 ──────────────────────────────────────────

    def _load(self, key: str):
        model, secret_fields = _KINDS[key]
        setting = self._storage.get_setting(key) or self._legacy_setting(key)
        data = _migrate(key, setting.value) if setting and isinstance(setting.value, dict) else {}
        for name in secret_fields:
            secret = self._secrets.get_secret(key, name)
            if secret is not None:
                data[_alias(model, name)] = secret
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            logger.error(f"设置 {key} 已损坏，使用默认值: {e}")
            return model()

    def _legacy_setting(self, key: str) -> Optional[Setting]:
        for legacy, current in _LEGACY_KEYS.items():
            if current == key:
                setting = self._storage.get_setting(legacy)
                if setting is not None:
                    return setting
        return None

    def _save(self, key: str, settings) -> Any:
        model, secret_fields = _KINDS[key]
        record = settings.to_record()
        for name in secret_fields:
            value = record.pop(_alias(model, name), None)
            if value != MASK:
                self._secrets.set_secret(key, name, value or "")
        self._storage.set_setting(key, record)
        logger.info(f"设置已保存: {key}")
        return self._load(key)

    def preview(self, key: str, changes: dict[str, Any] | None = None):
        """把修改合并到已保存的设置上并校验，但不保存（用于连接测试）。"""
        model, _ = _KINDS[key]
        data = self._load(key).to_record()
        for field, value in _migrate(key, changes or {}).items():
            if value == MASK:
                continue
            data[field] = value
        try:
            settings = model.model_validate(data)
        except PydanticValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(p) for p in first.get("loc", ()))
            raise ValidationError(f"Invalid {key}: {location} {first.get('msg')}".strip())
        return settings

    def _update(self, key: str, changes: dict[str, Any]):
        return self._save(key, self.preview(key, changes))

    def masked(self, settings) -> dict[str, Any]:
        """返回给前端的表示，敏感字段用掩码替换。"""
        record = settings.to_record()
        for key, (model, secret_fields) in _KINDS.items():
            if isinstance(settings, model):
                for name in secret_fields:
                    alias = _alias(model, name)
                    if record.get(alias):
                        record[alias] = MASK
        return record

    # ── 具体设置 ──────────────────────────────────────

    def get_ldap(self) -> LdapSettings:
        return self._load(LDAP_KEY)

    def update_ldap(self, changes: dict[str, Any]) -> LdapSettings:
        return self._update(LDAP_KEY, changes)

    def get_mail(self) -> MailSettings:
        return self._load(MAIL_KEY)

    def update_mail(self, changes: dict[str, Any]) -> MailSettings:
        return self._update(MAIL_KEY, changes)

    def get_access(self) -> AccessSettings:
        return self._load(ACCESS_KEY)

    def update_access(self, changes: dict[str, Any]) -> AccessSettings:
        return self._update(ACCESS_KEY, changes)

    # ── 兼容旧的键值接口 ──────────────────────────────

    def list_raw(self) -> list[dict[str, Any]]:
        result = []
        for setting in self._storage.list_settings():
            if setting.key in _KINDS:
                value = self.masked(self._load(setting.key))
                result.append(Setting(key=setting.key, value=value, updated_at=setting.updated_at).to_record())
            else:
                result.append(setting.to_record())
        return result

    def set_raw(self, key: str, value: Any) -> dict[str, Any]:
        key = _LEGACY_KEYS.get(key, key)
        if key in _KINDS:
            if not isinstance(value, dict):
                raise ValidationError(f"Setting {key} must be an object")
            settings = self._update(key, value)
            return Setting(key=key, value=self.masked(settings)).to_record()
        return self._storage.set_setting(key, value).to_record()
