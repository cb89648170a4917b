"""
鉴权管理器：本地密码 / LDAP 登录、JWT 会话 token、密码重置。
"""

import logging
import secrets
from datetime import timedelta
from typing import Any, Callable, Optional

import bcrypt
from jose import JWTError, jwt

from databoard.auth.ldap_client import DirectoryClient
from databoard.config_loader import SecurityConfig
from databoard.errors import ValidationError
from databoard.mail import RESET_TOKEN_MINUTES, MailService
from databoard.models import AuthMethod, PasswordResetToken, Role, User, utcnow
from databoard.settings import LdapSettings, SettingsManager
from databoard.storage import Storage

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_USERNAME = "admin"
DEFAULT_ADMIN_EMAIL = "admin@example.com"
DEFAULT_ADMIN_PASSWORD = "admin123"


def hash_password(password: str) -> str:
    # bcrypt 只使用前 72 字节
    password_bytes = password.encode("utf-8")[:72]
    return bcrypt.hashpw(password_bytes, bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        logger.warning("存储的密码 hash 格式无效")
        return False


class AuthManager:
    """
    管理用户登录与会话。

    directory_factory 用于构造 LDAP 客户端，测试中可替换为 mock。
    """

    def __init__(
        self,
        storage: Storage,
        settings: SettingsManager,
        security: SecurityConfig | None = None,
        mail: MailService | None = None,
        directory_factory: Callable[[LdapSettings], DirectoryClient] | None = None,
    ):
        self.storage = storage
        self.settings = settings
        self.security = security or SecurityConfig()
        self.mail = mail
        self._directory_factory = directory_factory or DirectoryClient

    # ── 登录 ──────────────────────────────────────────

    def directory(self, ldap_settings: LdapSettings | None = None) -> DirectoryClient:
        return self._directory_factory(ldap_settings or self.settings.get_ldap())

    def find_user(self, identifier: str) -> Optional[User]:
        """先按用户名，再按邮箱查找。"""
        return self.storage.get_user_by_username(identifier) or self.storage.get_user_by_email(identifier)

    async def authenticate(self, identifier: str, password: str) -> Optional[User]:
        """
        校验凭证，成功时返回用户（并更新 lastLogin），失败返回 None。
        """
        user = self.find_user(identifier)
        if user is not None and not user.is_active:
            logger.info(f"登录被拒绝，用户已停用: {identifier}")
            return None

        if user is not None and user.auth_method == AuthMethod.LOCAL:
            access = self.settings.get_access()
            if not access.allow_local_login and user.role != Role.ADMIN:
                logger.info(f"本地登录已关闭: {identifier}")
                return None
            if not verify_password(password, user.password):
                return None
        else:
            ldap_settings = self.settings.get_ldap()
            if not ldap_settings.enabled:
                return None
            directory = self.directory(ldap_settings)
            username = user.username if user is not None else identifier
            if not await directory.authenticate(username, password):
                return None
            if user is None:
                user = await self._provision(directory, username)

        return self.storage.update_user(user.id, {"last_login": utcnow()})

    async def _provision(self, directory: DirectoryClient, username: str) -> User:
        """为首次通过 LDAP 登录的用户创建本地账号。"""
        entry = await directory.lookup(username)
        email = entry.email if entry and entry.email else f"{username}@ldap.local"
        user = User(
            username=username,
            email=email,
            password=None,
            role=self.settings.get_access().default_role,
            auth_method=AuthMethod.LDAP,
        )
        self.storage.create_user(user)
        logger.info(f"已为 LDAP 用户创建账号: {username} ({user.role.value})")
        return user

    # ── 会话 token ────────────────────────────────────

    def session_minutes(self) -> int:
        """访问策略中的 sessionTimeout 优先于配置文件。"""
        return self.settings.get_access().session_timeout or self.security.token_expire_minutes

    def create_access_token(self, user: User) -> str:
        expire = utcnow() + timedelta(minutes=self.session_minutes())
        claims = {"sub": user.id, "role": user.role.value, "exp": expire}
        return jwt.encode(claims, self.security.secret_key, algorithm=self.security.algorithm)

    def decode_token(self, token: str) -> Optional[dict[str, Any]]:
        try:
            return jwt.decode(token, self.security.secret_key, algorithms=[self.security.algorithm])
        except JWTError as e:
            logger.debug(f"token 校验失败: {e}")
            return None

    def user_from_token(self, token: str) -> Optional[User]:
        claims = self.decode_token(token)
        if not claims or not claims.get("sub"):
            return None
        user = self.storage.get_user(claims["sub"])
        if user is None or not user.is_active:
            return None
        return user

    # ── 初始化 ────────────────────────────────────────

    def create_default_admin(self) -> Optional[User]:
        if self.storage.get_user_by_username(DEFAULT_ADMIN_USERNAME):
            return None
        admin = User(
            username=DEFAULT_ADMIN_USERNAME,
            email=DEFAULT_ADMIN_EMAIL,
            password=hash_password(DEFAULT_ADMIN_PASSWORD),
            role=Role.ADMIN,
        )
        self.storage.create_user(admin)
        logger.warning(f"已创建默认管理员 {DEFAULT_ADMIN_USERNAME}，请尽快修改密码")
        return admin

    # ── 密码重置 ──────────────────────────────────────

    async def request_password_reset(self, email: str) -> Optional[PasswordResetToken]:
        """
        为本地用户创建重置 token 并发送邮件。

        未知邮箱与 LDAP 用户同样视为成功（返回 None），避免暴露账号是否存在。
        """
        if not self.settings.get_access().password_reset_enabled:
            raise ValidationError("Password reset is disabled")

        user = self.storage.get_user_by_email(email)
        if user is None or not user.is_active:
            logger.info(f"密码重置请求的邮箱不存在: {email}")
            return None
        if user.auth_method == AuthMethod.LDAP:
            logger.info(f"LDAP 用户不能在本地重置密码，忽略请求: {email}")
            return None

        token = PasswordResetToken(
            user_id=user.id,
            token=secrets.token_urlsafe(32),
            expires_at=utcnow() + timedelta(minutes=RESET_TOKEN_MINUTES),
        )
        self.storage.create_reset_token(token)
        if self.mail is not None:
            await self.mail.send_password_reset(user.email, token.token)
        return token

    def verify_reset_token(self, token_value: str) -> tuple[PasswordResetToken, User]:
        """token 未使用、未过期且属于本地用户时返回 (token, user)，否则抛出 ValidationError。"""
        token = self.storage.get_reset_token(token_value)
        if token is None or token.expires_at < utcnow():
            raise ValidationError("Invalid or expired reset token")

        user = self.storage.get_user(token.user_id)
        if user is None:
            raise ValidationError("Invalid or expired reset token")
        if user.auth_method == AuthMethod.LDAP:
            raise ValidationError("Password reset is not available for LDAP users")
        return token, user

    def reset_password(self, token_value: str, new_password: str) -> User:
        if not new_password:
            raise ValidationError("Password must not be empty")
        token, user = self.verify_reset_token(token_value)

        updated = self.storage.update_user(user.id, {"password": hash_password(new_password)})
        self.storage.mark_token_used(token.id)
        logger.info(f"用户 {user.username} 已重置密码")
        return updated

    # ── LDAP 用户 ─────────────────────────────────────

    def deactivate_ldap_users(self) -> int:
        """停用全部 LDAP 用户（关闭 LDAP 时调用），返回停用数量。"""
        count = 0
        for user in self.storage.list_users():
            if user.auth_method == AuthMethod.LDAP and user.is_active:
                self.storage.update_user(user.id, {"is_active": False})
                count += 1
        logger.info(f"已停用 {count} 个 LDAP 用户")
        return count
