"""
LDAP 目录客户端：bind / search / authenticate。

ldap3 是同步库，调用放在线程中执行，并用 asyncio.wait_for 施加超时。
连接失败与超时都不是致命错误：记录日志后返回 False / None。
"""

import asyncio
import logging
import ssl
from typing import Any, Callable, Optional

from ldap3 import NONE, Connection, Server, Tls
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars
from pydantic import BaseModel

from databoard.settings import LdapSettings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

_ATTRIBUTES = ["uid", "mail", "cn", "displayName", "sAMAccountName"]


class DirectoryUser(BaseModel):
    username: str
    dn: str
    email: Optional[str] = None
    display_name: Optional[str] = None


def _first(values: Any) -> Optional[str]:
    if isinstance(values, list):
        return str(values[0]) if values else None
    return str(values) if values is not None else None


class DirectoryClient:
    def __init__(self, settings: LdapSettings, timeout: float = DEFAULT_TIMEOUT):
        self.settings = settings
        self.timeout = timeout

    # ── 同步部分（在线程中执行） ──────────────────────

    def _server(self) -> Server:
        validate = ssl.CERT_REQUIRED if self.settings.tls_reject_unauthorized else ssl.CERT_NONE
        return Server(
            self.settings.url,
            use_ssl=self.settings.url.startswith("ldaps://"),
            tls=Tls(validate=validate),
            connect_timeout=self.timeout,
            get_info=NONE,
        )

    def _service_connection(self, server: Server) -> Connection:
        """使用配置的 bind DN（未配置时匿名）建立连接。"""
        if self.settings.bind_dn:
            return Connection(
                server,
                user=self.settings.bind_dn,
                password=self.settings.bind_credentials or "",
                auto_bind=True,
                receive_timeout=self.timeout,
            )
        return Connection(server, auto_bind=True, receive_timeout=self.timeout)

    def _search(self, conn: Connection, username: str) -> Optional[DirectoryUser]:
        search_filter = self.settings.search_filter.replace("{username}", escape_filter_chars(username))
        conn.search(self.settings.base_dn, search_filter, attributes=_ATTRIBUTES, size_limit=1)
        if not conn.entries:
            return None
        entry = conn.entries[0]
        attrs = entry.entry_attributes_as_dict
        return DirectoryUser(
            username=username,
            dn=entry.entry_dn,
            email=_first(attrs.get("mail")),
            display_name=_first(attrs.get("displayName")) or _first(attrs.get("cn")),
        )

    def _lookup_sync(self, username: str) -> Optional[DirectoryUser]:
        server = self._server()
        conn = self._service_connection(server)
        try:
            return self._search(conn, username)
        finally:
            conn.unbind()

    def _authenticate_sync(self, username: str, password: str) -> bool:
        # 空密码在很多目录上会被当作匿名 bind 成功
        if not password:
            return False
        user = self._lookup_sync(username)
        if user is None:
            logger.info(f"LDAP 中未找到用户: {username}")
            return False
        conn = Connection(self._server(), user=user.dn, password=password, receive_timeout=self.timeout)
        try:
            return bool(conn.bind())
        finally:
            conn.unbind()

    def _test_sync(self) -> bool:
        conn = self._service_connection(self._server())
        try:
            return bool(conn.bound)
        finally:
            conn.unbind()

    # ── 异步接口 ──────────────────────────────────────

    async def _run(self, what: str, func: Callable, *args, default: Any = None) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"LDAP {what} 超时 ({self.timeout:g}s)")
        except LDAPException as e:
            logger.warning(f"LDAP {what} 失败: {e}")
        return default

    async def authenticate(self, username: str, password: str) -> bool:
        if not self.settings.enabled:
            return False
        return await self._run("authenticate", self._authenticate_sync, username, password, default=False)

    async def lookup(self, username: str) -> Optional[DirectoryUser]:
        if not self.settings.enabled:
            return None
        return await self._run("lookup", self._lookup_sync, username, default=None)

    async def test_connection(self) -> bool:
        """测试连接，不检查 enabled，便于启用前验证配置。"""
        return await self._run("test", self._test_sync, default=False)

    async def test_login(self, username: str, password: str) -> bool:
        """用给定账号测试搜索 + bind，同样不检查 enabled。"""
        return await self._run("test login", self._authenticate_sync, username, password, default=False)
