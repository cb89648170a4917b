"""
持久化层：基于 TinyDB 的文档存储。
每类实体一张表，按 id 或简单条件查询 / 修改，不提供跨实体事务。
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, TypeVar

from pydantic import BaseModel
from tinydb import Query, TinyDB
from tinydb.storages import MemoryStorage

from databoard.models import (
    Dashboard,
    DashboardCard,
    DataSource,
    PasswordResetToken,
    Setting,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

Record = Query()


class Storage:
    """TinyDB 数据操作封装。"""

    def __init__(self, db_path: str | Path | None = None, in_memory: bool = False):
        if in_memory:
            self.db = TinyDB(storage=MemoryStorage)
            logger.info("TinyDB 使用内存存储")
        else:
            db_path = Path(db_path or "data/databoard.json")
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self.db = TinyDB(str(db_path), indent=2, ensure_ascii=False)
            logger.info(f"TinyDB 数据库已打开: {db_path}")

        self.users = self.db.table("users")
        self.dashboards = self.db.table("dashboards")
        self.data_sources = self.db.table("data_sources")
        self.cards = self.db.table("dashboard_cards")
        self.settings = self.db.table("settings")
        self.reset_tokens = self.db.table("password_reset_tokens")

    # ── 通用 ──────────────────────────────────────────

    @staticmethod
    def _find(table, model: type[M], **conditions) -> list[M]:
        query = None
        for key, value in conditions.items():
            clause = Record[key] == value
            query = clause if query is None else (query & clause)
        docs = table.search(query) if query is not None else table.all()
        return [model.model_validate(doc) for doc in docs]

    def _get(self, table, model: type[M], record_id: str) -> Optional[M]:
        doc = table.get(Record.id == record_id)
        return model.model_validate(doc) if doc else None

    @staticmethod
    def _insert(table, item):
        table.insert(item.to_record())
        return item

    def _update(self, table, model: type[M], record_id: str, changes: dict[str, Any]) -> Optional[M]:
        current = self._get(table, model, record_id)
        if current is None:
            return None
        data = current.model_dump()
        data.update(changes)
        updated = model.model_validate(data)
        table.update(updated.to_record(), Record.id == record_id)
        return updated

    @staticmethod
    def _delete(table, record_id: str) -> bool:
        return bool(table.remove(Record.id == record_id))

    # ── 用户 ──────────────────────────────────────────

    def get_user(self, user_id: str) -> Optional[User]:
        return self._get(self.users, User, user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        found = self._find(self.users, User, username=username)
        return found[0] if found else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        found = self._find(self.users, User, email=email)
        return found[0] if found else None

    def list_users(self) -> list[User]:
        return self._find(self.users, User)

    def create_user(self, user: User) -> User:
        return self._insert(self.users, user)

    def update_user(self, user_id: str, changes: dict[str, Any]) -> Optional[User]:
        return self._update(self.users, User, user_id, changes)

    def delete_user(self, user_id: str) -> bool:
        """删除用户，同时删除其仪表盘（及卡片）和密码重置 token。"""
        for dashboard in self.list_dashboards(owner_id=user_id):
            self.delete_dashboard(dashboard.id)
        self.reset_tokens.remove(Record.userId == user_id)
        return self._delete(self.users, user_id)

    # ── 仪表盘 ────────────────────────────────────────

    def get_dashboard(self, dashboard_id: str) -> Optional[Dashboard]:
        return self._get(self.dashboards, Dashboard, dashboard_id)

    def list_dashboards(self, owner_id: str | None = None) -> list[Dashboard]:
        if owner_id is None:
            return self._find(self.dashboards, Dashboard)
        return self._find(self.dashboards, Dashboard, ownerId=owner_id)

    def list_public_dashboards(self) -> list[Dashboard]:
        return self._find(self.dashboards, Dashboard, isPublic=True)

    def create_dashboard(self, dashboard: Dashboard) -> Dashboard:
        return self._insert(self.dashboards, dashboard)

    def update_dashboard(self, dashboard_id: str, changes: dict[str, Any]) -> Optional[Dashboard]:
        return self._update(self.dashboards, Dashboard, dashboard_id, {**changes, "updated_at": utcnow()})

    def delete_dashboard(self, dashboard_id: str) -> bool:
        self.cards.remove(Record.dashboardId == dashboard_id)
        return self._delete(self.dashboards, dashboard_id)

    # ── 数据源 ────────────────────────────────────────

    def get_data_source(self, source_id: str) -> Optional[DataSource]:
        return self._get(self.data_sources, DataSource, source_id)

    def list_data_sources(self) -> list[DataSource]:
        return self._find(self.data_sources, DataSource)

    def create_data_source(self, source: DataSource) -> DataSource:
        return self._insert(self.data_sources, source)

    def update_data_source(self, source_id: str, changes: dict[str, Any]) -> Optional[DataSource]:
        return self._update(self.data_sources, DataSource, source_id, changes)

    def touch_last_pull(self, source_id: str, when: datetime | None = None) -> Optional[DataSource]:
        return self.update_data_source(source_id, {"last_pull_at": when or utcnow()})

    def delete_data_source(self, source_id: str) -> bool:
        # 不级联删除卡片，引用它的卡片之后解析不到数据
        return self._delete(self.data_sources, source_id)

    # ── 卡片 ──────────────────────────────────────────

    def get_card(self, card_id: str) -> Optional[DashboardCard]:
        return self._get(self.cards, DashboardCard, card_id)

    def list_cards(self, dashboard_id: str) -> list[DashboardCard]:
        return self._find(self.cards, DashboardCard, dashboardId=dashboard_id)

    def create_card(self, card: DashboardCard) -> DashboardCard:
        return self._insert(self.cards, card)

    def update_card(self, card_id: str, changes: dict[str, Any]) -> Optional[DashboardCard]:
        return self._update(self.cards, DashboardCard, card_id, changes)

    def delete_card(self, card_id: str) -> bool:
        return self._delete(self.cards, card_id)

    # ── 设置 ──────────────────────────────────────────

    def get_setting(self, key: str) -> Optional[Setting]:
        doc = self.settings.get(Record.key == key)
        return Setting.model_validate(doc) if doc else None

    def list_settings(self) -> list[Setting]:
        return [Setting.model_validate(doc) for doc in self.settings.all()]

    def set_setting(self, key: str, value: Any) -> Setting:
        setting = Setting(key=key, value=value)
        self.settings.upsert(setting.to_record(), Record.key == key)
        return setting

    # ── 密码重置 token ────────────────────────────────

    def create_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        return self._insert(self.reset_tokens, token)

    def get_reset_token(self, token_value: str) -> Optional[PasswordResetToken]:
        """只返回未使用的 token。"""
        doc = self.reset_tokens.get((Record.token == token_value) & (Record.isUsed == False))  # noqa: E712
        return PasswordResetToken.model_validate(doc) if doc else None

    def mark_token_used(self, token_id: str):
        self.reset_tokens.update({"isUsed": True}, Record.id == token_id)

    def cleanup_expired_tokens(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        expired = [
            doc.doc_id
            for doc in self.reset_tokens.all()
            if PasswordResetToken.model_validate(doc).expires_at < now
        ]
        if expired:
            self.reset_tokens.remove(doc_ids=expired)
        return len(expired)

    # ── 管理 ──────────────────────────────────────────

    def close(self):
        """关闭数据库。"""
        self.db.close()
