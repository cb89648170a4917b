"""
Secrets 控制器：保存设置中的敏感字段（LDAP bind 密码、SMTP 密码）。
与普通设置表分开存储在 secrets.json 中，每个 secret_id 作为顶层 key。
"""

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_SECRETS_FILE = "secrets.json"


class SecretsController:
    """
    基于文件的敏感信息存储；secrets_dir 为 None 时只保存在内存中。
    """

    def __init__(self, secrets_dir: str | Path | None = None):
        self._memory: dict[str, Any] = {}
        self.secrets_file: Path | None = None
        if secrets_dir is not None:
            secrets_dir = Path(secrets_dir)
            secrets_dir.mkdir(parents=True, exist_ok=True)
            self.secrets_file = secrets_dir / _SECRETS_FILE
            logger.info(f"Secrets 存储文件: {self.secrets_file}")

    def _load_all(self) -> dict[str, Any]:
        if self.secrets_file is None:
            return json.loads(json.dumps(self._memory))
        if not self.secrets_file.exists():
            return {}
        try:
            with open(self.secrets_file, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"读取 secrets 文件失败: {e}")
            return {}

    def _save_all(self, data: dict[str, Any]):
        if self.secrets_file is None:
            self._memory = data
            return
        with open(self.secrets_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

    def get_secrets(self, secret_id: str) -> dict[str, Any]:
        """获取 secret_id 下的全部值，不存在时返回空字典。"""
        return self._load_all().get(secret_id, {})

    def get_secret(self, secret_id: str, key: str) -> Any:
        return self.get_secrets(secret_id).get(key)

    def set_secret(self, secret_id: str, key: str, value: Any):
        all_secrets = self._load_all()
        all_secrets.setdefault(secret_id, {})[key] = value
        self._save_all(all_secrets)
        logger.debug(f"Secret '{key}' 已保存: {secret_id}")
