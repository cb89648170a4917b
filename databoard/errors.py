"""
数据源错误分类。

test 路径直接抛出这些异常，fetch 路径在适配器边界捕获并转换为 error 字段。
"""


class SourceError(Exception):
    """数据源相关错误的基类，message 直接展示给用户。"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TranslationError(SourceError):
    """cURL 命令无法解析（找不到 URL）。"""


class AuthenticationError(SourceError):
    """后端拒绝凭证，或没有返回可用的身份 / token。"""


class NetworkError(SourceError):
    """与外部后端通信失败（连接、超时、非 2xx 响应）。"""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ValidationError(SourceError):
    """配置缺少必填字段或字段非法。"""


class MailError(Exception):
    """邮件服务未启用或 SMTP 发送失败。"""
