"""
cURL 转换器：把用户粘贴的 cURL 命令解析为 HTTP 请求描述。

这是一个启发式解析器，不是 shell 语法：
  - 单引号 / 双引号包裹的片段视为一个 token（不支持引号内转义）
  - 以 http 开头的 token 作为 URL（多个时最后一个生效）
  - -H 后的 token 按第一个 ':' 拆分为 header
  - 只建模 GET 请求
"""

import logging
import re

from pydantic import BaseModel, Field

from databoard.errors import TranslationError

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"'[^']*'|\"[^\"]*\"|\S+")


class CurlRequest(BaseModel):
    method: str = "GET"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)


def tokenize(curl_text: str) -> list[str]:
    """按引号片段 / 非空白片段切分，并去掉首尾引号。"""
    tokens = []
    for raw in _TOKEN_RE.findall(curl_text or ""):
        if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
            raw = raw[1:-1]
        tokens.append(raw)
    return tokens


def translate(curl_text: str) -> CurlRequest:
    tokens = tokenize(curl_text)

    url = None
    headers: dict[str, str] = {}
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token.startswith("http"):
            if url is not None:
                logger.debug(f"cURL 中出现多个 URL，使用后者: {token}")
            url = token
        elif token == "-H" and i + 1 < len(tokens):
            i += 1
            name, sep, value = tokens[i].partition(":")
            if sep:
                headers[name.strip()] = value.strip()
        i += 1

    if url is None:
        raise TranslationError("no URL found")

    return CurlRequest(url=url, headers=headers)
