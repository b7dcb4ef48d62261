# 工具模块：时间、文本截断、HTML 清洗

import datetime
import html
import re
import time
from typing import Optional

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
# 句子边界：. ! ? 后跟空白
_SENTENCE_END_RE = re.compile(r"[.!?]\s")


def now_ms() -> int:
    """
    获取当前时间的UTC毫秒时间戳

    返回:
        当前时间的毫秒时间戳
    """
    return int(time.time() * 1000)


def ms_to_utc(ms: int) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(ms / 1000.0, tz=datetime.timezone.utc)


def ms_to_iso(ms: Optional[int]) -> str:
    """毫秒 -> ISO-8601（UTC，带 Z）；None 用当前时间"""
    if ms is None:
        ms = now_ms()
    return ms_to_utc(ms).strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms % 1000:03d}Z"


def utc_weekday(ms: int) -> int:
    """0=周一 … 6=周日（Python weekday 约定）"""
    return ms_to_utc(ms).weekday()


def truncate(s: Optional[str], limit: int) -> str:
    if s is None:
        return ""
    return s if len(s) <= limit else s[:limit]


def strip_html(s: Optional[str]) -> str:
    """去标签、反转义、压缩空白，得到纯文本"""
    if not s:
        return ""
    text = _TAG_RE.sub(" ", s)
    text = html.unescape(text)
    return _WS_RE.sub(" ", text).strip()


def first_sentence(s: str) -> str:
    """取第一句，去掉句尾标点（调用方统一补句号）"""
    return _SENTENCE_END_RE.split(s.strip(), maxsplit=1)[0].rstrip(".!?")
