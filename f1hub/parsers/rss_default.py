# RSS/Atom 默认解析器：feedparser 解析 + 字段规范化 + 配图提取

import datetime
import re
from typing import Any, List, Optional

import feedparser

from f1hub.models import FeedItem
from f1hub.utils import now_ms, strip_html

UNTITLED = "Untitled"

_IMG_SRC_RE = re.compile(r"<img[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE)
_IMG_EXT_RE = re.compile(r"\.(jpe?g|png|webp|gif)", re.IGNORECASE)


class MalformedFeedError(Exception):
    """feedparser 报告解析错误且没有任何条目"""


def _published_ms(entry: Any, fallback_ms: int) -> int:
    # 先 published_parsed，再 updated_parsed，都没有就用抓取时间
    for key in ("published_parsed", "updated_parsed"):
        parsed = entry.get(key)
        if parsed:
            try:
                dt = datetime.datetime(*parsed[:6], tzinfo=datetime.timezone.utc)
                return int(dt.timestamp() * 1000)
            except (TypeError, ValueError):
                continue
    return fallback_ms


def _raw_html(entry: Any) -> str:
    if entry.get("content"):
        return entry.content[0].get("value", "") or ""
    return entry.get("summary") or entry.get("description") or ""


def extract_image_url(entry: Any) -> Optional[str]:
    """
    提取配图，优先级：
    1) 图片类型的 enclosure，或链接带图片扩展名
    2) media:content / media:thumbnail
    3) 正文 HTML 里第一张 <img>
    """
    for enc in entry.get("enclosures", []) or []:
        href = enc.get("href") or enc.get("url")
        if not href:
            continue
        if "image" in (enc.get("type") or "").lower() or _IMG_EXT_RE.search(href):
            return href

    for key in ("media_content", "media_thumbnail"):
        for mc in entry.get(key, []) or []:
            url = mc.get("url")
            if url:
                return url

    m = _IMG_SRC_RE.search(_raw_html(entry))
    if m:
        return m.group(1)
    return None


def parse_rss(text: str, source_name: str, fetched_at_ms: Optional[int] = None) -> List[FeedItem]:
    """
    解析RSS/Atom内容，返回规范化后的条目（保持 feed 原始顺序）

    参数:
        text: RSS/Atom XML文本
        source_name: 数据源名称（写入 Event.source）
        fetched_at_ms: 抓取时间，缺少发布时间的条目用它

    异常:
        MalformedFeedError: XML 无法解析且没有条目
    """
    fetched_at_ms = fetched_at_ms if fetched_at_ms is not None else now_ms()
    feed = feedparser.parse(text)

    entries = feed.get("entries", []) or []
    if not entries and feed.get("bozo"):
        raise MalformedFeedError(repr(feed.get("bozo_exception")))

    items: List[FeedItem] = []
    for entry in entries:
        title = (entry.get("title") or "").strip() or UNTITLED
        link = (entry.get("link") or "").strip()
        guid = (entry.get("id") or "").strip()
        items.append(FeedItem(
            title=title,
            link=link or guid,
            guid=guid or link,
            ts_published_utc=_published_ms(entry, fetched_at_ms),
            content=strip_html(_raw_html(entry)),
            source=source_name,
            image_url=extract_image_url(entry),
        ))
    return items
