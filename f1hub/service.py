# -*- coding: utf-8 -*-
"""
f1hub/service.py
对外（HTTP 层 / 看板）暴露的读写操作。这里只做校验与组装，SQL 都在 storage.py。
ValidationError -> 400，NotFoundError -> 404，由上层映射。
"""

from __future__ import annotations

import math
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import aiosqlite

from f1hub import ranking, storage
from f1hub.categorizer import Categorizer
from f1hub.models import SENSITIVITIES, Event
from f1hub.utils import now_ms

# 分类标签页的固定展示顺序
CATEGORY_ORDER = (
    "Race Result",
    "Penalty",
    "Driver Transfer",
    "Contract News",
    "Technical Update",
    "Team News",
    "Practice & Testing",
    "Qualifying",
    "Official Statement",
)

PREFERENCE_FIELDS = ("favorite_team", "favorite_driver", "alert_sensitivity")
MAX_FEED_LIMIT = 100
DAY_MS = 24 * 3600 * 1000


class ValidationError(ValueError):
    pass


class NotFoundError(LookupError):
    pass


def _clamp_int(value: Any, default: int, lo: int, hi: Optional[int] = None) -> int:
    try:
        v = int(value)
    except (TypeError, ValueError):
        v = default
    v = max(lo, v)
    return min(hi, v) if hi is not None else v


# ===================== 事件 =====================

async def list_events(db: aiosqlite.Connection, *, category: Optional[str] = None,
                      source: Optional[str] = None, limit: int = 50,
                      offset: int = 0) -> List[Dict[str, Any]]:
    events = await storage.list_events(
        db, category=category, source=source,
        limit=_clamp_int(limit, 50, 1, MAX_FEED_LIMIT), offset=_clamp_int(offset, 0, 0),
    )
    return [asdict(e) for e in events]


async def get_event(db: aiosqlite.Connection, event_id: str) -> Dict[str, Any]:
    ev = await storage.get_event(db, event_id)
    if ev is None:
        raise NotFoundError("Event not found")
    return asdict(ev)


async def submit_event(db: aiosqlite.Connection, categorizer: Categorizer, *,
                       title: Optional[str], source: Optional[str],
                       category: Optional[str] = None, summary: Optional[str] = None,
                       raw_content: Optional[str] = None, timestamp: Optional[int] = None,
                       link: Optional[str] = None, image_url: Optional[str] = None) -> Dict[str, Any]:
    """手动录入事件；没给类别就用分类器算"""
    if not title or not source:
        raise ValidationError("title and source are required")

    if not category:
        category = categorizer.categorize(title, raw_content or summary or "")

    ev = Event(
        id=storage.new_id(),
        title=title,
        category=category,
        ts_utc=int(timestamp) if timestamp else now_ms(),
        source=source,
        link=link or None,
        summary=summary or None,
        raw_content=raw_content or None,
        image_url=image_url or None,
    )
    if not await storage.insert_event(db, ev):
        raise ValidationError("an event with this source and title already exists")
    return asdict(ev)


async def feed_page(db: aiosqlite.Connection, *, page: Any = 1, limit: Any = 20,
                    category: Optional[str] = None, date_from: Optional[int] = None,
                    now: Optional[int] = None, max_run: int = ranking.DEFAULT_MAX_RUN,
                    overfetch_factor: int = 3, overfetch_cap: int = MAX_FEED_LIMIT) -> Dict[str, Any]:
    """
    相关度排序的信息流分页。
    未按类别筛选时：取前 offset + min(limit*3, cap) 条做类别多样化，再切出 [offset, offset+limit)。
    total 始终是筛选后的总数，与多样化无关。
    """
    page_num = _clamp_int(page, 1, 1)
    limit_num = _clamp_int(limit, 20, 1, MAX_FEED_LIMIT)
    offset = (page_num - 1) * limit_num
    now = now if now is not None else now_ms()

    if category:
        data = await storage.query_feed_window(
            db, now=now, offset=offset, limit=limit_num, category=category, date_from=date_from)
    else:
        # 从头取到本页之后再多看 window 条，整段多样化后再切页，
        # 保证各页切自同一个序列：不丢条、不重复
        window = ranking.overfetch_size(limit_num, overfetch_factor, overfetch_cap)
        rows = await storage.query_feed_window(
            db, now=now, offset=0, limit=offset + window, date_from=date_from)
        data = ranking.diversify(rows, max_run)[offset:offset + limit_num]

    total = await storage.count_feed(db, category=category, date_from=date_from)
    return {
        "data": data,
        "pagination": {
            "page": page_num,
            "limit": limit_num,
            "total": total,
            "totalPages": math.ceil(total / limit_num),
        },
    }


async def list_categories(db: aiosqlite.Connection) -> List[Dict[str, Any]]:
    """固定顺序、只列有可展示事件的类别；不在固定表里的类别追加在后面"""
    counts = await storage.category_counts(db, displayable_only=True)
    out = [{"name": name, "count": counts[name]} for name in CATEGORY_ORDER if counts.get(name)]
    for name, n in counts.items():
        if name not in CATEGORY_ORDER:
            out.append({"name": name, "count": n})
    return out


# ===================== 推送记录 =====================

async def mark_notification_opened(db: aiosqlite.Connection, notification_id: str) -> Dict[str, Any]:
    rec = await storage.mark_notification_opened(db, notification_id, now_ms())
    if rec is None:
        raise NotFoundError("Notification not found")
    return asdict(rec)


async def track_open(db: aiosqlite.Connection, subscriber_id: str, event_id: str) -> Dict[str, Any]:
    """用户点开某事件：把最近一条未读推送标记为已读（没有也不报错）"""
    nid = await storage.mark_latest_unopened(db, subscriber_id, event_id, now_ms())
    return {"tracked": True, "eventId": event_id, "notificationId": nid}


async def notification_history(db: aiosqlite.Connection, subscriber_id: str, *,
                               limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    return await storage.notification_history(
        db, subscriber_id, limit=_clamp_int(limit, 50, 1, MAX_FEED_LIMIT),
        offset=_clamp_int(offset, 0, 0))


# ===================== 订阅者 =====================

async def register_push_token(db: aiosqlite.Connection, subscriber_id: str,
                              token: Any) -> Dict[str, Any]:
    if not token or not isinstance(token, str):
        raise ValidationError("token is required and must be a string")
    if not await storage.set_push_token(db, subscriber_id, token):
        raise NotFoundError("Subscriber not found")
    return {"message": "push token registered", "subscriberId": subscriber_id}


async def get_preferences(db: aiosqlite.Connection, subscriber_id: str) -> Dict[str, Any]:
    sub = await storage.get_subscriber(db, subscriber_id)
    if sub is None:
        raise NotFoundError("Subscriber not found")
    return {k: getattr(sub, k) for k in PREFERENCE_FIELDS}


async def set_preferences(db: aiosqlite.Connection, subscriber_id: str,
                          **fields: Any) -> Dict[str, Any]:
    updates = {k: v for k, v in fields.items() if k in PREFERENCE_FIELDS and v is not None}
    sens = updates.get("alert_sensitivity")
    if sens is not None and sens not in SENSITIVITIES:
        raise ValidationError(f"alert_sensitivity must be one of: {', '.join(SENSITIVITIES)}")
    if not updates:
        raise ValidationError("Provide at least one of: " + ", ".join(PREFERENCE_FIELDS))
    if not await storage.update_subscriber_fields(db, subscriber_id, updates):
        raise NotFoundError("Subscriber not found")
    return await get_preferences(db, subscriber_id)


# ===================== 后台概览 =====================

async def overview(db: aiosqlite.Connection, now: Optional[int] = None) -> Dict[str, Any]:
    now = now if now is not None else now_ms()
    out = await storage.overview_counts(db, now - DAY_MS)
    total = out["notifications_total"]
    out["open_rate"] = round(out["notifications_opened"] * 100.0 / total, 1) if total else 0.0
    return out
