# -*- coding: utf-8 -*-
"""
f1hub/storage.py
SQLite（aiosqlite）持久化：
- 初始化/建表（events / subscribers / notifications）
- 事件写入：(source, title) 唯一，冲突视为重复，不报错
- 订阅者：按提醒敏感度筛选、清除/登记推送 token、偏好更新
- 推送记录：写入、限流计数（subscriber + 时间窗）、标记已读
- 信息流查询：相关度在 SQLite 里用注册的 relevance() 函数计算
"""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import aiosqlite

from f1hub import ranking
from f1hub.models import Event, NotificationRecord, Subscriber
from f1hub.utils import now_ms


# --------- 建表 SQL ---------
SCHEMA_EVENTS = """
CREATE TABLE IF NOT EXISTS events (
    id              TEXT PRIMARY KEY,
    title           TEXT NOT NULL,
    category        TEXT NOT NULL,
    ts_utc          INTEGER NOT NULL,
    source          TEXT NOT NULL,
    link            TEXT,
    summary         TEXT,
    raw_content     TEXT,
    image_url       TEXT,
    ts_created_utc  INTEGER NOT NULL,
    UNIQUE (source, title)
);
"""

SCHEMA_SUBSCRIBERS = """
CREATE TABLE IF NOT EXISTS subscribers (
    id                TEXT PRIMARY KEY,
    email             TEXT,
    alert_sensitivity TEXT NOT NULL DEFAULT 'all',
    push_token        TEXT,
    favorite_team     TEXT,
    favorite_driver   TEXT,
    onboarded         INTEGER DEFAULT 0
);
"""

SCHEMA_NOTIFICATIONS = """
CREATE TABLE IF NOT EXISTS notifications (
    id               TEXT PRIMARY KEY,
    subscriber_id    TEXT NOT NULL REFERENCES subscribers(id) ON DELETE CASCADE,
    event_id         TEXT NOT NULL REFERENCES events(id) ON DELETE CASCADE,
    sent_at_utc      INTEGER NOT NULL,
    opened_at_utc    INTEGER,
    delivery_status  TEXT NOT NULL DEFAULT 'sent',
    failure_reason   TEXT
);
"""

SCHEMA_IDX = """
CREATE INDEX IF NOT EXISTS idx_events_category ON events(category);
CREATE INDEX IF NOT EXISTS idx_events_ts       ON events(ts_utc DESC);
CREATE INDEX IF NOT EXISTS idx_events_source   ON events(source);
CREATE INDEX IF NOT EXISTS idx_subs_sensitivity ON subscribers(alert_sensitivity);
CREATE INDEX IF NOT EXISTS idx_notif_sub_sent  ON notifications(subscriber_id, sent_at_utc);
CREATE INDEX IF NOT EXISTS idx_notif_event     ON notifications(event_id);
"""

EVENT_COLS = (
    "id, title, category, ts_utc, source, link, summary, raw_content, image_url, ts_created_utc"
)
SUBSCRIBER_COLS = (
    "id, email, alert_sensitivity, push_token, favorite_team, favorite_driver, onboarded"
)

# 信息流只展示有配图、有链接的事件
DISPLAYABLE_SQL = (
    "image_url IS NOT NULL AND image_url != '' AND link IS NOT NULL AND link != ''"
)


# --------- 初始化 ---------
async def init_db(db_path: Union[str, Path]) -> aiosqlite.Connection:
    """初始化数据库并返回连接；":memory:" 用于测试。"""
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    db.row_factory = aiosqlite.Row
    # 性能相关 pragma
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    await db.execute("PRAGMA foreign_keys=ON;")
    for schema in (SCHEMA_EVENTS, SCHEMA_SUBSCRIBERS, SCHEMA_NOTIFICATIONS):
        await db.execute(schema)
    for stmt in filter(None, SCHEMA_IDX.split(";")):
        s = stmt.strip()
        if s:
            await db.execute(s + ";")
    await db.commit()
    await db.create_function("relevance", 4, ranking.relevance_score, deterministic=True)
    return db


def new_id() -> str:
    return uuid.uuid4().hex


def row_to_event(row: Any) -> Event:
    return Event(
        id=row["id"],
        title=row["title"],
        category=row["category"],
        ts_utc=row["ts_utc"],
        source=row["source"],
        link=row["link"],
        summary=row["summary"],
        raw_content=row["raw_content"],
        image_url=row["image_url"],
        ts_created_utc=row["ts_created_utc"],
    )


def row_to_subscriber(row: Any) -> Subscriber:
    return Subscriber(
        id=row["id"],
        email=row["email"],
        alert_sensitivity=row["alert_sensitivity"],
        push_token=row["push_token"],
        favorite_team=row["favorite_team"],
        favorite_driver=row["favorite_driver"],
        onboarded=int(row["onboarded"] or 0),
    )


def row_to_notification(row: Any) -> NotificationRecord:
    return NotificationRecord(
        id=row["id"],
        subscriber_id=row["subscriber_id"],
        event_id=row["event_id"],
        sent_at_utc=row["sent_at_utc"],
        opened_at_utc=row["opened_at_utc"],
        delivery_status=row["delivery_status"],
        failure_reason=row["failure_reason"],
    )


# ===================== events =====================

async def find_event_by_source_title(db: aiosqlite.Connection, source: str,
                                     title: str) -> Optional[Event]:
    sql = f"SELECT {EVENT_COLS} FROM events WHERE source = ? AND title = ? LIMIT 1;"
    async with db.execute(sql, (source, title)) as cur:
        row = await cur.fetchone()
    return row_to_event(row) if row else None


async def insert_event(db: aiosqlite.Connection, ev: Event) -> bool:
    """
    写入新事件。(source, title) 冲突时什么都不做并返回 False，
    并发采集时唯一约束兜底，调用方按“重复”处理。
    """
    if not ev.id:
        raise ValueError("insert_event: missing id")
    if not ev.title or not ev.source:
        raise ValueError("insert_event: title and source are required")
    if not ev.ts_created_utc:
        ev.ts_created_utc = now_ms()

    sql = f"""
    INSERT INTO events({EVENT_COLS}) VALUES(?,?,?,?,?,?,?,?,?,?)
    ON CONFLICT(source, title) DO NOTHING;
    """
    cur = await db.execute(sql, (
        ev.id, ev.title, ev.category, int(ev.ts_utc), ev.source, ev.link,
        ev.summary, ev.raw_content, ev.image_url, ev.ts_created_utc,
    ))
    inserted = cur.rowcount == 1
    await cur.close()
    await db.commit()
    return inserted


async def get_event(db: aiosqlite.Connection, event_id: str) -> Optional[Event]:
    async with db.execute(f"SELECT {EVENT_COLS} FROM events WHERE id = ?;", (event_id,)) as cur:
        row = await cur.fetchone()
    return row_to_event(row) if row else None


async def list_events(db: aiosqlite.Connection, *, category: Optional[str] = None,
                      source: Optional[str] = None, limit: int = 50,
                      offset: int = 0) -> List[Event]:
    where, params = [], []
    if category:
        where.append("category = ?")
        params.append(category)
    if source:
        where.append("source = ?")
        params.append(source)
    sql = f"SELECT {EVENT_COLS} FROM events"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY ts_utc DESC LIMIT ? OFFSET ?;"
    params += [int(limit), int(offset)]
    async with db.execute(sql, params) as cur:
        rows = await cur.fetchall()
    return [row_to_event(r) for r in rows]


async def set_image_url_if_missing(db: aiosqlite.Connection, source: str, title: str,
                                   image_url: str) -> int:
    """补配图：只更新 image_url 为空的记录，返回更新行数"""
    cur = await db.execute(
        "UPDATE events SET image_url = ? WHERE source = ? AND title = ? "
        "AND (image_url IS NULL OR image_url = '');",
        (image_url, source, title),
    )
    n = cur.rowcount
    await cur.close()
    await db.commit()
    return n


def _feed_filters(category: Optional[str], date_from: Optional[int]) -> tuple:
    where, params = [DISPLAYABLE_SQL], []
    if category:
        where.append("category = ?")
        params.append(category)
    if date_from is not None:
        where.append("ts_utc >= ?")
        params.append(int(date_from))
    return " AND ".join(where), params


async def count_feed(db: aiosqlite.Connection, *, category: Optional[str] = None,
                     date_from: Optional[int] = None) -> int:
    where, params = _feed_filters(category, date_from)
    async with db.execute(f"SELECT COUNT(id) FROM events WHERE {where};", params) as cur:
        row = await cur.fetchone()
    return int(row[0] or 0)


async def query_feed_window(db: aiosqlite.Connection, *, now: int, offset: int, limit: int,
                            category: Optional[str] = None,
                            date_from: Optional[int] = None) -> List[Dict[str, Any]]:
    """按相关度（降序）+ 时间（降序）取一段候选"""
    where, params = _feed_filters(category, date_from)
    sql = f"""
    SELECT id, title, category, ts_utc, source, summary, link, image_url,
           relevance(category, ts_utc, title, ?) AS relevance
      FROM events
     WHERE {where}
     ORDER BY relevance DESC, ts_utc DESC
     LIMIT ? OFFSET ?;
    """
    out: List[Dict[str, Any]] = []
    async with db.execute(sql, [int(now), *params, int(limit), int(offset)]) as cur:
        async for row in cur:
            out.append(dict(row))
    return out


def dashboard_candidates_sql(since_ms: int, category: Optional[str] = None,
                             query: str = "", limit: int = 500) -> tuple:
    """看板（同步 sqlite3 + pandas）的候选查询，过滤条件与信息流一致"""
    where, params = _feed_filters(category, since_ms)
    if query.strip():
        like = f"%{query.strip()}%"
        where += " AND (title LIKE ? OR source LIKE ?)"
        params += [like, like]
    sql = (
        "SELECT id, title, category, ts_utc, source, link, image_url FROM events "
        f"WHERE {where} ORDER BY ts_utc DESC LIMIT ?;"
    )
    return sql, params + [int(limit)]


async def category_counts(db: aiosqlite.Connection, *, displayable_only: bool = True) -> Dict[str, int]:
    sql = "SELECT category, COUNT(id) AS n FROM events"
    if displayable_only:
        sql += f" WHERE {DISPLAYABLE_SQL}"
    sql += " GROUP BY category ORDER BY n DESC;"
    async with db.execute(sql) as cur:
        rows = await cur.fetchall()
    return {r["category"]: int(r["n"]) for r in rows}


# ===================== subscribers =====================

async def upsert_subscriber(db: aiosqlite.Connection, sub: Subscriber) -> None:
    sql = f"""
    INSERT INTO subscribers({SUBSCRIBER_COLS}) VALUES(?,?,?,?,?,?,?)
    ON CONFLICT(id) DO UPDATE SET
        email             = excluded.email,
        alert_sensitivity = excluded.alert_sensitivity,
        push_token        = excluded.push_token,
        favorite_team     = excluded.favorite_team,
        favorite_driver   = excluded.favorite_driver,
        onboarded         = excluded.onboarded;
    """
    await db.execute(sql, (
        sub.id, sub.email, sub.alert_sensitivity, sub.push_token,
        sub.favorite_team, sub.favorite_driver, int(sub.onboarded or 0),
    ))
    await db.commit()


async def get_subscriber(db: aiosqlite.Connection, subscriber_id: str) -> Optional[Subscriber]:
    async with db.execute(f"SELECT {SUBSCRIBER_COLS} FROM subscribers WHERE id = ?;",
                          (subscriber_id,)) as cur:
        row = await cur.fetchone()
    return row_to_subscriber(row) if row else None


async def find_eligible_subscribers(db: aiosqlite.Connection, is_breaking: bool) -> List[Subscriber]:
    """
    有 token 且：敏感度 all；或敏感度 breaking 且事件属于突发类别
    """
    sensitivities = ["all", "breaking"] if is_breaking else ["all"]
    marks = ",".join("?" * len(sensitivities))
    sql = f"""
    SELECT {SUBSCRIBER_COLS} FROM subscribers
     WHERE push_token IS NOT NULL AND push_token != ''
       AND alert_sensitivity IN ({marks})
     ORDER BY id;
    """
    async with db.execute(sql, sensitivities) as cur:
        rows = await cur.fetchall()
    return [row_to_subscriber(r) for r in rows]


async def set_push_token(db: aiosqlite.Connection, subscriber_id: str,
                         token: Optional[str]) -> bool:
    cur = await db.execute("UPDATE subscribers SET push_token = ? WHERE id = ?;",
                           (token, subscriber_id))
    n = cur.rowcount
    await cur.close()
    await db.commit()
    return n > 0


async def clear_push_token(db: aiosqlite.Connection, subscriber_id: str) -> None:
    await set_push_token(db, subscriber_id, None)


async def update_subscriber_fields(db: aiosqlite.Connection, subscriber_id: str,
                                   updates: Dict[str, Any]) -> bool:
    """updates 的键由调用方白名单过滤"""
    if not updates:
        return False
    cols = ", ".join(f"{k} = ?" for k in updates)
    cur = await db.execute(f"UPDATE subscribers SET {cols} WHERE id = ?;",
                           [*updates.values(), subscriber_id])
    n = cur.rowcount
    await cur.close()
    await db.commit()
    return n > 0


# ===================== notifications =====================

async def insert_notification(db: aiosqlite.Connection, rec: NotificationRecord) -> None:
    await db.execute(
        "INSERT INTO notifications(id, subscriber_id, event_id, sent_at_utc, opened_at_utc, "
        "delivery_status, failure_reason) VALUES(?,?,?,?,?,?,?);",
        (rec.id, rec.subscriber_id, rec.event_id, rec.sent_at_utc, rec.opened_at_utc,
         rec.delivery_status, rec.failure_reason),
    )
    await db.commit()


async def count_sent_since(db: aiosqlite.Connection, subscriber_id: str, since_ms: int) -> int:
    """限流计数：窗口内 delivery_status='sent' 的记录数"""
    sql = """
    SELECT COUNT(id) FROM notifications
     WHERE subscriber_id = ? AND sent_at_utc >= ? AND delivery_status = 'sent';
    """
    async with db.execute(sql, (subscriber_id, int(since_ms))) as cur:
        row = await cur.fetchone()
    return int(row[0] or 0)


async def get_notification(db: aiosqlite.Connection, notification_id: str) -> Optional[NotificationRecord]:
    async with db.execute("SELECT * FROM notifications WHERE id = ?;", (notification_id,)) as cur:
        row = await cur.fetchone()
    return row_to_notification(row) if row else None


async def list_notifications_for_event(db: aiosqlite.Connection,
                                       event_id: str) -> List[NotificationRecord]:
    async with db.execute("SELECT * FROM notifications WHERE event_id = ? ORDER BY sent_at_utc;",
                          (event_id,)) as cur:
        rows = await cur.fetchall()
    return [row_to_notification(r) for r in rows]


async def mark_notification_opened(db: aiosqlite.Connection, notification_id: str,
                                   ts_ms: int) -> Optional[NotificationRecord]:
    cur = await db.execute("UPDATE notifications SET opened_at_utc = ? WHERE id = ?;",
                           (int(ts_ms), notification_id))
    n = cur.rowcount
    await cur.close()
    await db.commit()
    if n == 0:
        return None
    return await get_notification(db, notification_id)


async def mark_latest_unopened(db: aiosqlite.Connection, subscriber_id: str, event_id: str,
                               ts_ms: int) -> Optional[str]:
    """同一 subscriber + event 最近一条未读记录标记为已读，返回其 id"""
    sql = """
    SELECT id FROM notifications
     WHERE subscriber_id = ? AND event_id = ? AND opened_at_utc IS NULL
     ORDER BY sent_at_utc DESC LIMIT 1;
    """
    async with db.execute(sql, (subscriber_id, event_id)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    await mark_notification_opened(db, row["id"], ts_ms)
    return row["id"]


async def notification_history(db: aiosqlite.Connection, subscriber_id: str, *,
                               limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    sql = """
    SELECT n.id, n.sent_at_utc, n.opened_at_utc, n.delivery_status,
           e.id AS event_id, e.title, e.category, e.ts_utc AS event_ts_utc
      FROM notifications n
      JOIN events e ON n.event_id = e.id
     WHERE n.subscriber_id = ?
     ORDER BY n.sent_at_utc DESC
     LIMIT ? OFFSET ?;
    """
    async with db.execute(sql, (subscriber_id, int(limit), int(offset))) as cur:
        rows = await cur.fetchall()
    return [dict(r) for r in rows]


# ===================== 汇总（后台看板） =====================

async def _scalar(db: aiosqlite.Connection, sql: str, params: Sequence[Any] = ()) -> int:
    async with db.execute(sql, params) as cur:
        row = await cur.fetchone()
    return int(row[0] or 0)


async def overview_counts(db: aiosqlite.Connection, since_ms: int) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "events_24h": await _scalar(db, "SELECT COUNT(*) FROM events WHERE ts_utc >= ?;", (since_ms,)),
        "events_total": await _scalar(db, "SELECT COUNT(*) FROM events;"),
        "notifications_24h": await _scalar(
            db, "SELECT COUNT(*) FROM notifications WHERE sent_at_utc >= ?;", (since_ms,)),
        "notifications_total": await _scalar(db, "SELECT COUNT(*) FROM notifications;"),
        "notifications_opened": await _scalar(
            db, "SELECT COUNT(*) FROM notifications WHERE opened_at_utc IS NOT NULL;"),
        "notifications_failed": await _scalar(
            db, "SELECT COUNT(*) FROM notifications WHERE delivery_status = 'failed';"),
        "subscribers_total": await _scalar(db, "SELECT COUNT(*) FROM subscribers;"),
        "subscribers_with_token": await _scalar(
            db, "SELECT COUNT(*) FROM subscribers WHERE push_token IS NOT NULL AND push_token != '';"),
        "subscribers_onboarded": await _scalar(
            db, "SELECT COUNT(*) FROM subscribers WHERE onboarded = 1;"),
    }
    async with db.execute("SELECT alert_sensitivity, COUNT(*) AS n FROM subscribers "
                          "GROUP BY alert_sensitivity;") as cur:
        out["sensitivity_counts"] = {r["alert_sensitivity"]: int(r["n"]) for r in await cur.fetchall()}
    async with db.execute("SELECT source, COUNT(*) AS n FROM events GROUP BY source "
                          "ORDER BY n DESC;") as cur:
        out["events_by_source"] = {r["source"]: int(r["n"]) for r in await cur.fetchall()}
    return out
