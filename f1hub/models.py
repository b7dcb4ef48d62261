# -*- coding: utf-8 -*-
"""
models.py
定义事件、订阅者、推送记录的数据模型。
时间字段统一为 UTC 毫秒（int），与 storage.py 的列一一对应。
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Tuple


class Category(str, enum.Enum):
    # 顺序即优先级：分数完全相同时，先定义的类别胜出
    RACE_RESULT = "Race Result"
    QUALIFYING = "Qualifying"
    PRACTICE_TESTING = "Practice & Testing"
    PENALTY = "Penalty"
    DRIVER_TRANSFER = "Driver Transfer"
    CONTRACT_NEWS = "Contract News"
    TECHNICAL_UPDATE = "Technical Update"
    OFFICIAL_STATEMENT = "Official Statement"
    TEAM_NEWS = "Team News"


# 低于阈值时的兜底类别，不参与关键词匹配
UNCATEGORIZED = "Uncategorized"

SENSITIVITIES = ("all", "breaking")


class DeliveryStatus(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class CategoryRule:
    category: Category
    # (短语, 权重)，短语统一小写
    keywords: Tuple[Tuple[str, int], ...]


@dataclass
class FeedItem:
    """采集器规范化后的一条 RSS 条目"""
    title: str
    link: str
    guid: str
    ts_published_utc: int
    content: str
    source: str
    image_url: Optional[str] = None


@dataclass
class Event:
    # 主键（uuid hex）
    id: str

    title: str = ""
    category: str = UNCATEGORIZED

    # 来源报告的发布时间（UTC毫秒）
    ts_utc: int = 0
    source: str = ""
    link: Optional[str] = None

    # 正文截断摘要、全文
    summary: Optional[str] = None
    raw_content: Optional[str] = None
    image_url: Optional[str] = None

    # 入库时间（UTC毫秒）
    ts_created_utc: int = 0


@dataclass
class Subscriber:
    id: str
    alert_sensitivity: str = "all"
    push_token: Optional[str] = None
    email: Optional[str] = None
    favorite_team: Optional[str] = None
    favorite_driver: Optional[str] = None
    onboarded: int = 0


@dataclass
class NotificationRecord:
    id: str
    subscriber_id: str
    event_id: str
    sent_at_utc: int
    delivery_status: str
    failure_reason: Optional[str] = None
    opened_at_utc: Optional[int] = None
