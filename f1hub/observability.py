# -*- coding: utf-8 -*-
"""
observability.py
- Metrics：进程内计数器（采集失败/推送成功失败）与最近一轮完成时间
- log()：JSON lines 结构化日志，追加写入 observability.log_file
"""

from __future__ import annotations

import datetime
import json
import os
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Optional

_LOG_FILE: Optional[Path] = None


def configure(log_file: Optional[str]) -> None:
    """设置日志文件；传空字符串/None 则关闭文件输出"""
    global _LOG_FILE
    _LOG_FILE = Path(log_file) if log_file else None


def log(section: str, event_type: str, payload: Dict[str, Any]) -> None:
    if _LOG_FILE is None:
        return
    record = {
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "section": section,
        "event_type": event_type,
        "payload": payload,
    }
    try:
        os.makedirs(_LOG_FILE.parent, exist_ok=True)
        with open(_LOG_FILE, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
    except OSError as e:
        # 日志写不进去不能影响主流程
        print(f"[observability] 写日志失败: {e}")


class Metrics:
    def __init__(self):
        self.fetch_errors: Counter = Counter()      # key: 源名
        self.notifications: Counter = Counter()     # key: sent / failed
        self.last_cycle_ts: Optional[int] = None    # UTC毫秒

    def inc_fetch_error(self, source: str) -> None:
        self.fetch_errors[source] += 1

    def inc_notification(self, status: str) -> None:
        self.notifications[status] += 1

    def set_last_cycle(self, ts_ms: int) -> None:
        self.last_cycle_ts = ts_ms

    def snapshot(self) -> Dict[str, Any]:
        return {
            "fetch_errors": dict(self.fetch_errors),
            "notifications": {
                "sent": self.notifications.get("sent", 0),
                "failed": self.notifications.get("failed", 0),
            },
            "last_cycle_ts": self.last_cycle_ts,
        }


def last_record(log_file: Optional[str], section: str, event_type: str) -> Optional[Dict[str, Any]]:
    """看板用：从日志文件里找最近一条指定类型记录的 payload"""
    if not log_file or not os.path.exists(log_file):
        return None
    found = None
    with open(log_file, "r", encoding="utf-8") as f:
        for line in f:
            try:
                rec = json.loads(line)
            except ValueError:
                continue
            if rec.get("section") == section and rec.get("event_type") == event_type:
                found = rec.get("payload")
    return found
