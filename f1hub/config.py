# -*- coding: utf-8 -*-
"""
config.py
读取 ops/config.yml 与 ops/sources.yml；文件不存在就用默认。
密钥类配置（bot token、FCM 凭据、DB 路径）从环境变量读取，可覆盖 yml。
"""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

ROOT = Path(__file__).resolve().parents[1]
OPS_DIR = ROOT / "ops"

DEFAULT_CFG: Dict[str, Any] = {
    "db_path": str(ROOT / "f1hub.db"),
    # 看板显示时区
    "display_timezone": "UTC",
    "ingestion": {
        "interval_sec": 60,
        "fetch_timeout_sec": 10,
        "user_agent": "f1-hub/1.0",
        "summary_chars": 500,
    },
    "categorizer": {
        "threshold": 30,
        # 为空则用包内 data/categories.yml
        "rules_path": "",
    },
    "notifier": {
        # telegram / fcm / stdout
        "channel": "stdout",
        "rate_limit_per_hour": 10,
        # Python weekday：4=周五 5=周六 6=周日（UTC）
        "unrestricted_weekdays": [4, 5, 6],
        "breaking_categories": ["Race Result", "Penalty", "Driver Transfer"],
        "send_timeout_sec": 10,
    },
    "ranking": {
        "max_run": 2,
        "overfetch_factor": 3,
        "overfetch_cap": 100,
    },
    "observability": {
        "log_file": str(ROOT / "logs" / "f1hub.log"),
    },
}

# sources.yml 缺失时的默认源
DEFAULT_SOURCES: List[Dict[str, Any]] = [
    {"id": "f1", "name": "Formula 1", "url": "https://www.formula1.com/content/fom-website/en/latest/all.xml", "enabled": True},
    {"id": "fia", "name": "FIA", "url": "https://www.fia.com/rss/news", "enabled": True},
    {"id": "autosport", "name": "Autosport", "url": "https://www.autosport.com/rss/feed/f1", "enabled": True},
    {"id": "motorsport", "name": "Motorsport.com", "url": "https://www.motorsport.com/rss/f1/news/", "enabled": True},
    {"id": "racefans", "name": "RaceFans", "url": "https://www.racefans.net/feed/", "enabled": True},
    {"id": "planetf1", "name": "PlanetF1", "url": "https://www.planetf1.com/feed/", "enabled": True},
    {"id": "therace", "name": "The Race", "url": "https://the-race.com/feed/", "enabled": True},
    {"id": "gpfans", "name": "GPFans", "url": "https://www.gpfans.com/en/rss.xml", "enabled": True},
]


def _merge(base: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    # 只做一层深合并，避免过度魔法
    out = copy.deepcopy(base)
    for k, v in (data or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = {**out[k], **v}
        else:
            out[k] = v
    return out


def _apply_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    db_path = os.environ.get("F1HUB_DB_PATH", "").strip()
    if db_path:
        cfg["db_path"] = db_path
    n = cfg["notifier"]
    n["telegram_bot_token"] = n.get("telegram_bot_token") or os.environ.get("TELEGRAM_BOT_TOKEN", "").strip()
    n["fcm_project_id"] = n.get("fcm_project_id") or os.environ.get("FCM_PROJECT_ID", "").strip()
    n["fcm_access_token"] = n.get("fcm_access_token") or os.environ.get("FCM_ACCESS_TOKEN", "").strip()
    return cfg


def load_cfg(path: Optional[Path] = None) -> Dict[str, Any]:
    """ops/config.yml 可选；不存在就用默认。"""
    cfg_path = Path(path) if path else OPS_DIR / "config.yml"
    data: Dict[str, Any] = {}
    if cfg_path.exists():
        try:
            data = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            print(f"[config] 读取 {cfg_path} 失败，使用默认。err={e}")
            data = {}
    cfg = _apply_env(_merge(DEFAULT_CFG, data))
    # 相对路径按项目根解析，不依赖启动目录
    if not Path(cfg["db_path"]).is_absolute():
        cfg["db_path"] = str(ROOT / cfg["db_path"])
    obs = cfg.get("observability") or {}
    if obs.get("log_file") and not Path(obs["log_file"]).is_absolute():
        obs["log_file"] = str(ROOT / obs["log_file"])
    return cfg


def load_sources(path: Optional[Path] = None) -> List[Dict[str, Any]]:
    """读取 sources.yml，返回源列表（含 disabled 的，由调用方过滤）"""
    src_path = Path(path) if path else OPS_DIR / "sources.yml"
    if not src_path.exists():
        print("[config] 未找到 ops/sources.yml，使用内置源列表")
        return copy.deepcopy(DEFAULT_SOURCES)
    with open(src_path, "r", encoding="utf-8") as f:
        sources = (yaml.safe_load(f) or {}).get("sources", []) or []
    out = []
    for src in sources:
        if not src.get("url"):
            print(f"[config] 跳过缺少 url 的源: {src}")
            continue
        src.setdefault("name", src.get("id", src["url"]))
        src.setdefault("id", src["name"])
        src.setdefault("enabled", True)
        out.append(src)
    return out
