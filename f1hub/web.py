# coding: utf-8
# 只读看板：streamlit run f1hub/web.py
from __future__ import annotations

import datetime
import html
import sqlite3
import sys
import time
from pathlib import Path

import pandas as pd
import pytz
import streamlit as st
from streamlit_autorefresh import st_autorefresh

# streamlit run 时脚本目录是 f1hub/，把项目根加进来
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from f1hub import observability, ranking
from f1hub.config import load_cfg
from f1hub.service import CATEGORY_ORDER
from f1hub.storage import dashboard_candidates_sql

CFG = load_cfg()
DB_PATH = Path(CFG["db_path"])
TZ_NAME = CFG.get("display_timezone", "UTC")
MAX_RUN = int(CFG.get("ranking", {}).get("max_run", ranking.DEFAULT_MAX_RUN))
LOG_FILE = CFG.get("observability", {}).get("log_file")

st.set_page_config(page_title="F1 Hub - 实时看板", page_icon="🏁", layout="wide")

# ========== 样式 ==========
st.markdown("""
<style>
.header-small{color:#8b8b8b;font-size:.9rem;margin-top:2px}
.ih-table{width:100%;border-collapse:collapse;font-size:14px}
.ih-table th,.ih-table td{border-bottom:1px solid rgba(255,255,255,.08);padding:8px 10px;vertical-align:top}
.ih-table th{position:sticky;top:0;background:rgba(0,0,0,.25);backdrop-filter:blur(6px)}
.ih-link{color:inherit;text-decoration:none}
.ih-link:hover{text-decoration:underline}
.nowrap{white-space:nowrap}
.score-badge{padding:2px 8px;border-radius:999px;background:rgba(225,6,0,.15);border:1px solid rgba(225,6,0,.35)}
.small{font-size:12px;color:#a0a0a0}
.block-container{padding-top:1rem !important;padding-bottom:0.6rem !important}
</style>
""", unsafe_allow_html=True)

# ========== 顶栏控件 ==========
cat_col, search_col, refresh_col = st.columns([0.3, 0.5, 0.2], gap="small")
with cat_col:
    category = st.selectbox("类别", ["全部"] + list(CATEGORY_ORDER), index=0)
with search_col:
    query = st.text_input("关键词搜索（标题、来源）", key="q", placeholder="搜索标题/来源")
with refresh_col:
    auto_refresh = st.checkbox("自动刷新", value=True)
if auto_refresh:
    # 局部 rerun，不触发整页 reload
    st_autorefresh(interval=30 * 1000, key="auto-rerun")
st.markdown("---")


# ========== DB 工具 ==========
def _now_ms() -> int:
    return int(time.time() * 1000)


def _utc_ms_to_local_str(ms: int, tz_name: str) -> str:
    tz = pytz.timezone(tz_name)
    dt = datetime.datetime.fromtimestamp(ms / 1000.0, tz=pytz.UTC)
    return dt.astimezone(tz).strftime("%Y-%m-%d %H:%M")


def _connect() -> sqlite3.Connection:
    if not DB_PATH.exists():
        raise FileNotFoundError(f"数据库不存在: {DB_PATH}")
    conn = sqlite3.connect(str(DB_PATH))
    conn.row_factory = sqlite3.Row
    return conn


def _fetch_candidates(conn, since_ms: int, category: str, query: str) -> pd.DataFrame:
    # 与信息流接口同样只取有图有链接的事件
    sql, params = dashboard_candidates_sql(since_ms, None if category == "全部" else category, query)
    return pd.read_sql_query(sql, conn, params=params)


def _source_rows() -> list:
    payload = observability.last_record(LOG_FILE, "ingest", "source_stats") or {}
    rows = []
    for src in payload.get("sources", []):
        stats = src.get("stats") or {}
        last_ok = stats.get("last_success")
        rows.append({
            "源": src.get("name"),
            "启用": bool(src.get("enabled", True)),
            "最近成功": _utc_ms_to_local_str(int(last_ok), TZ_NAME) if last_ok else "-",
            "错误次数": stats.get("error_count", 0),
            "最近错误": stats.get("last_error") or "",
            "条目": stats.get("items_total", 0),
            "新增": stats.get("items_new", 0),
        })
    return rows


def _ranked(df: pd.DataFrame, diversify: bool) -> list:
    rows = ranking.rank(df.to_dict("records"), _now_ms())
    return ranking.diversify(rows, MAX_RUN) if diversify else rows


# ========== HTML 表格渲染（标题为可点击文字） ==========
def render_table_html(rows: list, tz_name: str) -> str:
    now = _now_ms()
    cols = ["时间", "来源", "类别", "相关度", "标题"]
    out = []
    for r in rows:
        title = html.escape(str(r.get("title") or ""))
        link = str(r.get("link") or "")
        score = ranking.relevance_score(r.get("category"), r.get("ts_utc"), r.get("title"), now)
        if link.startswith("http"):
            title = f"<a class='ih-link' href='{html.escape(link)}' target='_blank' rel='noopener noreferrer'>{title}</a>"
        out.append(
            "<tr>"
            f"<td class='nowrap small'>{_utc_ms_to_local_str(int(r['ts_utc']), tz_name)}</td>"
            f"<td>{html.escape(str(r.get('source') or ''))}</td>"
            f"<td class='small'>{html.escape(str(r.get('category') or ''))}</td>"
            f"<td><span class='score-badge'>{score}</span></td>"
            f"<td>{title}</td>"
            "</tr>"
        )
    thead = "<tr>" + "".join(f"<th>{c}</th>" for c in cols) + "</tr>"
    return f"<table class='ih-table'><thead>{thead}</thead><tbody>{''.join(out)}</tbody></table>"


# ========== 读库 & 展示 ==========
try:
    conn = _connect()
except Exception as e:
    st.error(f"无法连接数据库：{DB_PATH}\n{e}")
    st.stop()

since_ms = _now_ms() - 72 * 3600 * 1000
df = _fetch_candidates(conn, since_ms, category, query)

left_main, right_main = st.columns([0.68, 0.32])

with left_main:
    st.subheader("🏁 信息流（按相关度）")
    if df.empty:
        st.info("窗口内暂无事件。")
    else:
        rows = _ranked(df, diversify=(category == "全部"))[:100]
        st.markdown(render_table_html(rows, TZ_NAME), unsafe_allow_html=True)

with right_main:
    st.subheader("📊 类别分布（72h）")
    if not df.empty:
        counts = df["category"].value_counts().rename_axis("category").reset_index(name="count")
        st.dataframe(counts, use_container_width=True, hide_index=True)

    st.subheader("🔔 推送（24h）")
    df_n = pd.read_sql_query(
        "SELECT delivery_status, COUNT(*) AS count, SUM(opened_at_utc IS NOT NULL) AS opened "
        "FROM notifications WHERE sent_at_utc >= ? GROUP BY delivery_status",
        conn, params=[_now_ms() - 24 * 3600 * 1000],
    )
    st.dataframe(df_n, use_container_width=True, hide_index=True)

    st.caption("失败原因 Top 10")
    df_fail = pd.read_sql_query(
        "SELECT failure_reason, COUNT(*) AS count FROM notifications "
        "WHERE delivery_status = 'failed' GROUP BY failure_reason ORDER BY count DESC LIMIT 10",
        conn,
    )
    st.dataframe(df_fail, use_container_width=True, hide_index=True)

    st.subheader("📡 数据源（最近一轮）")
    src_rows = _source_rows()
    if src_rows:
        st.dataframe(pd.DataFrame(src_rows), use_container_width=True, hide_index=True)
    else:
        st.caption("暂无采集记录")

try:
    conn.close()
except sqlite3.Error:
    pass
