# -*- coding: utf-8 -*-
"""
ranking.py
信息流排序：相关度 = 类别权重 + 时效权重 + 明星车手/车队加分
多样化：同一类别最多连续 max_run 条（仅在未指定类别筛选时使用）

relevance_score 同时注册为 SQLite 函数（见 storage.init_db），
服务端排序与 Python 端排序用同一份规则。
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence

HOUR_MS = 3600 * 1000

CATEGORY_WEIGHTS: Dict[str, int] = {
    "Race Result": 50,
    "Penalty": 45,
    "Driver Transfer": 40,
    "Contract News": 35,
    "Qualifying": 30,
    "Technical Update": 25,
    "Official Statement": 20,
    "Team News": 20,
    "Practice & Testing": 15,
}
DEFAULT_CATEGORY_WEIGHT = 10

# (最大年龄毫秒, 分数)，按年龄从小到大
RECENCY_TIERS = (
    (6 * HOUR_MS, 40),
    (24 * HOUR_MS, 25),
    (72 * HOUR_MS, 10),
)

NOTABLE_ENTITIES = (
    "verstappen", "hamilton", "leclerc", "norris",
    "red bull", "ferrari", "mercedes", "mclaren",
)
NOTABLE_BOOST = 15

DEFAULT_MAX_RUN = 2


def category_weight(category: Optional[str]) -> int:
    return CATEGORY_WEIGHTS.get(category or "", DEFAULT_CATEGORY_WEIGHT)


def recency_weight(ts_utc: Optional[int], now_ms: int) -> int:
    if ts_utc is None:
        return 0
    age = now_ms - int(ts_utc)
    for max_age, score in RECENCY_TIERS:
        if age < max_age:
            return score
    return 0


def notable_boost(title: Optional[str]) -> int:
    low = (title or "").lower()
    return NOTABLE_BOOST if any(name in low for name in NOTABLE_ENTITIES) else 0


def relevance_score(category: Optional[str], ts_utc: Optional[int],
                    title: Optional[str], now_ms: int) -> int:
    return category_weight(category) + recency_weight(ts_utc, now_ms) + notable_boost(title)


def _get(item: Any, key: str) -> Any:
    if isinstance(item, dict):
        return item.get(key)
    return getattr(item, key, None)


def rank(items: Sequence[Any], now_ms: int) -> List[Any]:
    """相关度降序，同分按时间降序；item 可以是 dict 或 Event"""
    return sorted(
        items,
        key=lambda it: (
            -relevance_score(_get(it, "category"), _get(it, "ts_utc"), _get(it, "title"), now_ms),
            -(_get(it, "ts_utc") or 0),
        ),
    )


def diversify(items: Sequence[Any], max_run: int = DEFAULT_MAX_RUN,
              key: Optional[Callable[[Any], Any]] = None) -> List[Any]:
    """
    同类别连续不超过 max_run 条：
    输出末尾已连续 max_run 条同类时，把后面最近的一条异类提前；
    其余条目保持原相对顺序。找不到异类就原样追加剩余部分。
    """
    if key is None:
        key = lambda it: _get(it, "category")  # noqa: E731
    if max_run <= 0:
        return list(items)

    out: List[Any] = []
    remaining = list(items)
    while remaining:
        tail = out[-max_run:]
        if len(tail) == max_run and len({key(t) for t in tail}) == 1:
            streak = key(tail[0])
            idx = next((i for i, it in enumerate(remaining) if key(it) != streak), None)
            if idx is None:
                out.extend(remaining)
                break
            out.append(remaining.pop(idx))
        else:
            out.append(remaining.pop(0))
    return out


def overfetch_size(limit: int, factor: int = 3, cap: int = 100) -> int:
    """多取一些候选给多样化用；至少取满一页"""
    return max(limit, min(limit * factor, cap))
