# -*- coding: utf-8 -*-
"""
tests/test_ranking.py
相关度打分与类别多样化
"""
from f1hub import ranking

from conftest import TUESDAY_NOON

HOUR_MS = 3600 * 1000


def cats(items):
    return [it["category"] for it in items]


def max_run_length(seq):
    best = run = 0
    prev = object()
    for x in seq:
        run = run + 1 if x == prev else 1
        prev = x
        best = max(best, run)
    return best


def test_diversify_breaks_long_streak():
    items = [{"id": f"r{i}", "category": "Race Result"} for i in range(1, 6)]
    items += [
        {"id": "p", "category": "Penalty"},
        {"id": "t", "category": "Team News"},
        {"id": "q", "category": "Qualifying"},
    ]
    out = ranking.diversify(items)

    assert [it["id"] for it in out] == ["r1", "r2", "p", "r3", "r4", "t", "r5", "q"]
    assert max_run_length(cats(out)) <= 2
    assert sorted(it["id"] for it in out) == sorted(it["id"] for it in items)
    # 没被提前的条目相对顺序不变
    race = [it["id"] for it in out if it["category"] == "Race Result"]
    assert race == ["r1", "r2", "r3", "r4", "r5"]


def test_diversify_without_alternatives_keeps_order():
    items = [{"id": i, "category": "Penalty"} for i in range(4)]
    assert ranking.diversify(items) == items


def test_diversify_custom_run_length():
    items = [{"category": c} for c in "AAAB"]
    assert cats(ranking.diversify(items, max_run=1)) == ["A", "B", "A", "A"]


def test_recency_tiers():
    now = TUESDAY_NOON
    assert ranking.recency_weight(now - 1 * HOUR_MS, now) == 40
    assert ranking.recency_weight(now - 12 * HOUR_MS, now) == 25
    assert ranking.recency_weight(now - 48 * HOUR_MS, now) == 10
    assert ranking.recency_weight(now - 100 * HOUR_MS, now) == 0


def test_relevance_score_components():
    now = TUESDAY_NOON
    # 50 + 40 + 15
    assert ranking.relevance_score("Race Result", now - HOUR_MS, "Verstappen wins", now) == 105
    # 未知类别默认 10，无加分
    assert ranking.relevance_score("Uncategorized", now - 100 * HOUR_MS, "Paddock notes", now) == 10
    assert ranking.notable_boost("RED BULL confirms lineup") == ranking.NOTABLE_BOOST


def test_rank_orders_by_relevance_then_time():
    now = TUESDAY_NOON
    items = [
        {"id": "old-race", "category": "Race Result", "ts_utc": now - 50 * HOUR_MS, "title": "x"},
        {"id": "new-tech", "category": "Technical Update", "ts_utc": now - HOUR_MS, "title": "x"},
        {"id": "new-race", "category": "Race Result", "ts_utc": now - 2 * HOUR_MS, "title": "x"},
        {"id": "newer-race", "category": "Race Result", "ts_utc": now - HOUR_MS, "title": "x"},
    ]
    ranked = [it["id"] for it in ranking.rank(items, now)]
    assert ranked == ["newer-race", "new-race", "new-tech", "old-race"]


def test_overfetch_size():
    assert ranking.overfetch_size(20) == 60
    assert ranking.overfetch_size(50) == 100
    assert ranking.overfetch_size(100) == 100
