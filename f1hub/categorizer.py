# -*- coding: utf-8 -*-
"""
categorizer.py
基于关键词权重的 F1 新闻分类器（纯函数，无 IO）

- 每个类别一组 (短语, 权重)；标题命中按 2 倍计，标题已命中的短语不再计正文分
- 分数最高的类别胜出；完全平局时先定义的类别胜出
- 置信度 = 胜出分数 / 该类别上限 * 100（封顶 100）
  上限 = 该类别最高两个权重各 x2 之和，在构造时算好
- 置信度低于阈值 => "Uncategorized"（置信度照常返回）
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Sequence, Union

import yaml

from f1hub.models import UNCATEGORIZED, Category, CategoryRule

DEFAULT_RULES_PATH = Path(__file__).resolve().parent / "data" / "categories.yml"
DEFAULT_THRESHOLD = 30

TITLE_MULTIPLIER = 2


@dataclass(frozen=True)
class Classification:
    category: str
    confidence: int
    # 各类别原始分数，按类别定义顺序
    scores: Mapping[str, int]


def load_rules(path: Union[str, Path, None] = None) -> tuple:
    """
    读取关键词表 yml，返回 (rules, threshold)

    yml 格式：
        threshold: 30
        categories:
          - category: Race Result
            keywords: {wins: 15, podium: 15}
    """
    p = Path(path) if path else DEFAULT_RULES_PATH
    with open(p, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    rules = []
    for block in data.get("categories", []) or []:
        # 未知类别名直接抛 ValueError，类别集合是封闭的
        category = Category(block["category"])
        keywords = tuple(
            (str(term).lower(), int(weight))
            for term, weight in (block.get("keywords") or {}).items()
        )
        rules.append(CategoryRule(category=category, keywords=keywords))

    threshold = int(data.get("threshold", DEFAULT_THRESHOLD))
    return tuple(rules), threshold


def _ceiling(rule: CategoryRule) -> int:
    top2 = sorted((w for _, w in rule.keywords), reverse=True)[:2]
    return sum(w * TITLE_MULTIPLIER for w in top2)


class Categorizer:
    """构造时计算各类别上限，之后只读"""

    def __init__(self, rules: Sequence[CategoryRule], threshold: int = DEFAULT_THRESHOLD):
        self._rules = tuple(rules)
        self._threshold = int(threshold)
        self._ceilings: Mapping[str, int] = MappingProxyType(
            {r.category.value: _ceiling(r) for r in self._rules}
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path, None] = None,
                  threshold: Optional[int] = None) -> "Categorizer":
        rules, file_threshold = load_rules(path)
        return cls(rules, file_threshold if threshold is None else threshold)

    @property
    def threshold(self) -> int:
        return self._threshold

    @property
    def ceilings(self) -> Mapping[str, int]:
        return self._ceilings

    def _score(self, rule: CategoryRule, title_lower: str, content_lower: str) -> int:
        score = 0
        for term, weight in rule.keywords:
            if term in title_lower:
                score += weight * TITLE_MULTIPLIER
            elif term in content_lower:
                score += weight
        return score

    def classify(self, title: Optional[str], content: Optional[str] = "") -> Classification:
        title_lower = (title or "").lower()
        content_lower = (content or "").lower()

        scores: Dict[str, int] = {}
        best_category = UNCATEGORIZED
        best_score = 0
        for rule in self._rules:
            s = self._score(rule, title_lower, content_lower)
            scores[rule.category.value] = s
            # 严格大于：平局保留先定义的类别
            if s > best_score:
                best_score = s
                best_category = rule.category.value

        if best_score <= 0:
            return Classification(UNCATEGORIZED, 0, MappingProxyType(scores))

        ceiling = self._ceilings.get(best_category) or 1
        confidence = min(100, int(best_score * 100 / ceiling + 0.5))

        if confidence < self._threshold:
            return Classification(UNCATEGORIZED, confidence, MappingProxyType(scores))
        return Classification(best_category, confidence, MappingProxyType(scores))

    def categorize(self, title: Optional[str], content: Optional[str] = "") -> str:
        """只要类别字符串的简化接口"""
        return self.classify(title, content).category
