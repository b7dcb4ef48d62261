# -*- coding: utf-8 -*-
"""
f1hub/ingestion.py
采集主循环：逐源抓取 -> (source,title) 去重 -> 分类 -> 入库 -> 推送

- 源与源、条目与条目都是顺序处理，条目保持 feed 原始顺序
- 单源失败只影响本源本轮；单条失败只丢这一条（下一轮还会重新抓到）
- 每轮结束记录完成时间；调度循环里任何异常都不会让循环退出
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import aiosqlite

from f1hub import observability, storage
from f1hub.categorizer import Categorizer
from f1hub.collector import Collector
from f1hub.models import Event, FeedItem
from f1hub.notifier import Notifier
from f1hub.observability import Metrics
from f1hub.utils import now_ms

SUMMARY_CHARS = 500


@dataclass
class SourceStats:
    last_fetch_time: Optional[int] = None
    last_success: Optional[int] = None
    last_error: Optional[str] = None
    error_count: int = 0
    items_total: int = 0
    items_new: int = 0


class SourceStatsStore:
    """单个 Ingestor 持有的每源统计；进程启动时为空"""

    def __init__(self, source_names: Sequence[str] = ()):
        self._stats: Dict[str, SourceStats] = {name: SourceStats() for name in source_names}

    def get(self, name: str) -> SourceStats:
        if name not in self._stats:
            self._stats[name] = SourceStats()
        return self._stats[name]

    def record_failure(self, name: str, ts: int, error: str) -> None:
        st = self.get(name)
        st.last_fetch_time = ts
        st.last_error = error
        st.error_count += 1

    def record_success(self, name: str, ts: int, seen: int, new: int) -> None:
        st = self.get(name)
        st.last_fetch_time = ts
        st.last_success = ts
        st.items_total += seen
        st.items_new += new

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: asdict(st) for name, st in self._stats.items()}


@dataclass
class CycleReport:
    started_at: int
    finished_at: int = 0
    new: int = 0
    skipped: int = 0
    failed_items: int = 0
    failed_sources: List[str] = field(default_factory=list)


class Ingestor:
    def __init__(self, db: aiosqlite.Connection, sources: Sequence[Dict[str, Any]],
                 collector: Collector, categorizer: Categorizer, notifier: Notifier, *,
                 stats: Optional[SourceStatsStore] = None,
                 metrics: Optional[Metrics] = None,
                 summary_chars: int = SUMMARY_CHARS,
                 clock: Callable[[], int] = now_ms):
        self._db = db
        self._sources = list(sources)
        self._collector = collector
        self._categorizer = categorizer
        self._notifier = notifier
        self._stats = stats or SourceStatsStore([self._name(s) for s in self._sources])
        self._metrics = metrics or Metrics()
        self._summary_chars = int(summary_chars)
        self._clock = clock

    @staticmethod
    def _name(src: Dict[str, Any]) -> str:
        return src.get("name") or src.get("id", "")

    @property
    def stats(self) -> SourceStatsStore:
        return self._stats

    def source_stats(self) -> List[Dict[str, Any]]:
        """源配置 + 统计；每轮结束写进日志，看板从日志读"""
        snap = self._stats.snapshot()
        return [{**src, "stats": snap.get(self._name(src), {})} for src in self._sources]

    def enabled_sources(self) -> List[Dict[str, Any]]:
        return [s for s in self._sources if s.get("enabled", True)]

    # --------------- 单轮 ---------------

    async def run_cycle(self) -> CycleReport:
        active = self.enabled_sources()
        report = CycleReport(started_at=self._clock())
        print(f"[ingest] 本轮开始，{len(active)} 个源")

        for src in active:
            name = self._name(src)
            result = await self._collector.fetch(src)
            ts = self._clock()
            if not result.items:
                report.failed_sources.append(name)
                err = result.error.value if result.error else "empty"
                self._stats.record_failure(name, ts, f"{err}: {result.detail}"[:500])
                continue

            new = skipped = 0
            for item in result.items:
                try:
                    if await self.process_item(item):
                        new += 1
                    else:
                        skipped += 1
                except Exception as e:
                    report.failed_items += 1
                    print(f"[ingest] 处理条目失败，跳过 source={item.source} title={item.title[:60]} err={e!r}")
                    observability.log("ingest", "item_failed", {
                        "source": item.source, "title": item.title, "error": str(e)[:500],
                    })

            report.new += new
            report.skipped += skipped
            self._stats.record_success(name, self._clock(), len(result.items), new)
            if new > 0:
                print(f"[ingest] {name} new={new} skipped={skipped}")

        report.finished_at = self._clock()
        self._metrics.set_last_cycle(report.finished_at)
        print(f"[ingest] 本轮完成 new={report.new} skipped={report.skipped} "
              f"failed_feeds={len(report.failed_sources)}")
        observability.log("ingest", "cycle_complete", asdict(report))
        # 看板的数据源面板读最近一条 source_stats
        observability.log("ingest", "source_stats", {"sources": self.source_stats()})
        return report

    async def process_item(self, item: FeedItem) -> bool:
        """返回 True=新入库并已推送；False=重复跳过"""
        if await storage.find_event_by_source_title(self._db, item.source, item.title):
            return False

        category = self._categorizer.categorize(item.title, item.content)
        ev = Event(
            id=storage.new_id(),
            title=item.title,
            category=category,
            ts_utc=item.ts_published_utc,
            source=item.source,
            link=item.link or None,
            summary=item.content[:self._summary_chars],
            raw_content=item.content,
            image_url=item.image_url,
        )
        # 唯一约束冲突（并发轮次抢先写入）同样按重复处理
        if not await storage.insert_event(self._db, ev):
            return False

        print(f"[ingest] 入库 [{category}] {ev.title[:60]}")
        try:
            await self._notifier.dispatch(ev)
        except Exception as e:
            print(f"[ingest] 推送失败 title={ev.title[:60]} err={e!r}")
            observability.log("ingest", "broadcast_failed", {"title": ev.title, "error": str(e)[:500]})
        return True

    # --------------- 调度 ---------------

    async def run_forever(self, interval_sec: float = 60.0) -> None:
        """
        启动即跑一轮，之后每 interval_sec 一轮。
        轮次串行：上一轮超时则下一轮立即开始，不会跳过也不会重叠。
        """
        if not self.enabled_sources():
            print("[ingest] 没有启用的源，采集不启动")
            return
        print(f"[ingest] 轮询启动 每 {interval_sec}s，{len(self.enabled_sources())} 个源")
        try:
            while True:
                t0 = time.monotonic()
                try:
                    await self.run_cycle()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    print(f"[ingest] 本轮异常，下轮重试: {e!r}")
                    observability.log("ingest", "cycle_failed", {"error": str(e)[:500]})
                elapsed = time.monotonic() - t0
                await asyncio.sleep(max(0.0, interval_sec - elapsed))
        except asyncio.CancelledError:
            print("[ingest] 轮询已停止")
            raise
