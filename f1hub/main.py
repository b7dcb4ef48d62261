# f1hub/main.py
# 串起：collector -> categorizer -> storage -> notifier，按固定间隔轮询

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List

# 支持 python f1hub/main.py 直接运行
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from f1hub import observability
from f1hub.categorizer import Categorizer
from f1hub.collector import Collector
from f1hub.config import load_cfg, load_sources
from f1hub.ingestion import Ingestor
from f1hub.notifier import Notifier
from f1hub.observability import Metrics
from f1hub.storage import init_db, set_image_url_if_missing


def build_categorizer(cfg: Dict[str, Any]) -> Categorizer:
    c = cfg.get("categorizer", {})
    return Categorizer.from_yaml(c.get("rules_path") or None, c.get("threshold"))


def build_collector(cfg: Dict[str, Any], metrics: Metrics) -> Collector:
    ing = cfg.get("ingestion", {})
    return Collector(
        timeout_sec=float(ing.get("fetch_timeout_sec", 10)),
        user_agent=ing.get("user_agent", "f1-hub/1.0"),
        metrics=metrics,
    )


async def backfill_images(db, collector: Collector, sources: List[Dict[str, Any]]) -> int:
    """重新抓取各源，按 (source, title) 给还没有配图的事件补 image_url"""
    updated = 0
    for src in sources:
        if not src.get("enabled", True):
            continue
        result = await collector.fetch(src)
        for item in result.items:
            if not item.image_url:
                continue
            n = await set_image_url_if_missing(db, item.source, item.title, item.image_url)
            if n:
                updated += n
                print(f"[backfill] 更新配图: {item.title[:60]}")
    print(f"[backfill] 完成，共更新 {updated} 条")
    return updated


async def main(run_seconds: int = 0, once: bool = False, backfill: bool = False) -> None:
    cfg = load_cfg()
    observability.configure(cfg.get("observability", {}).get("log_file"))
    sources = load_sources()

    metrics = Metrics()
    db = await init_db(cfg["db_path"])
    collector = build_collector(cfg, metrics)
    notifier = Notifier.from_cfg(db, cfg, metrics=metrics)

    try:
        if backfill:
            await backfill_images(db, collector, sources)
            return

        ingestor = Ingestor(
            db, sources, collector, build_categorizer(cfg), notifier,
            metrics=metrics,
            summary_chars=int(cfg["ingestion"].get("summary_chars", 500)),
        )
        if once:
            await ingestor.run_cycle()
            return

        task = asyncio.create_task(
            ingestor.run_forever(float(cfg["ingestion"].get("interval_sec", 60))))
        print(f"[main] running for {run_seconds or '∞'}s …")
        try:
            if run_seconds and run_seconds > 0:
                await asyncio.sleep(run_seconds)
            else:
                # 0 或负数 => 常驻，直到采集任务结束或被取消
                await task
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            print(f"[main] metrics={metrics.snapshot()}")
    finally:
        await collector.close()
        await notifier.close()
        await db.close()
        print("[main] finished")


def cli() -> None:
    parser = argparse.ArgumentParser(description="F1 news ingestion + push notifications")
    parser.add_argument("--run-seconds", type=int, default=0, help="运行秒数，0=常驻")
    parser.add_argument("--once", action="store_true", help="只跑一轮采集")
    parser.add_argument("--backfill-images", action="store_true", help="为已有事件补配图后退出")
    args = parser.parse_args()
    asyncio.run(main(run_seconds=args.run_seconds, once=args.once, backfill=args.backfill_images))


if __name__ == "__main__":
    cli()
