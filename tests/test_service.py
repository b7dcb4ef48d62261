# -*- coding: utf-8 -*-
"""
tests/test_service.py
对外操作：信息流分页 + 多样化、类别列表、手动录入、偏好、token 登记、已读追踪、概览
"""
import asyncio

import pytest

from f1hub import service, storage
from f1hub.models import Event, NotificationRecord, Subscriber

from conftest import TUESDAY_NOON

HOUR_MS = 3600 * 1000


def run(db_path, body):
    async def go():
        db = await storage.init_db(db_path)
        try:
            return await body(db)
        finally:
            await db.close()
    return asyncio.run(go())


async def add_event(db, title, category, hours_ago=1, image=True, link=True):
    ev = Event(
        id=storage.new_id(), title=title, category=category,
        ts_utc=TUESDAY_NOON - int(hours_ago * HOUR_MS), source="Formula 1",
        link=f"https://example.com/{title.replace(' ', '-')}" if link else None,
        image_url="https://img.example.com/x.jpg" if image else None,
    )
    assert await storage.insert_event(db, ev)
    return ev


async def seed_feed(db):
    # 5 条最新的比赛结果排在最前，后面跟其他类别
    for i in range(5):
        await add_event(db, f"Race story {i}", "Race Result", hours_ago=1 + i * 0.1)
    await add_event(db, "Penalty story", "Penalty", hours_ago=2)
    await add_event(db, "Transfer story", "Driver Transfer", hours_ago=2)
    await add_event(db, "Tech story", "Technical Update", hours_ago=3)
    # 不可展示：没图 / 没链接
    await add_event(db, "No image", "Race Result", image=False)
    await add_event(db, "No link", "Penalty", link=False)


def test_feed_page_diversified(db_path):
    async def body(db):
        await seed_feed(db)
        page = await service.feed_page(db, page=1, limit=6, now=TUESDAY_NOON)

        data = page["data"]
        assert len(data) == 6
        categories = [d["category"] for d in data]
        for i in range(len(categories) - 2):
            assert len(set(categories[i:i + 3])) > 1
        assert page["pagination"] == {"page": 1, "limit": 6, "total": 8, "totalPages": 2}
        assert all(d["image_url"] and d["link"] for d in data)
        assert categories == ["Race Result", "Race Result", "Penalty",
                              "Race Result", "Race Result", "Driver Transfer"]

    run(db_path, body)


def test_feed_pages_cover_every_event_once(db_path):
    async def body(db):
        await seed_feed(db)
        seen = []
        for page in (1, 2, 3):
            res = await service.feed_page(db, page=page, limit=4, now=TUESDAY_NOON)
            seen.append([d["title"] for d in res["data"]])

        assert seen[0] == ["Race story 0", "Race story 1", "Penalty story", "Race story 2"]
        assert seen[1] == ["Race story 3", "Transfer story", "Race story 4", "Tech story"]
        assert seen[2] == []
        flat = seen[0] + seen[1]
        assert len(flat) == len(set(flat)) == 8

    run(db_path, body)


def test_feed_page_with_category_is_not_diversified(db_path):
    async def body(db):
        await seed_feed(db)
        page = await service.feed_page(db, category="Race Result", limit=10, now=TUESDAY_NOON)
        titles = [d["title"] for d in page["data"]]
        assert titles == [f"Race story {i}" for i in range(5)]
        assert page["pagination"]["total"] == 5

    run(db_path, body)


def test_feed_page_clamps_and_date_filter(db_path):
    async def body(db):
        await seed_feed(db)
        page = await service.feed_page(db, page="abc", limit=1000, now=TUESDAY_NOON,
                                       date_from=TUESDAY_NOON - int(1.5 * HOUR_MS))
        assert page["pagination"]["page"] == 1
        assert page["pagination"]["limit"] == service.MAX_FEED_LIMIT
        assert page["pagination"]["total"] == 5

        empty = await service.feed_page(db, page=9, limit=20, now=TUESDAY_NOON)
        assert empty["data"] == []
        assert empty["pagination"]["total"] == 8

    run(db_path, body)


def test_list_categories_fixed_order(db_path):
    async def body(db):
        await seed_feed(db)
        cats = await service.list_categories(db)
        assert cats == [
            {"name": "Race Result", "count": 5},
            {"name": "Penalty", "count": 1},
            {"name": "Driver Transfer", "count": 1},
            {"name": "Technical Update", "count": 1},
        ]

    run(db_path, body)


def test_submit_event(db_path, categorizer):
    async def body(db):
        ev = await service.submit_event(
            db, categorizer, title="Verstappen wins the Monaco Grand Prix", source="Manual",
            raw_content="A dominant victory.", timestamp=TUESDAY_NOON)
        assert ev["category"] == "Race Result"
        assert ev["ts_utc"] == TUESDAY_NOON

        forced = await service.submit_event(db, categorizer, title="Anything", source="Manual",
                                            category="Team News")
        assert forced["category"] == "Team News"

        with pytest.raises(service.ValidationError):
            await service.submit_event(db, categorizer, title="", source="Manual")
        with pytest.raises(service.ValidationError):
            await service.submit_event(db, categorizer, title="Anything", source="Manual")

        got = await service.get_event(db, ev["id"])
        assert got["title"] == ev["title"]
        with pytest.raises(service.NotFoundError):
            await service.get_event(db, "missing")

    run(db_path, body)


def test_preferences_and_token(db_path):
    async def body(db):
        await storage.upsert_subscriber(db, Subscriber(id="u1"))

        prefs = await service.set_preferences(db, "u1", favorite_team="Ferrari",
                                              alert_sensitivity="breaking")
        assert prefs == {"favorite_team": "Ferrari", "favorite_driver": None,
                         "alert_sensitivity": "breaking"}

        with pytest.raises(service.ValidationError):
            await service.set_preferences(db, "u1", alert_sensitivity="sometimes")
        with pytest.raises(service.ValidationError):
            await service.set_preferences(db, "u1")
        with pytest.raises(service.NotFoundError):
            await service.set_preferences(db, "ghost", favorite_driver="Norris")

        await service.register_push_token(db, "u1", "tok-123")
        assert (await storage.get_subscriber(db, "u1")).push_token == "tok-123"
        with pytest.raises(service.ValidationError):
            await service.register_push_token(db, "u1", "")
        with pytest.raises(service.NotFoundError):
            await service.register_push_token(db, "ghost", "tok")

    run(db_path, body)


def test_open_tracking_and_overview(db_path):
    async def body(db):
        ev = await add_event(db, "Hamilton joins Ferrari", "Driver Transfer")
        await storage.upsert_subscriber(db, Subscriber(id="u1", push_token="tok", onboarded=1))
        rec = NotificationRecord(id=storage.new_id(), subscriber_id="u1", event_id=ev.id,
                                 sent_at_utc=TUESDAY_NOON, delivery_status="sent")
        await storage.insert_notification(db, rec)

        tracked = await service.track_open(db, "u1", ev.id)
        assert tracked["notificationId"] == rec.id
        again = await service.track_open(db, "u1", ev.id)
        assert again["notificationId"] is None

        with pytest.raises(service.NotFoundError):
            await service.mark_notification_opened(db, "missing")

        history = await service.notification_history(db, "u1")
        assert history[0]["title"] == "Hamilton joins Ferrari"
        assert history[0]["opened_at_utc"] is not None

        ov = await service.overview(db, now=TUESDAY_NOON + HOUR_MS)
        assert ov["events_total"] == 1
        assert ov["notifications_total"] == 1
        assert ov["notifications_opened"] == 1
        assert ov["open_rate"] == 100.0
        assert ov["subscribers_with_token"] == 1
        assert ov["subscribers_onboarded"] == 1

    run(db_path, body)
