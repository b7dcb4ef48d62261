# -*- coding: utf-8 -*-
"""
tests/test_notifier.py
推送：敏感度路由、限流（工作日 / 周末）、token 失效清除、普通失败、消息体、渠道适配器
"""
import asyncio
import json

import httpx
import pytest

from f1hub import storage
from f1hub.models import Event, NotificationRecord, Subscriber
from f1hub.notifier import (INVALID_TOKEN_REASON, FcmPush, InvalidTokenError, Notifier,
                            Outcome, PushError, StdoutPush, TelegramPush, build_adapter,
                            build_payload)
from f1hub.observability import Metrics

from conftest import FRIDAY_NOON, TUESDAY_NOON


class FakePush:
    """记录每次发送；fail 里按 token 指定要抛的异常"""

    def __init__(self, fail=None):
        self.sent = []
        self.calls = 0
        self.fail = fail or {}

    async def send(self, token, payload):
        self.calls += 1
        exc = self.fail.get(token)
        if exc is not None:
            raise exc
        self.sent.append((token, payload))

    async def close(self):
        return


def make_ev(title, category, ts=TUESDAY_NOON):
    return Event(id=storage.new_id(), title=title, category=category, ts_utc=ts,
                 source="Formula 1", summary=f"{title}. More details follow.")


def run(db_path, body):
    async def go():
        db = await storage.init_db(db_path)
        try:
            return await body(db)
        finally:
            await db.close()
    return asyncio.run(go())


async def seed_sent(db, sub_id, now, n):
    """给 subscriber 造 n 条一小时内的 sent 记录"""
    old = make_ev("Earlier news", "Team News", now - 3600 * 1000)
    await storage.insert_event(db, old)
    for i in range(n):
        await storage.insert_notification(db, NotificationRecord(
            id=storage.new_id(), subscriber_id=sub_id, event_id=old.id,
            sent_at_utc=now - (i + 1) * 60 * 1000, delivery_status="sent"))


def test_breaking_routing(db_path):
    async def body(db):
        await storage.upsert_subscriber(db, Subscriber(id="all", alert_sensitivity="all", push_token="t-all"))
        await storage.upsert_subscriber(db, Subscriber(id="brk", alert_sensitivity="breaking", push_token="t-brk"))
        push = FakePush()
        notifier = Notifier(db, push, clock=lambda: TUESDAY_NOON)

        race = make_ev("Norris wins in Austin", "Race Result")
        tech = make_ev("Ferrari brings new floor", "Technical Update")
        for ev in (race, tech):
            await storage.insert_event(db, ev)

        await notifier.dispatch(race)
        recs = await storage.list_notifications_for_event(db, race.id)
        assert sorted(r.subscriber_id for r in recs) == ["all", "brk"]
        assert all(r.delivery_status == "sent" for r in recs)

        await notifier.dispatch(tech)
        recs = await storage.list_notifications_for_event(db, tech.id)
        assert [r.subscriber_id for r in recs] == ["all"]

    run(db_path, body)


def test_rate_limited_on_weekday(db_path):
    async def body(db):
        await storage.upsert_subscriber(db, Subscriber(id="u1", push_token="tok"))
        await seed_sent(db, "u1", TUESDAY_NOON, 10)
        push = FakePush()
        notifier = Notifier(db, push, clock=lambda: TUESDAY_NOON)

        ev = make_ev("Verstappen wins the Monaco Grand Prix", "Race Result")
        await storage.insert_event(db, ev)
        out = await notifier.dispatch(ev)

        assert [o.outcome for o in out] == [Outcome.RATE_LIMITED]
        assert push.calls == 0
        assert await storage.list_notifications_for_event(db, ev.id) == []

    run(db_path, body)


def test_below_cap_is_not_limited(db_path):
    async def body(db):
        await storage.upsert_subscriber(db, Subscriber(id="u1", push_token="tok"))
        await seed_sent(db, "u1", TUESDAY_NOON, 9)
        notifier = Notifier(db, FakePush(), clock=lambda: TUESDAY_NOON)
        assert await notifier.is_rate_limited("u1", TUESDAY_NOON) is False

    run(db_path, body)


def test_weekend_is_unrestricted(db_path):
    async def body(db):
        await storage.upsert_subscriber(db, Subscriber(id="u1", push_token="tok"))
        await seed_sent(db, "u1", FRIDAY_NOON, 10)
        push = FakePush()
        notifier = Notifier(db, push, clock=lambda: FRIDAY_NOON)

        ev = make_ev("Verstappen wins the Monaco Grand Prix", "Race Result", FRIDAY_NOON)
        await storage.insert_event(db, ev)
        out = await notifier.dispatch(ev)

        assert [o.outcome for o in out] == [Outcome.SENT]
        assert push.calls == 1
        recs = await storage.list_notifications_for_event(db, ev.id)
        assert [r.delivery_status for r in recs] == ["sent"]

    run(db_path, body)


def test_invalid_token_is_cleared(db_path):
    async def body(db):
        await storage.upsert_subscriber(db, Subscriber(id="u1", push_token="dead"))
        push = FakePush(fail={"dead": InvalidTokenError("chat not found")})
        notifier = Notifier(db, push, clock=lambda: TUESDAY_NOON)

        first = make_ev("Hamilton joins Ferrari", "Driver Transfer")
        await storage.insert_event(db, first)
        out = await notifier.dispatch(first)
        assert out[0].outcome == Outcome.FAILED

        recs = await storage.list_notifications_for_event(db, first.id)
        assert len(recs) == 1
        assert recs[0].delivery_status == "failed"
        assert recs[0].failure_reason == INVALID_TOKEN_REASON
        assert (await storage.get_subscriber(db, "u1")).push_token is None

        # token 已清空：下一条事件不再尝试发送
        second = make_ev("Sainz signs with Williams", "Driver Transfer")
        await storage.insert_event(db, second)
        await notifier.dispatch(second)
        assert push.calls == 1
        assert await storage.list_notifications_for_event(db, second.id) == []

    run(db_path, body)


def test_transient_failure_keeps_token(db_path):
    async def body(db):
        await storage.upsert_subscriber(db, Subscriber(id="u1", push_token="flaky"))
        push = FakePush(fail={"flaky": PushError("x" * 900)})
        metrics = Metrics()
        notifier = Notifier(db, push, clock=lambda: TUESDAY_NOON, metrics=metrics)

        ev = make_ev("Stewards hand Russell a penalty", "Penalty")
        await storage.insert_event(db, ev)
        await notifier.dispatch(ev)

        recs = await storage.list_notifications_for_event(db, ev.id)
        assert recs[0].delivery_status == "failed"
        assert len(recs[0].failure_reason) == 500
        assert (await storage.get_subscriber(db, "u1")).push_token == "flaky"
        assert metrics.notifications["failed"] == 1

    run(db_path, body)


def test_one_failure_does_not_block_others(db_path):
    async def body(db):
        await storage.upsert_subscriber(db, Subscriber(id="a", push_token="boom"))
        await storage.upsert_subscriber(db, Subscriber(id="b", push_token="ok"))
        push = FakePush(fail={"boom": RuntimeError("socket closed")})
        notifier = Notifier(db, push, clock=lambda: TUESDAY_NOON)

        ev = make_ev("Leclerc wins at Monza", "Race Result")
        await storage.insert_event(db, ev)
        out = {o.subscriber_id: o.outcome for o in await notifier.dispatch(ev)}

        assert out == {"a": Outcome.FAILED, "b": Outcome.SENT}
        assert [t for t, _ in push.sent] == ["ok"]

    run(db_path, body)


def test_build_payload():
    ev = Event(id="e1", title="Verstappen wins", category="Race Result", ts_utc=TUESDAY_NOON,
               source="Formula 1", summary="He won again! Then more happened.")
    p = build_payload(ev)
    assert p["notification"]["title"] == "Race Result: Verstappen wins"
    assert p["notification"]["body"] == "He won again.\nvia Formula 1"
    assert p["data"] == {
        "eventId": "e1",
        "category": "Race Result",
        "timestamp": "2025-01-07T12:00:00.000Z",
    }


def test_build_adapter_falls_back_to_stdout():
    assert isinstance(build_adapter({"channel": "telegram"}), StdoutPush)
    assert isinstance(build_adapter({"channel": "fcm", "fcm_project_id": "p"}), StdoutPush)
    assert isinstance(build_adapter({"channel": "telegram", "telegram_bot_token": "x"}), TelegramPush)


def _send_via(adapter_factory, handler):
    async def go():
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        adapter = adapter_factory(client)
        try:
            ev = Event(id="e1", title="t", category="Penalty", ts_utc=TUESDAY_NOON, source="FIA")
            await adapter.send("token-1", build_payload(ev))
        finally:
            await client.aclose()
    asyncio.run(go())


def test_telegram_chat_not_found_is_invalid_token():
    def handler(request):
        return httpx.Response(400, json={"ok": False, "description": "Bad Request: chat not found"})

    with pytest.raises(InvalidTokenError):
        _send_via(lambda c: TelegramPush("bot", client=c), handler)


def test_telegram_server_error_is_plain_failure():
    def handler(request):
        return httpx.Response(502, text="bad gateway")

    with pytest.raises(PushError) as ei:
        _send_via(lambda c: TelegramPush("bot", client=c), handler)
    assert not isinstance(ei.value, InvalidTokenError)


def test_fcm_unregistered_is_invalid_token():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(404, json={"error": {
            "code": 404, "status": "NOT_FOUND", "message": "Requested entity was not found.",
            "details": [{"@type": "type.googleapis.com/google.firebase.fcm.v1.FcmError",
                         "errorCode": "UNREGISTERED"}],
        }})

    with pytest.raises(InvalidTokenError):
        _send_via(lambda c: FcmPush("proj", "access", client=c), handler)
    assert seen["auth"] == "Bearer access"
    assert seen["body"]["message"]["token"] == "token-1"
    assert seen["body"]["message"]["data"]["eventId"] == "e1"
