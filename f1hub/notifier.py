"""
f1hub/notifier.py
推送模块：新事件入库后，按订阅者偏好匹配并逐个推送
- 匹配：有 token 且（敏感度 all，或敏感度 breaking 且事件属于突发类别）
- 限流：过去 1 小时 sent 记录达到上限则跳过；周五~周日（UTC）不限流
- 每次尝试都落一条推送记录（sent / failed）；token 失效则清除 token
- 不做同步重试
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

import aiosqlite
import httpx

from f1hub import observability, storage
from f1hub.models import DeliveryStatus, Event, NotificationRecord, Subscriber
from f1hub.observability import Metrics
from f1hub.utils import first_sentence, ms_to_iso, now_ms, truncate, utc_weekday

BREAKING_CATEGORIES = ("Race Result", "Penalty", "Driver Transfer")
RATE_LIMIT_PER_HOUR = 10
# Python weekday：4=周五 5=周六 6=周日
UNRESTRICTED_WEEKDAYS = (4, 5, 6)

INVALID_TOKEN_REASON = "invalid_token"
MAX_REASON_CHARS = 500
HOUR_MS = 3600 * 1000


class PushError(Exception):
    """推送失败（网络、服务端、其他）"""


class InvalidTokenError(PushError):
    """token 无效或已注销，需要清除"""


# ------------------------------------------------------------
# 消息体
# ------------------------------------------------------------

def build_payload(ev: Event) -> Dict[str, Any]:
    """标题=类别+标题；正文两行=摘要第一句 + via 来源；data 给客户端深链用"""
    title = f"{ev.category}: {ev.title}"
    summary_text = ev.summary or ev.title
    body = f"{first_sentence(summary_text)}.\nvia {ev.source}"
    return {
        "notification": {"title": title, "body": body},
        "data": {
            "eventId": str(ev.id),
            "category": ev.category,
            "timestamp": ms_to_iso(ev.ts_utc or None),
        },
    }


# ------------------------------------------------------------
# 渠道适配器
# ------------------------------------------------------------

def _http_client(timeout_sec: float) -> httpx.AsyncClient:
    timeout = httpx.Timeout(connect=5.0, read=timeout_sec, write=timeout_sec, pool=30.0)
    # HTTP/2 + 连接池复用，读取系统代理
    return httpx.AsyncClient(timeout=timeout, http2=True, trust_env=True)


class TelegramPush:
    """subscriber 的 push_token 即 Telegram chat_id"""

    # 400 chat not found / 403 bot 被拉黑、账号注销 => token 作废
    _INVALID_HINTS = ("chat not found", "bot was blocked", "user is deactivated",
                      "bot was kicked", "chat_id is empty")

    def __init__(self, bot_token: str, timeout_sec: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self._bot_token = bot_token
        self._timeout = timeout_sec
        self._client = client

    def _client_get(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = _http_client(self._timeout)
        return self._client

    async def send(self, token: str, payload: Dict[str, Any]) -> None:
        url = f"https://api.telegram.org/bot{self._bot_token}/sendMessage"
        n = payload["notification"]
        data = {
            "chat_id": token,
            "text": f"{n['title']}\n{n['body']}",
            "disable_web_page_preview": True,
        }
        r = await self._client_get().post(url, data=data)
        try:
            j = r.json()
        except ValueError:
            j = {}
        if r.status_code == 200 and j.get("ok", True) is True:
            return

        desc = str(j.get("description") or r.text or "")
        if r.status_code in (400, 403) and any(h in desc.lower() for h in self._INVALID_HINTS):
            raise InvalidTokenError(desc)
        raise PushError(f"http {r.status_code}: {desc[:300]}")

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class FcmPush:
    """FCM HTTP v1；access_token 由外部（gcloud / 部署环境）注入"""

    _INVALID_CODES = {"UNREGISTERED"}

    def __init__(self, project_id: str, access_token: str, timeout_sec: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self._project_id = project_id
        self._access_token = access_token
        self._timeout = timeout_sec
        self._client = client

    def _client_get(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = _http_client(self._timeout)
        return self._client

    async def send(self, token: str, payload: Dict[str, Any]) -> None:
        url = f"https://fcm.googleapis.com/v1/projects/{self._project_id}/messages:send"
        message = {
            "token": token,
            "notification": payload["notification"],
            "data": payload["data"],
            "android": {"priority": "high"},
            "apns": {"payload": {"aps": {"sound": "default"}}},
        }
        r = await self._client_get().post(
            url,
            json={"message": message},
            headers={"Authorization": f"Bearer {self._access_token}"},
        )
        if 200 <= r.status_code < 300:
            return

        try:
            err = r.json().get("error", {}) or {}
        except ValueError:
            err = {}
        message_text = str(err.get("message") or r.text or "")
        codes = {d.get("errorCode") for d in err.get("details", []) or [] if isinstance(d, dict)}
        if codes & self._INVALID_CODES or (
            err.get("status") == "INVALID_ARGUMENT" and "registration token" in message_text.lower()
        ):
            raise InvalidTokenError(message_text or "UNREGISTERED")
        raise PushError(f"http {r.status_code}: {message_text[:300]}")

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class StdoutPush:
    async def send(self, token: str, payload: Dict[str, Any]) -> None:
        n = payload["notification"]
        print(f"\n[push -> {token}] {n['title']}\n{n['body']}\n")

    async def close(self):
        return


def build_adapter(cfg: Dict[str, Any]):
    """按 notifier.channel 选渠道，缺凭据自动降级为 stdout"""
    channel = (cfg.get("channel") or "stdout").lower()
    timeout = float(cfg.get("send_timeout_sec", 10))
    if channel == "telegram":
        if cfg.get("telegram_bot_token"):
            return TelegramPush(cfg["telegram_bot_token"], timeout)
        print("[notifier] TELEGRAM_BOT_TOKEN 缺失，自动降级为 stdout")
    elif channel == "fcm":
        if cfg.get("fcm_project_id") and cfg.get("fcm_access_token"):
            return FcmPush(cfg["fcm_project_id"], cfg["fcm_access_token"], timeout)
        print("[notifier] FCM_PROJECT_ID/FCM_ACCESS_TOKEN 缺失，自动降级为 stdout")
    return StdoutPush()


# ------------------------------------------------------------
# Notifier 主体
# ------------------------------------------------------------

class Outcome(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED_NO_TOKEN = "skipped_no_token"
    RATE_LIMITED = "rate_limited"


@dataclass
class DispatchOutcome:
    subscriber_id: str
    outcome: Outcome
    reason: Optional[str] = None


class Notifier:
    def __init__(self, db: aiosqlite.Connection, adapter, *,
                 rate_limit_per_hour: int = RATE_LIMIT_PER_HOUR,
                 unrestricted_weekdays: Iterable[int] = UNRESTRICTED_WEEKDAYS,
                 breaking_categories: Iterable[str] = BREAKING_CATEGORIES,
                 clock: Callable[[], int] = now_ms,
                 metrics: Optional[Metrics] = None):
        self._db = db
        self._adapter = adapter
        self._rate_limit = int(rate_limit_per_hour)
        self._unrestricted = frozenset(int(d) for d in unrestricted_weekdays)
        self._breaking = frozenset(breaking_categories)
        self._clock = clock
        self._metrics = metrics or Metrics()

    @classmethod
    def from_cfg(cls, db: aiosqlite.Connection, cfg: Dict[str, Any], *,
                 adapter=None, metrics: Optional[Metrics] = None) -> "Notifier":
        # 允许传进来“整份 cfg”或“notifier 子配置”
        if "notifier" in cfg:
            cfg = cfg["notifier"]
        return cls(
            db,
            adapter if adapter is not None else build_adapter(cfg),
            rate_limit_per_hour=cfg.get("rate_limit_per_hour", RATE_LIMIT_PER_HOUR),
            unrestricted_weekdays=cfg.get("unrestricted_weekdays", UNRESTRICTED_WEEKDAYS),
            breaking_categories=cfg.get("breaking_categories", BREAKING_CATEGORIES),
            metrics=metrics,
        )

    def is_breaking(self, category: str) -> bool:
        return category in self._breaking

    def is_unrestricted(self, ts_ms: int) -> bool:
        return utc_weekday(ts_ms) in self._unrestricted

    async def is_rate_limited(self, subscriber_id: str, now: int) -> bool:
        if self.is_unrestricted(now):
            return False
        count = await storage.count_sent_since(self._db, subscriber_id, now - HOUR_MS)
        return count >= self._rate_limit

    async def dispatch(self, ev: Event) -> List[DispatchOutcome]:
        """找出匹配的订阅者并逐个推送；单个失败不影响其他人"""
        subs = await storage.find_eligible_subscribers(self._db, self.is_breaking(ev.category))
        results: List[DispatchOutcome] = []
        for sub in subs:
            try:
                results.append(await self.send_to_subscriber(sub, ev))
            except Exception as e:
                # 记录落库失败等意外情况
                print(f"[notifier] 推送异常 subscriber={sub.id} err={e!r}")
                observability.log("notifier", "dispatch_error", {
                    "subscriberId": sub.id, "eventId": ev.id, "error": str(e)[:MAX_REASON_CHARS],
                })
                results.append(DispatchOutcome(sub.id, Outcome.FAILED, str(e)[:MAX_REASON_CHARS]))

        sent = sum(1 for r in results if r.outcome == Outcome.SENT)
        if results:
            print(f"[notifier] 广播完成 {ev.title[:50]} sent={sent} total={len(results)}")
        return results

    async def send_to_subscriber(self, sub: Subscriber, ev: Event) -> DispatchOutcome:
        if not sub.push_token:
            return DispatchOutcome(sub.id, Outcome.SKIPPED_NO_TOKEN)

        now = self._clock()
        if await self.is_rate_limited(sub.id, now):
            print(f"[notifier] 限流跳过 subscriber={sub.id} cap={self._rate_limit}")
            return DispatchOutcome(sub.id, Outcome.RATE_LIMITED)

        payload = build_payload(ev)
        try:
            await self._adapter.send(sub.push_token, payload)
        except InvalidTokenError as e:
            print(f"[notifier] token 失效，清除 subscriber={sub.id}")
            observability.log("notifier", "invalid_token", {"subscriberId": sub.id, "error": str(e)[:200]})
            await storage.clear_push_token(self._db, sub.id)
            await self._record(sub.id, ev.id, now, DeliveryStatus.FAILED, INVALID_TOKEN_REASON)
            return DispatchOutcome(sub.id, Outcome.FAILED, INVALID_TOKEN_REASON)
        except Exception as e:
            reason = truncate(str(e) or repr(e), MAX_REASON_CHARS)
            print(f"[notifier] 推送失败 subscriber={sub.id} err={reason[:200]}")
            observability.log("notifier", "send_failed", {"subscriberId": sub.id, "eventId": ev.id,
                                                          "error": reason})
            await self._record(sub.id, ev.id, now, DeliveryStatus.FAILED, reason)
            return DispatchOutcome(sub.id, Outcome.FAILED, reason)

        await self._record(sub.id, ev.id, now, DeliveryStatus.SENT, None)
        return DispatchOutcome(sub.id, Outcome.SENT)

    async def _record(self, subscriber_id: str, event_id: str, ts: int,
                      status: DeliveryStatus, reason: Optional[str]) -> None:
        await storage.insert_notification(self._db, NotificationRecord(
            id=storage.new_id(),
            subscriber_id=subscriber_id,
            event_id=event_id,
            sent_at_utc=ts,
            delivery_status=status.value,
            failure_reason=reason,
        ))
        self._metrics.inc_notification(status.value)

    async def close(self):
        await self._adapter.close()
