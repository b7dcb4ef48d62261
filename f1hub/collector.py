from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from f1hub import observability
from f1hub.models import FeedItem
from f1hub.observability import Metrics
from f1hub.parsers.rss_default import MalformedFeedError, parse_rss
from f1hub.utils import now_ms


class FetchError(str, enum.Enum):
    TIMEOUT = "timeout"
    MALFORMED = "malformed"
    NETWORK = "network"
    UNKNOWN = "unknown"


@dataclass
class FetchResult:
    items: List[FeedItem] = field(default_factory=list)
    error: Optional[FetchError] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None


def classify_exception(exc: BaseException) -> FetchError:
    """把抓取异常归到四类之一"""
    if isinstance(exc, httpx.TimeoutException):
        return FetchError.TIMEOUT
    if isinstance(exc, MalformedFeedError):
        return FetchError.MALFORMED
    # ConnectError / ReadError / RemoteProtocolError 等都归网络问题
    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError)):
        return FetchError.NETWORK
    return FetchError.UNKNOWN


class Collector:
    """
    单源抓取：HTTP GET -> feedparser -> FeedItem 列表
    fetch() 永不抛异常，失败时返回空列表 + 错误类型
    """

    def __init__(self, timeout_sec: float = 10.0, user_agent: str = "f1-hub/1.0",
                 client: Optional[httpx.AsyncClient] = None,
                 metrics: Optional[Metrics] = None):
        self._timeout = timeout_sec
        self._user_agent = user_agent
        self._client = client
        self._owns_client = client is None
        self._metrics = metrics or Metrics()

    def _ensure_client(self) -> httpx.AsyncClient:
        """复用一个 httpx AsyncClient，避免频繁建连。"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"User-Agent": self._user_agent},
                follow_redirects=True,
            )
        return self._client

    async def fetch(self, source: Dict[str, Any]) -> FetchResult:
        name = source.get("name") or source.get("id", "")
        url = source.get("url", "")
        try:
            resp = await self._ensure_client().get(url, timeout=self._timeout)
            resp.raise_for_status()
            items = parse_rss(resp.text, name, now_ms())
            return FetchResult(items=items)
        except Exception as e:
            kind = classify_exception(e)
            detail = str(e) or repr(e)
            self._metrics.inc_fetch_error(name)
            print(f"[collector] {name} 抓取失败 type={kind.value} err={detail[:200]}")
            observability.log("collector", "fetch_error", {
                "feed": name, "url": url, "errorType": kind.value, "error": detail[:500],
            })
            return FetchResult(error=kind, detail=detail)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
