from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, Iterable, List, Optional

from fairquote.core.interfaces import AccountSource, MarketSource, PriceFeed
from fairquote.core.models import Account, MarketInfo, Position
from fairquote.streams.transports import Transport, TransportError


class FakeClock:
    def __init__(self, start_ts: Optional[float] = None):
        self._ts = float(time.time() if start_ts is None else start_ts)

    def now(self) -> float:
        return self._ts

    def __call__(self) -> float:
        return self._ts

    def advance(self, seconds: float) -> float:
        self._ts += float(seconds)
        return self._ts


class RecordingSleep:
    """替代 asyncio.sleep：记录请求的延迟，只让出一次事件循环。"""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.sleep(0)


class FakeTransport(Transport):
    """
    No-network transport.

    消息按 feed() 顺序交付；fail() 之后的 recv() 抛出传输异常。
    """

    def __init__(self, messages: Iterable[Any] = (), *, fail_open: Optional[BaseException] = None):
        self.fail_open = fail_open
        self.sent: List[str] = []
        self.opened = False
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()
        for message in messages:
            self.feed(message)

    def feed(self, message: Any) -> None:
        if not isinstance(message, str):
            message = json.dumps(message)
        self._queue.put_nowait(message)

    def fail(self, exc: Optional[BaseException] = None) -> None:
        self._queue.put_nowait(exc or TransportError("connection dropped"))

    def sent_json(self) -> List[Any]:
        return [json.loads(m) for m in self.sent]

    async def open(self) -> None:
        if self.fail_open is not None:
            raise self.fail_open
        self.opened = True

    async def send(self, message: str) -> None:
        if self.closed:
            raise TransportError("send on closed transport")
        self.sent.append(message)

    async def recv(self) -> str:
        item = await self._queue.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True

    @property
    def is_open(self) -> bool:
        return self.opened and not self.closed


class FakeTransportFactory:
    """按顺序返回预先准备好的 FakeTransport；用完之后返回空连接。"""

    def __init__(self, *transports: FakeTransport):
        self.pending: List[FakeTransport] = list(transports)
        self.created: List[FakeTransport] = []
        self.urls: List[Optional[str]] = []

    def __call__(self, url: Optional[str] = None) -> FakeTransport:
        self.urls.append(url)
        transport = self.pending.pop(0) if self.pending else FakeTransport()
        self.created.append(transport)
        return transport


class FakePriceFeed(PriceFeed):
    def __init__(self, symbol: str = "BTC/USD:USD", callback=None, clock: Optional[FakeClock] = None):
        super().__init__(symbol, callback)
        self.clock = clock
        self._connected = False
        self.connect_calls = 0

    async def connect(self) -> None:
        self.connect_calls += 1
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def push(self, price: float, timestamp_ms: Optional[int] = None) -> None:
        if timestamp_ms is None:
            now = self.clock.now() if self.clock is not None else time.time()
            timestamp_ms = int(now * 1000)
        self._emit(price, timestamp_ms)


class FakeMarketSource(MarketSource):
    def __init__(self, markets: Iterable[MarketInfo]):
        self.markets = list(markets)
        self.fetch_calls = 0

    async def fetch_markets(self) -> List[MarketInfo]:
        self.fetch_calls += 1
        return list(self.markets)


class FakeAccountSource(AccountSource):
    def __init__(
        self,
        position: Optional[Position] = None,
        account: Optional[Account] = None,
        *,
        error: Optional[BaseException] = None,
    ):
        self.position = position
        self.account = account or Account(address="0xtest", equity=10_000.0, margin=0.0, available_margin=10_000.0)
        self.error = error
        self.calls: Dict[str, int] = {"position": 0, "account": 0}

    async def fetch_position(self, symbol: str) -> Optional[Position]:
        self.calls["position"] += 1
        if self.error is not None:
            raise self.error
        return self.position

    async def fetch_account(self) -> Account:
        self.calls["account"] += 1
        if self.error is not None:
            raise self.error
        return self.account


class FakeOrderbookClient:
    """DeltaOrderbookStream 的快照来源：依次返回 snapshots，最后一个重复使用。"""

    def __init__(self, *snapshots: Dict[str, Any], error: Optional[BaseException] = None):
        self.snapshots = list(snapshots)
        self.error = error
        self.fetch_calls = 0

    async def fetch_orderbook(self, ch_id: str) -> Dict[str, Any]:
        self.fetch_calls += 1
        if self.error is not None:
            raise self.error
        if len(self.snapshots) > 1:
            return self.snapshots.pop(0)
        return self.snapshots[0]

    def orderbook_stream_url(self, ch_id: str) -> str:
        return f"https://fake.local/api/ccxt/stream/orderbook?chId={ch_id}"


async def wait_for_condition(predicate, timeout: float = 1.0, interval: float = 0.001) -> None:
    """轮询直到 predicate() 为真；超时抛 AssertionError。"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
