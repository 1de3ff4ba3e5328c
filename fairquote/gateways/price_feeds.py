"""Oracle 价格源：Binance Futures bookTicker / Hyperliquid l2Book。

两者都基于 ResilientStream：断线重连、重发订阅由 supervisor 负责，
这里只做 URL / 订阅消息 / 解析。
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable

from fairquote.core.interfaces import PriceCallback, PriceFeed
from fairquote.gateways import hyperliquid
from fairquote.streams.supervisor import DEFAULT_RECONNECT_DELAY_S, ResilientStream
from fairquote.streams.transports import Transport, WebSocketTransport

logger = logging.getLogger(__name__)

UrlTransportFactory = Callable[[str], Transport]


def _now_ms() -> int:
    return int(time.time() * 1000)


class StreamPriceFeed(PriceFeed):
    """
    基于单个 ResilientStream 的价格源基类

    子类需要提供：
    - url: 连接地址
    - subscription_key / subscription_request(): 订阅信息
    - extract(message) -> (price, timestamp_ms) | None
    """

    source = "stream"
    router: Callable[[Any], str | None] | None = None
    ping_interval_s: float | None = None
    ping_message: Any = None

    def __init__(
        self,
        symbol: str,
        callback: PriceCallback | None = None,
        *,
        reconnect_delay_s: float = DEFAULT_RECONNECT_DELAY_S,
        transport_factory: UrlTransportFactory | None = None,
        connect_timeout_s: float = 10.0,
    ):
        super().__init__(symbol, callback)
        self.reconnect_delay_s = reconnect_delay_s
        self.connect_timeout_s = connect_timeout_s
        self._transport_factory = transport_factory or WebSocketTransport
        self._stream: ResilientStream | None = None

    @property
    def url(self) -> str:
        raise NotImplementedError

    @property
    def subscription_key(self) -> str:
        return self.source

    def subscription_request(self) -> Any:
        return None

    def unsubscribe_request(self) -> Any:
        return None

    def extract(self, message: Any) -> tuple[float, int] | None:
        raise NotImplementedError

    @property
    def connected(self) -> bool:
        return self._stream is not None and self._stream.connected

    @property
    def stream(self) -> ResilientStream | None:
        return self._stream

    async def connect(self) -> None:
        if self._stream is not None:
            return
        url = self.url
        logger.info(f"🔮 Connecting {self.source} price feed for {self.symbol}: {url}")
        stream = ResilientStream(
            lambda: self._transport_factory(url),
            name=f"{self.source}:{self.symbol}",
            router=self.router,
            reconnect_delay_s=self.reconnect_delay_s,
            ping_interval_s=self.ping_interval_s,
            ping_message=self.ping_message,
        )
        await stream.subscribe(
            self.subscription_key,
            self._on_message,
            request=self.subscription_request(),
            unsubscribe_request=self.unsubscribe_request(),
        )
        self._stream = stream.start()

        if not await stream.wait_connected(timeout=self.connect_timeout_s):
            # 不抛错：后台会继续按固定间隔重连
            logger.warning(f"⚠️ {self.source} price feed not connected yet, retrying in background")

    async def disconnect(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            logger.info(f"Disconnecting {self.source} price feed for {self.symbol}")
            await stream.close()

    def _on_message(self, message: Any) -> None:
        try:
            result = self.extract(message)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.error(f"❌ Error parsing {self.source} price message: {e!r}")
            return
        if result is None:
            return
        price, timestamp_ms = result
        if not math.isfinite(price) or price <= 0:
            logger.warning(f"⚠️ Ignoring invalid {self.source} price {price} for {self.symbol}")
            return
        self._emit(price, timestamp_ms)


class BinancePriceFeed(StreamPriceFeed):
    """
    Binance Futures 价格源 (bookTicker)

    mid = (best bid + best ask) / 2；symbol 统一映射成 `<base>usdt` 小写。
    """

    source = "binance"
    WS_URL = "wss://fstream.binance.com/ws"

    def __init__(self, symbol: str, callback: PriceCallback | None = None, **kwargs: Any):
        super().__init__(symbol, callback, **kwargs)
        self.stream_symbol = self.normalize_symbol(symbol)

    @staticmethod
    def normalize_symbol(symbol: str) -> str:
        """'BTC/USD:USD' -> 'btcusdt', 'HYPE' -> 'hypeusdt'"""
        return f"{symbol.split('/')[0].lower().replace('usd', '')}usdt"

    @property
    def url(self) -> str:
        return f"{self.WS_URL}/{self.stream_symbol}@bookTicker"

    @property
    def subscription_key(self) -> str:
        return f"{self.stream_symbol}@bookTicker"

    def extract(self, message: Any) -> tuple[float, int] | None:
        # {'e': 'bookTicker', 's': 'BTCUSDT', 'b': '50000.1', 'B': '3', 'a': '50000.2', 'A': '1', 'T': ..., 'E': ...}
        if not isinstance(message, dict) or "b" not in message or "a" not in message:
            return None
        bid = float(message["b"])
        ask = float(message["a"])
        timestamp_ms = int(message.get("T") or message.get("E") or _now_ms())
        return (bid + ask) / 2, timestamp_ms


class HyperliquidPriceFeed(StreamPriceFeed):
    """Hyperliquid 价格源：订阅 l2Book，取最优买卖价的中间价。"""

    source = "hyperliquid"
    router = staticmethod(hyperliquid.route_message)
    ping_interval_s = hyperliquid.PING_INTERVAL_S
    ping_message = hyperliquid.PING_MESSAGE

    def __init__(
        self,
        symbol: str,
        callback: PriceCallback | None = None,
        *,
        is_testnet: bool = False,
        **kwargs: Any,
    ):
        super().__init__(symbol, callback, **kwargs)
        self.is_testnet = is_testnet
        self.coin = hyperliquid.to_coin(symbol)

    @property
    def url(self) -> str:
        return hyperliquid.ws_url(self.is_testnet)

    @property
    def subscription_key(self) -> str:
        return hyperliquid.l2book_key(self.coin)

    def subscription_request(self) -> Any:
        return hyperliquid.l2book_request(self.coin)

    def unsubscribe_request(self) -> Any:
        return hyperliquid.l2book_request(self.coin, method="unsubscribe")

    def extract(self, message: Any) -> tuple[float, int] | None:
        data = message["data"]
        levels = data["levels"]
        if not levels[0] or not levels[1]:
            logger.debug(f"No bid/ask for {self.coin}")
            return None
        bid = float(levels[0][0]["px"])
        ask = float(levels[1][0]["px"])
        timestamp_ms = int(data.get("time") or _now_ms())
        return (bid + ask) / 2, timestamp_ms


_FEEDS: dict[str, type[StreamPriceFeed]] = {
    "binance": BinancePriceFeed,
    "hyperliquid": HyperliquidPriceFeed,
}


def supported_price_sources() -> list[str]:
    return sorted(_FEEDS)


def create_price_feed(
    source: str,
    symbol: str,
    callback: PriceCallback | None = None,
    *,
    is_testnet: bool = False,
    reconnect_delay_s: float = DEFAULT_RECONNECT_DELAY_S,
    transport_factory: UrlTransportFactory | None = None,
) -> StreamPriceFeed:
    """按名称创建价格源（未连接）。

    Raises
    ------
    ValueError
        未知的价格源名称。
    """
    key = (source or "").strip().lower()
    feed_cls = _FEEDS.get(key)
    if feed_cls is None:
        raise ValueError(f"Unknown price source: {source!r} (supported: {', '.join(supported_price_sources())})")

    kwargs: dict[str, Any] = {"reconnect_delay_s": reconnect_delay_s, "transport_factory": transport_factory}
    if feed_cls is HyperliquidPriceFeed:
        kwargs["is_testnet"] = is_testnet
    return feed_cls(symbol, callback, **kwargs)
