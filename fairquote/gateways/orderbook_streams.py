"""交易所订单簿订阅。

- DeltaOrderbookStream: Aftermath，REST 快照 + SSE 增量（每次重连都重新拉快照）
- SnapshotOrderbookStream: Hyperliquid，每条 l2Book 推送都是完整快照，
  多个币种共用一条 WebSocket
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Any, Awaitable, Callable, Mapping, Protocol

from fairquote.core.models import OrderBookView
from fairquote.core.orderbook import OrderbookReconciler
from fairquote.gateways import hyperliquid
from fairquote.streams.supervisor import DEFAULT_RECONNECT_DELAY_S, ResilientStream
from fairquote.streams.transports import SseTransport, Transport, WebSocketTransport

logger = logging.getLogger(__name__)

BookCallback = Callable[[OrderBookView], None]
UrlTransportFactory = Callable[[str], Transport]


class SnapshotFetcher(Protocol):
    def fetch_orderbook(self, ch_id: str) -> Awaitable[Mapping[str, Any]]: ...

    def orderbook_stream_url(self, ch_id: str) -> str: ...


def _notify(callback: BookCallback | None, view: OrderBookView) -> None:
    if callback is None:
        return
    try:
        callback(view)
    except Exception:
        logger.exception(f"❌ Orderbook callback failed for {view.symbol}")


class DeltaOrderbookStream:
    """
    单个市场 (chId) 的增量订单簿

    连接顺序：打开 SSE -> 拉取 REST 快照 -> 应用之后的增量。
    快照之前已在途的增量会因 nonce <= 快照 nonce 被丢弃。
    """

    def __init__(
        self,
        client: SnapshotFetcher,
        ch_id: str,
        callback: BookCallback | None = None,
        *,
        reconnect_delay_s: float = DEFAULT_RECONNECT_DELAY_S,
        transport_factory: UrlTransportFactory | None = None,
    ):
        self.client = client
        self.ch_id = ch_id
        self.callback = callback
        self.reconciler = OrderbookReconciler(ch_id)
        self.url = client.orderbook_stream_url(ch_id)
        factory = transport_factory or SseTransport
        self._stream = ResilientStream(
            lambda: factory(self.url),
            name=f"aftermath-book:{ch_id}",
            reconnect_delay_s=reconnect_delay_s,
        )
        self._stream.add_connect_hook(self._reload_snapshot)
        # 断线后旧快照不再可信，直到重新拉取快照前 view() 返回 None
        self._stream.add_disconnect_hook(self.reconciler.reset)
        self._started = False

    @property
    def connected(self) -> bool:
        return self._stream.connected

    @property
    def stream(self) -> ResilientStream:
        return self._stream

    async def start(self) -> "DeltaOrderbookStream":
        if self._started:
            return self
        self._started = True
        logger.info(f"📖 Subscribing to Aftermath orderbook for market {self.ch_id}")
        await self._stream.subscribe("deltas", self._on_delta)
        self._stream.start()
        return self

    def set_callback(self, callback: BookCallback) -> None:
        self.callback = callback

    def view(self) -> OrderBookView | None:
        if not self.reconciler.has_snapshot:
            return None
        return self.reconciler.current_view()

    async def close(self) -> None:
        await self._stream.close()

    async def _reload_snapshot(self) -> None:
        snapshot = await self.client.fetch_orderbook(self.ch_id)
        self.reconciler.load_snapshot(snapshot)
        _notify(self.callback, self.reconciler.current_view())

    def _on_delta(self, message: Any) -> None:
        if self.reconciler.apply_delta(message):
            _notify(self.callback, self.reconciler.current_view())


class SnapshotOrderbookStream:
    """Hyperliquid L2 订单簿：多个币种复用一条连接，退订某个币不影响其他币。"""

    def __init__(
        self,
        *,
        is_testnet: bool = False,
        reconnect_delay_s: float = DEFAULT_RECONNECT_DELAY_S,
        transport_factory: UrlTransportFactory | None = None,
    ):
        self.is_testnet = is_testnet
        self.url = hyperliquid.ws_url(is_testnet)
        factory = transport_factory or WebSocketTransport
        self._stream = ResilientStream(
            lambda: factory(self.url),
            name="hyperliquid-books",
            router=hyperliquid.route_message,
            reconnect_delay_s=reconnect_delay_s,
            ping_interval_s=hyperliquid.PING_INTERVAL_S,
            ping_message=hyperliquid.PING_MESSAGE,
        )
        self._books: dict[str, OrderbookReconciler] = {}
        self._callbacks: dict[str, BookCallback | None] = {}
        logger.info(f"Initialized Hyperliquid orderbook subscription ({'testnet' if is_testnet else 'mainnet'})")

    @property
    def connected(self) -> bool:
        return self._stream.connected

    @property
    def stream(self) -> ResilientStream:
        return self._stream

    def coins(self) -> list[str]:
        return sorted(self._books)

    async def subscribe_orderbook(self, symbol: str, callback: BookCallback | None = None) -> None:
        coin = hyperliquid.to_coin(symbol)
        if coin in self._books:
            logger.warning(f"⚠️ Already subscribed to orderbook: {coin}")
            return
        self._books[coin] = OrderbookReconciler(coin)
        self._callbacks[coin] = callback
        await self._stream.subscribe(
            hyperliquid.l2book_key(coin),
            partial(self._on_book, coin),
            request=hyperliquid.l2book_request(coin),
            unsubscribe_request=hyperliquid.l2book_request(coin, method="unsubscribe"),
        )
        self._stream.start()

    async def unsubscribe_orderbook(self, symbol: str) -> None:
        coin = hyperliquid.to_coin(symbol)
        if self._books.pop(coin, None) is None:
            logger.warning(f"⚠️ Not subscribed to orderbook: {coin}")
            return
        self._callbacks.pop(coin, None)
        await self._stream.unsubscribe(hyperliquid.l2book_key(coin))

    def view(self, symbol: str) -> OrderBookView | None:
        book = self._books.get(hyperliquid.to_coin(symbol))
        if book is None or not book.has_snapshot:
            return None
        return book.current_view()

    async def close(self) -> None:
        await self._stream.close()
        self._books.clear()
        self._callbacks.clear()
        logger.info("Hyperliquid orderbook subscription disconnected")

    def _on_book(self, coin: str, message: Mapping[str, Any]) -> None:
        book = self._books.get(coin)
        if book is None:
            return
        try:
            data = message["data"]
            bids, asks = hyperliquid.parse_l2_levels(data)
            book.load_snapshot({"bids": bids, "asks": asks, "timestamp": data.get("time")})
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.error(f"❌ Error processing orderbook update for {coin}: {e!r}")
            return
        _notify(self._callbacks.get(coin), book.current_view())
