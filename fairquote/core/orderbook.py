"""本地订单簿对账：快照 + 有序增量（带 nonce）维护价格档位。"""

from __future__ import annotations

import dataclasses
import logging
import math
import time
from typing import Any, Iterable, Mapping

from fairquote.core.models import OrderBookView, OrderbookDelta, PriceLevel

logger = logging.getLogger(__name__)

Levels = list[list[float]]  # [[price, size], ...]


class MalformedDeltaError(ValueError):
    """增量消息无法解析或包含非法档位。"""


def _parse_pairs(raw: Any, *, ctx: str, allow_negative: bool) -> tuple[tuple[float, float], ...]:
    if raw is None:
        return ()
    if not isinstance(raw, (list, tuple)):
        raise MalformedDeltaError(f"{ctx} must be a list of [price, size]")
    out = []
    for item in raw:
        if not isinstance(item, (list, tuple)) or len(item) < 2:
            raise MalformedDeltaError(f"{ctx} entry must be [price, size]: {item!r}")
        try:
            price = float(item[0])
            size = float(item[1])
        except (TypeError, ValueError) as exc:
            raise MalformedDeltaError(f"{ctx} entry is not numeric: {item!r}") from exc
        if not math.isfinite(price) or not math.isfinite(size) or price <= 0:
            raise MalformedDeltaError(f"{ctx} entry out of range: {item!r}")
        if not allow_negative and size < 0:
            raise MalformedDeltaError(f"{ctx} snapshot size must be >= 0: {item!r}")
        out.append((price, size))
    return tuple(out)


def parse_delta(raw: Mapping[str, Any], symbol: str | None = None) -> OrderbookDelta:
    """把交易所推送的 dict 转成 OrderbookDelta。

    Raises
    ------
    MalformedDeltaError
        缺少 nonce 或档位格式非法。
    """
    if not isinstance(raw, Mapping):
        raise MalformedDeltaError("delta must be a JSON object")
    nonce_raw = raw.get("nonce")
    if nonce_raw is None or isinstance(nonce_raw, bool):
        raise MalformedDeltaError("delta is missing nonce")
    try:
        nonce = int(nonce_raw)
    except (TypeError, ValueError) as exc:
        raise MalformedDeltaError(f"invalid nonce: {nonce_raw!r}") from exc
    ts_raw = raw.get("timestamp")
    try:
        timestamp_ms = int(ts_raw) if ts_raw is not None else int(time.time() * 1000)
    except (TypeError, ValueError) as exc:
        raise MalformedDeltaError(f"invalid timestamp: {ts_raw!r}") from exc

    return OrderbookDelta(
        symbol=str(raw.get("symbol") or symbol or ""),
        bids=_parse_pairs(raw.get("bids"), ctx="bids", allow_negative=True),
        asks=_parse_pairs(raw.get("asks"), ctx="asks", allow_negative=True),
        nonce=nonce,
        timestamp_ms=timestamp_ms,
    )


def _normalize_side(pairs: Iterable[tuple[float, float]], descending: bool) -> Levels:
    merged: dict[float, float] = {}
    for price, size in pairs:
        merged[price] = merged.get(price, 0.0) + size
    levels = [[p, s] for p, s in merged.items() if s > 0]
    levels.sort(key=lambda lv: lv[0], reverse=descending)
    return levels


def _apply_level_delta(levels: Levels, price: float, size_delta: float, descending: bool) -> None:
    for i, level in enumerate(levels):
        if level[0] == price:
            new_size = level[1] + size_delta
            if new_size <= 0:
                del levels[i]
            else:
                level[1] = new_size
            return
        # 已越过插入点：该价位不存在
        if (descending and level[0] < price) or (not descending and level[0] > price):
            if size_delta > 0:
                levels.insert(i, [price, size_delta])
            return
    if size_delta > 0:
        levels.append([price, size_delta])


class OrderbookReconciler:
    """
    单个 (venue, symbol) 的订单簿对账器

    - load_snapshot(): 整体替换（首次订阅和每次重连都要调用）
    - apply_delta(): nonce <= last_nonce 的消息直接丢弃；其余整条原子应用
    - current_view(): 返回不可变视图副本
    """

    def __init__(self, symbol: str):
        self.symbol = symbol
        self._bids: Levels = []
        self._asks: Levels = []
        self._last_nonce: int | None = None
        self._timestamp_ms = 0
        self._has_snapshot = False

    @property
    def has_snapshot(self) -> bool:
        return self._has_snapshot

    @property
    def last_nonce(self) -> int | None:
        return self._last_nonce

    def load_snapshot(self, book: OrderBookView | Mapping[str, Any]) -> None:
        """用完整快照替换本地订单簿。"""
        if isinstance(book, OrderBookView):
            bids = [(lv.price, lv.size) for lv in book.bids]
            asks = [(lv.price, lv.size) for lv in book.asks]
            nonce = book.last_nonce
            timestamp_ms = book.timestamp_ms
        else:
            bids = _parse_pairs(book.get("bids"), ctx="bids", allow_negative=False)
            asks = _parse_pairs(book.get("asks"), ctx="asks", allow_negative=False)
            nonce_raw = book.get("nonce", book.get("last_nonce"))
            nonce = int(nonce_raw) if nonce_raw is not None else None
            ts_raw = book.get("timestamp", book.get("timestamp_ms"))
            timestamp_ms = int(ts_raw) if ts_raw is not None else int(time.time() * 1000)

        self._bids = _normalize_side(bids, descending=True)
        self._asks = _normalize_side(asks, descending=False)
        self._last_nonce = nonce
        self._timestamp_ms = timestamp_ms
        self._has_snapshot = True
        logger.debug(
            f"📸 Snapshot loaded for {self.symbol}: {len(self._bids)} bids / {len(self._asks)} asks, nonce={nonce}"
        )

    def apply_delta(self, delta: OrderbookDelta | Mapping[str, Any]) -> bool:
        """应用一条增量；返回是否真正修改了订单簿。"""
        if not self._has_snapshot:
            logger.warning(f"⚠️ No local orderbook for {self.symbol}, ignoring delta")
            return False

        try:
            if not isinstance(delta, OrderbookDelta):
                delta = parse_delta(delta, self.symbol)
            else:
                # 类型化增量同样按解析后的 float 档位应用
                delta = dataclasses.replace(
                    delta,
                    bids=_parse_pairs(delta.bids, ctx="bids", allow_negative=True),
                    asks=_parse_pairs(delta.asks, ctx="asks", allow_negative=True),
                )
        except MalformedDeltaError as e:
            logger.error(f"❌ Dropping malformed delta for {self.symbol}: {e}")
            return False

        if self._last_nonce is not None and delta.nonce <= self._last_nonce:
            logger.debug(f"Skipping out-of-order delta for {self.symbol}: {delta.nonce} <= {self._last_nonce}")
            return False

        # 在副本上修改，全部成功后再替换，保证原子性
        bids = [list(lv) for lv in self._bids]
        asks = [list(lv) for lv in self._asks]
        for price, size_delta in delta.bids:
            _apply_level_delta(bids, price, size_delta, descending=True)
        for price, size_delta in delta.asks:
            _apply_level_delta(asks, price, size_delta, descending=False)

        self._bids = bids
        self._asks = asks
        self._timestamp_ms = delta.timestamp_ms
        self._last_nonce = delta.nonce
        return True

    def current_view(self) -> OrderBookView:
        return OrderBookView(
            symbol=self.symbol,
            bids=tuple(PriceLevel(p, s) for p, s in self._bids),
            asks=tuple(PriceLevel(p, s) for p, s in self._asks),
            last_nonce=self._last_nonce,
            timestamp_ms=self._timestamp_ms,
        )

    def reset(self) -> None:
        """清空本地状态；下次 apply 之前必须重新 load_snapshot。"""
        self._bids = []
        self._asks = []
        self._last_nonce = None
        self._timestamp_ms = 0
        self._has_snapshot = False

    def best_bid(self) -> float | None:
        return self._bids[0][0] if self._bids else None

    def best_ask(self) -> float | None:
        return self._asks[0][0] if self._asks else None

    def mid_price(self) -> float | None:
        bid, ask = self.best_bid(), self.best_ask()
        if bid is None or ask is None:
            return None
        return (bid + ask) / 2

    def spread_bps(self) -> float | None:
        bid, ask = self.best_bid(), self.best_ask()
        mid = self.mid_price()
        if bid is None or ask is None or not mid:
            return None
        return (ask - bid) / mid * 10000

    def age_ms(self, now_ms: int | None = None) -> float:
        if not self._has_snapshot:
            return float("inf")
        now = int(time.time() * 1000) if now_ms is None else now_ms
        return now - self._timestamp_ms

    def is_stale(self, max_age_ms: float, now_ms: int | None = None) -> bool:
        return self.age_ms(now_ms) > max_age_ms
