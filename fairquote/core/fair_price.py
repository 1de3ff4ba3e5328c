"""Fair price 计算：对 Oracle 原始价格做 EMA 平滑，并带预热门槛。"""

from __future__ import annotations

import logging
import math
import time
from typing import Callable

from fairquote.core.interfaces import PriceCallback, PriceFeed
from fairquote.core.models import FairPriceState, PriceTick

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MS = 5 * 60 * 1000
DEFAULT_MIN_SAMPLES = 10
DEFAULT_WARMUP_S = 10.0


def alpha_from_window(window_ms: float) -> float:
    """alpha = 2 / (N + 1)，N = window_ms / 1000。

    注意：这里把窗口近似成“约每秒一个 tick”的周期数，并不是按真实时间衰减。
    tick 更密时有效窗口更短，更稀疏时更长。
    """
    if window_ms <= 0:
        raise ValueError("window_ms must be positive")
    periods = window_ms / 1000.0
    return 2.0 / (periods + 1.0)


class FairPriceAggregator:
    """
    EMA 聚合器（与具体 Oracle 无关）

    - 第一个 tick 直接作为 EMA 初值
    - is_ready() 需要同时满足：预热时间已过 + 样本数达到下限
    - 未就绪时 current_price() 返回 None，而不是半成品 EMA
    """

    def __init__(
        self,
        symbol: str,
        *,
        window_ms: float = DEFAULT_WINDOW_MS,
        alpha: float | None = None,
        min_samples: int = DEFAULT_MIN_SAMPLES,
        warmup_s: float = DEFAULT_WARMUP_S,
        clock: Callable[[], float] | None = None,
    ):
        self.symbol = symbol
        self.alpha = float(alpha) if alpha is not None else alpha_from_window(window_ms)
        if not 0 < self.alpha <= 1:
            raise ValueError("alpha must be in (0, 1]")
        self.min_samples = int(min_samples)
        self.warmup_s = float(warmup_s)
        self._clock = clock or time.monotonic
        self.start_time = self._clock()

        self._ema: float | None = None
        self._samples = 0
        self.last_update_ms: int | None = None
        self._listeners: list[PriceCallback] = []

        logger.info(
            f"🔮 FairPriceAggregator {symbol}: alpha={self.alpha:.6f}, "
            f"warmup={self.warmup_s}s, min_samples={self.min_samples}"
        )

    def feed(self, tick: PriceTick) -> bool:
        """喂入一个 tick；格式非法的 tick 记录后丢弃，返回 False。"""
        price = tick.price
        if not isinstance(price, (int, float)) or not math.isfinite(price) or price <= 0:
            logger.warning(f"⚠️ Dropping malformed tick for {self.symbol}: {tick!r}")
            return False

        if self._ema is None:
            self._ema = float(price)
        else:
            self._ema = self.alpha * price + (1 - self.alpha) * self._ema

        self._samples += 1
        self.last_update_ms = tick.timestamp_ms

        for listener in list(self._listeners):
            try:
                listener(self._ema, tick.timestamp_ms)
            except Exception:
                logger.exception(f"❌ Fair price listener failed for {self.symbol}")
        return True

    def on_price(self, price: float, timestamp_ms: int) -> None:
        """PriceFeed 回调入口。"""
        self.feed(PriceTick(price=price, timestamp_ms=timestamp_ms))

    def current_price(self) -> float | None:
        if not self.is_ready():
            return None
        return self._ema

    def is_ready(self) -> bool:
        return self._ema is not None and self.is_warmed_up()

    def is_warmed_up(self) -> bool:
        return self.elapsed_s() >= self.warmup_s and self._samples >= self.min_samples

    @property
    def sample_count(self) -> int:
        return self._samples

    def elapsed_s(self) -> float:
        return self._clock() - self.start_time

    def warmup_remaining_s(self) -> float:
        return max(0.0, self.warmup_s - self.elapsed_s())

    def state(self) -> FairPriceState:
        return FairPriceState(
            ema=self._ema,
            alpha=self.alpha,
            samples_seen=self._samples,
            start_time=self.start_time,
        )

    def on_update(self, callback: PriceCallback) -> None:
        """订阅 EMA 更新，回调参数为 (ema, timestamp_ms)。"""
        self._listeners.append(callback)

    def remove_listener(self, callback: PriceCallback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)


class FairPriceCalculator:
    """Aggregator + 一个 PriceFeed 的组合，负责连接生命周期。"""

    def __init__(
        self,
        symbol: str,
        *,
        price_source: str = "binance",
        window_ms: float = DEFAULT_WINDOW_MS,
        alpha: float | None = None,
        min_samples: int = DEFAULT_MIN_SAMPLES,
        warmup_s: float = DEFAULT_WARMUP_S,
        is_testnet: bool = False,
        reconnect_delay_s: float = 5.0,
        feed: PriceFeed | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.symbol = symbol
        self.price_source = price_source
        self.aggregator = FairPriceAggregator(
            symbol,
            window_ms=window_ms,
            alpha=alpha,
            min_samples=min_samples,
            warmup_s=warmup_s,
            clock=clock,
        )
        if feed is None:
            from fairquote.gateways.price_feeds import create_price_feed

            feed = create_price_feed(
                price_source,
                symbol,
                self.aggregator.on_price,
                is_testnet=is_testnet,
                reconnect_delay_s=reconnect_delay_s,
            )
        else:
            feed.set_callback(self.aggregator.on_price)
        self.feed = feed

    async def connect(self) -> None:
        await self.feed.connect()

    async def disconnect(self) -> None:
        await self.feed.disconnect()

    @property
    def connected(self) -> bool:
        return self.feed.connected

    def get_fair_price(self) -> float | None:
        return self.aggregator.current_price()

    def is_ready(self) -> bool:
        return self.aggregator.is_ready()

    def last_raw_price(self) -> float | None:
        return self.feed.last_price()


async def create_fair_price_calculator(symbol: str, **kwargs) -> FairPriceCalculator:
    """创建并连接。"""
    calculator = FairPriceCalculator(symbol, **kwargs)
    await calculator.connect()
    return calculator
