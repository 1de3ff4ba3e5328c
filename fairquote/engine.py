"""做市主流程：单个 (exchange, symbol) 一条 pipeline。

[Price Feed] --> [FairPriceAggregator] --> [Quoter] <-- [PositionTracker] <-- [AccountSource]
                                              |
                                          on_quote(quote, orders)  --> 外部订单同步
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Iterable

from fairquote.core.config import MarketMakerConfig
from fairquote.core.fair_price import FairPriceCalculator
from fairquote.core.interfaces import AccountSource, MarketSource
from fairquote.core.models import Account, MarketInfo, OrderRequest, PositionState, Quote
from fairquote.core.position import PositionTracker
from fairquote.core.quoter import Quoter
from fairquote.gateways.venues import MarketRegistry

logger = logging.getLogger(__name__)

QuoteCallback = Callable[[Quote, list[OrderRequest]], "Awaitable[None] | None"]


class MarketMakerEngine:
    """
    做市引擎（不下单）

    - start(): 解析市场元数据（缺失则抛 MarketNotFoundError，只影响本 pipeline），连接价格源
    - step(): 按需刷新仓位快照 -> 计算报价 -> 回调 on_quote
    - current_quote(): fair price 未就绪或保证金不足时返回 None
    """

    def __init__(
        self,
        config: MarketMakerConfig,
        *,
        market_source: MarketSource | None = None,
        market_registry: MarketRegistry | None = None,
        account_source: AccountSource | None = None,
        fair_price: FairPriceCalculator | None = None,
        on_quote: QuoteCallback | None = None,
        now_fn: Callable[[], float] | None = None,
    ):
        self.config = config
        self.symbol = config.symbol
        self._now = now_fn or time.monotonic

        self.registry = market_registry
        if self.registry is None and market_source is not None:
            self.registry = MarketRegistry(market_source)
        self.account_source = account_source
        self.on_quote = on_quote

        self.fair_price = fair_price or FairPriceCalculator(
            config.symbol,
            price_source=config.price_source,
            window_ms=config.fair_price_window_ms,
            min_samples=config.min_fair_price_samples,
            warmup_s=config.warmup_seconds,
            is_testnet=config.is_testnet,
            reconnect_delay_s=config.reconnect_delay_ms / 1000,
        )
        self.tracker = PositionTracker(config)
        self.quoter = Quoter(config)

        self.market: MarketInfo | None = None
        self.account: Account | None = None
        self.last_quote: Quote | None = None
        self.running = False

        self._last_position_refresh: float | None = None
        self._price_event = asyncio.Event()
        self.fair_price.aggregator.on_update(self._on_fair_price)

    @property
    def name(self) -> str:
        return f"{self.config.exchange}:{self.symbol}"

    def _on_fair_price(self, ema: float, timestamp_ms: int) -> None:
        self._price_event.set()

    async def start(self) -> None:
        if self.registry is not None:
            # MarketNotFoundError 直接抛出：该 pipeline 无法运行
            self.market = await self.registry.get_market(self.symbol)
            self.quoter.set_market(self.market)
            logger.info(
                f"📚 {self.name} market: tick={self.market.tick_size}, "
                f"size_precision={self.market.size_precision}, min_size={self.market.min_size}"
            )
        else:
            logger.warning(f"⚠️ {self.name} has no market source, quotes are not rounded to tick size")

        await self.fair_price.connect()
        self.running = True
        logger.info(f"🚀 {self.name} pipeline started (source={self.config.price_source})")

    async def stop(self) -> None:
        self.running = False
        await self.fair_price.disconnect()
        logger.info(f"✅ {self.name} pipeline stopped")

    async def refresh_position(self) -> PositionState:
        """拉取账户快照并整体替换仓位状态。"""
        if self.account_source is None:
            return self.tracker.position
        snapshot = await self.account_source.fetch_position(self.symbol)
        self.account = await self.account_source.fetch_account()
        self._last_position_refresh = self._now()
        state = self.tracker.update_position(snapshot, mark_price=self.fair_price.get_fair_price())
        logger.debug(f"💼 {self.name} {self.tracker.format_position()}")
        return state

    def _position_due(self) -> bool:
        if self._last_position_refresh is None:
            return True
        return self._now() - self._last_position_refresh >= self.config.order_sync_interval_ms / 1000

    def current_quote(self) -> Quote | None:
        fair = self.fair_price.get_fair_price()
        if fair is None:
            return None
        if self.account is not None and not self.tracker.is_margin_healthy(self.account):
            return None
        quote = self.quoter.generate_quotes(fair, self.tracker.signed_notional())
        self.last_quote = quote
        return quote

    async def step(self) -> Quote | None:
        if self.account_source is not None and self._position_due():
            try:
                await self.refresh_position()
            except Exception as e:
                # 保留上一份快照，下一轮重试
                logger.warning(f"⚠️ {self.name} position refresh failed: {e!r}")

        quote = self.current_quote()
        if quote is None:
            agg = self.fair_price.aggregator
            logger.debug(
                f"⏳ {self.name} no quote yet (samples={agg.sample_count}/{agg.min_samples}, "
                f"warmup remaining {agg.warmup_remaining_s():.1f}s)"
            )
            return None

        orders = self.quoter.quote_to_orders(quote)
        logger.debug(
            f"📊 {self.name} fair={quote.fair_price:.4f} bid={quote.bid_price}x{quote.bid_size} "
            f"ask={quote.ask_price}x{quote.ask_size} mode={quote.mode.value}"
        )
        if self.on_quote is not None:
            try:
                result = self.on_quote(quote, orders)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                # 订单同步失败只影响本轮，下一次报价照常进行
                logger.exception(f"❌ {self.name} on_quote callback failed")
        return quote

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """启动并循环，直到 stop_event 被设置或 stop() 被调用。"""
        await self.start()
        try:
            while self.running and not (stop_event is not None and stop_event.is_set()):
                await self.step()
                await self._wait_next(stop_event)
        finally:
            await self.stop()

    async def _wait_next(self, stop_event: asyncio.Event | None) -> None:
        """等待新的 fair price 或同步间隔到期，然后按 update_throttle_ms 节流。"""
        waiters = [asyncio.ensure_future(self._price_event.wait())]
        if stop_event is not None:
            waiters.append(asyncio.ensure_future(stop_event.wait()))
        try:
            await asyncio.wait(
                waiters,
                timeout=self.config.order_sync_interval_ms / 1000,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                waiter.cancel()
        self._price_event.clear()
        if stop_event is None or not stop_event.is_set():
            await asyncio.sleep(self.config.update_throttle_ms / 1000)


async def run_pipelines(
    engines: Iterable[MarketMakerEngine], stop_event: asyncio.Event | None = None
) -> list[BaseException | None]:
    """并发运行多个 pipeline；单个失败不影响其他 pipeline。

    Returns:
        与 engines 一一对应：正常结束为 None，失败为对应异常
    """
    engines = list(engines)
    results: list[Any] = await asyncio.gather(
        *(engine.run(stop_event) for engine in engines), return_exceptions=True
    )
    outcome: list[BaseException | None] = []
    for engine, result in zip(engines, results):
        if isinstance(result, BaseException):
            logger.error(f"❌ Pipeline {engine.name} failed: {result!r}")
            outcome.append(result)
        else:
            outcome.append(None)
    return outcome
