"""报价生成：围绕 fair price 的对称双边报价 + 平仓模式。"""

from __future__ import annotations

import logging
from decimal import Decimal

from fairquote.core.config import MarketMakerConfig
from fairquote.core.models import MarketInfo, OrderRequest, Quote
from fairquote.core.precision import floor_to_decimals, round_to_tick, to_decimal

logger = logging.getLogger(__name__)

BPS = Decimal(10000)
DEFAULT_MAX_DEVIATION_BPS = 50.0


def is_close_mode(position_notional: float, close_threshold_usd: float) -> bool:
    """|notional| 超过阈值即进入平仓模式。

    每次调用都重新计算，没有滞回：仓位恰好在阈值附近波动时模式会来回切换。
    """
    return abs(position_notional) > close_threshold_usd


def is_order_stale(order_price: float, fair_price: float, max_deviation_bps: float = DEFAULT_MAX_DEVIATION_BPS) -> bool:
    """挂单价格偏离 fair price 超过阈值（bps）即视为过期。"""
    if fair_price <= 0:
        raise ValueError("fair_price must be positive")
    deviation_bps = abs(order_price - fair_price) / fair_price * 10000
    return deviation_bps > max_deviation_bps


class Quoter:
    """
    报价器 (Quote Generator)

    纯计算：输入 fair price、当前仓位名义价值（多正空负），输出 Quote。
    """

    def __init__(self, config: MarketMakerConfig, market: MarketInfo | None = None):
        self.config = config
        self.market = market

    def set_market(self, market: MarketInfo) -> None:
        self.market = market
        logger.debug(f"Quoter market set: {market.symbol}, tick_size={market.tick_size}")

    def generate_quotes(self, fair_price: float, position_notional: float) -> Quote:
        """
        计算买卖报价

        Args:
            fair_price: 当前 fair price
            position_notional: 带符号的仓位名义价值（正=多头，负=空头）

        Returns:
            Quote；bid_size/ask_size 为 0 表示该侧不挂单
        """
        if fair_price <= 0:
            raise ValueError("fair_price must be positive")

        close_mode = is_close_mode(position_notional, self.config.close_threshold_usd)
        spread_bps = self.config.take_profit_bps if close_mode else self.config.spread_bps

        fair = to_decimal(fair_price)
        mult = to_decimal(spread_bps) / BPS
        raw_bid = fair * (1 - mult)
        raw_ask = fair * (1 + mult)

        if self.market is not None:
            # bid 向下、ask 向上：取整只会放宽价差
            bid_price = round_to_tick(raw_bid, self.market.tick_size, "down")
            ask_price = round_to_tick(raw_ask, self.market.tick_size, "up")
        else:
            bid_price = float(raw_bid)
            ask_price = float(raw_ask)

        base_size = to_decimal(self.config.order_size_usd) / fair
        if self.market is not None:
            size = floor_to_decimals(base_size, self.market.size_precision)
            if size < self.market.min_size:
                logger.debug(f"Order size {size} below min size {self.market.min_size}, not quoting")
                size = 0.0
        else:
            size = float(base_size)

        bid_size = size
        ask_size = size
        if close_mode:
            if position_notional > 0:
                # 多头：只挂卖单减仓
                bid_size = 0.0
            else:
                ask_size = 0.0
            logger.debug(
                f"🎯 Close mode ({'long' if position_notional > 0 else 'short'} ${abs(position_notional):.2f}): "
                f"quoting tight spread {spread_bps}bps"
            )

        return Quote(
            bid_price=bid_price,
            ask_price=ask_price,
            bid_size=bid_size,
            ask_size=ask_size,
            fair_price=fair_price,
            spread_bps=spread_bps,
            is_close_mode=close_mode,
        )

    def quote_to_orders(self, quote: Quote) -> list[OrderRequest]:
        """把 Quote 转为 post-only 限价单请求；size 为 0 的一侧不下单。"""
        orders: list[OrderRequest] = []
        if quote.bid_size > 0:
            orders.append(
                OrderRequest(
                    symbol=self.config.symbol,
                    side="buy",
                    price=quote.bid_price,
                    size=quote.bid_size,
                    post_only=True,
                )
            )
        if quote.ask_size > 0:
            orders.append(
                OrderRequest(
                    symbol=self.config.symbol,
                    side="sell",
                    price=quote.ask_price,
                    size=quote.ask_size,
                    post_only=True,
                )
            )
        return orders

    def is_order_stale(self, order_price: float, fair_price: float, max_deviation_bps: float | None = None) -> bool:
        threshold = self.config.stale_order_bps if max_deviation_bps is None else max_deviation_bps
        return is_order_stale(order_price, fair_price, threshold)
