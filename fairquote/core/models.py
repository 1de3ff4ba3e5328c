"""核心数据结构：PriceTick / PriceLevel / OrderBookView / Position / Quote 等。"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

Side = Literal["buy", "sell"]
PositionSide = Literal["long", "short", "none"]
OrderType = Literal["limit", "market"]
OrderStatus = Literal["open", "closed", "canceled", "expired", "rejected"]


@dataclass(frozen=True)
class PriceTick:
    """Oracle 推送的单个价格点。"""
    price: float
    timestamp_ms: int


@dataclass(frozen=True)
class FairPriceState:
    """FairPriceAggregator 内部状态快照（只读副本）。"""
    ema: float | None
    alpha: float
    samples_seen: int
    start_time: float


@dataclass(frozen=True)
class PriceLevel:
    price: float
    size: float


@dataclass(frozen=True)
class OrderBookView:
    """本地订单簿视图：bids 价格降序，asks 价格升序。"""
    symbol: str
    bids: tuple[PriceLevel, ...] = ()
    asks: tuple[PriceLevel, ...] = ()
    last_nonce: int | None = None
    timestamp_ms: int = 0

    def best_bid(self) -> PriceLevel | None:
        return self.bids[0] if self.bids else None

    def best_ask(self) -> PriceLevel | None:
        return self.asks[0] if self.asks else None


@dataclass(frozen=True)
class OrderbookDelta:
    """增量更新：size 字段为有符号的变化量。"""
    symbol: str
    bids: tuple[tuple[float, float], ...]
    asks: tuple[tuple[float, float], ...]
    nonce: int
    timestamp_ms: int


@dataclass(frozen=True)
class MarketInfo:
    """交易所市场元数据（一次运行内视为静态）。"""
    symbol: str
    base: str
    quote: str
    tick_size: float
    size_precision: int
    min_size: float
    price_precision: int | None = None
    max_size: float | None = None
    market_id: str | None = None


@dataclass(frozen=True)
class Position:
    """交易所账户快照中的单个持仓记录（size 为绝对值）。"""
    symbol: str
    side: PositionSide
    size: float
    entry_price: float
    unrealized_pnl: float = 0.0
    mark_price: float | None = None
    margin: float | None = None
    liquidation_price: float | None = None
    leverage: float | None = None


@dataclass(frozen=True)
class PositionState:
    """PositionTracker 持有的持仓状态，每次快照整体替换。"""
    symbol: str
    side: PositionSide = "none"
    size: float = 0.0
    entry_price: float = 0.0
    mark_price: float = 0.0
    notional: float = 0.0
    unrealized_pnl: float = 0.0
    margin: float = 0.0


@dataclass(frozen=True)
class Account:
    address: str
    equity: float
    margin: float
    available_margin: float
    leverage: float | None = None


class QuotingMode(Enum):
    NORMAL = "normal"
    CLOSE_ONLY = "close_only"


@dataclass(frozen=True)
class Quote:
    """一次报价结果；size 为 0 表示该侧不挂单。"""
    bid_price: float
    ask_price: float
    bid_size: float
    ask_size: float
    fair_price: float
    spread_bps: float
    is_close_mode: bool

    @property
    def mode(self) -> QuotingMode:
        return QuotingMode.CLOSE_ONLY if self.is_close_mode else QuotingMode.NORMAL


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    side: Side
    price: float
    size: float
    type: OrderType = "limit"
    post_only: bool = True
    reduce_only: bool = False
    client_id: str | None = None


@dataclass(frozen=True)
class OrderResult:
    order_id: str
    status: OrderStatus
    timestamp_ms: int
    client_id: str | None = None
    raw: Any = field(default=None, compare=False, repr=False)
