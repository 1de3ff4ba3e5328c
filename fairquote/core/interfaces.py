"""外部协作方的抽象接口（行情源 / 市场元数据 / 账户快照 / 下单执行）。"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable

from fairquote.core.models import Account, MarketInfo, OrderRequest, OrderResult, Position

PriceCallback = Callable[[float, int], None]


class PriceFeed(ABC):
    """Oracle 价格源。

    子类负责连接与解析，解析出价格后调用 `_emit(price, timestamp_ms)`。
    """

    def __init__(self, symbol: str, callback: PriceCallback | None = None):
        self.symbol = symbol
        self._callback = callback
        self._last_price: float | None = None
        self._last_timestamp: int | None = None

    def set_callback(self, callback: PriceCallback) -> None:
        self._callback = callback

    def last_price(self) -> float | None:
        return self._last_price

    def last_timestamp(self) -> int | None:
        return self._last_timestamp

    def _emit(self, price: float, timestamp_ms: int) -> None:
        self._last_price = price
        self._last_timestamp = timestamp_ms
        if self._callback is not None:
            self._callback(price, timestamp_ms)

    @abstractmethod
    async def connect(self) -> None:
        """建立连接并开始推送。"""

    @abstractmethod
    async def disconnect(self) -> None:
        """断开连接，之后不再回调。"""

    @property
    @abstractmethod
    def connected(self) -> bool:
        """底层连接当前是否可用。"""


class MarketSource(ABC):
    """交易所市场元数据来源。"""

    @abstractmethod
    async def fetch_markets(self) -> list[MarketInfo]:
        """拉取全部市场。"""


class AccountSource(ABC):
    """账户快照来源（周期性拉取）。"""

    @abstractmethod
    async def fetch_position(self, symbol: str) -> Position | None:
        """返回该交易对的持仓；无持仓返回 None。"""

    @abstractmethod
    async def fetch_account(self) -> Account:
        """返回账户权益/保证金。"""


class OrderExecutionAdapter(ABC):
    """下单执行接口：由外部的订单同步循环调用，核心层从不直接调用。"""

    @abstractmethod
    async def place_order(self, request: OrderRequest) -> OrderResult:
        ...

    @abstractmethod
    async def cancel_order(self, order_id: str) -> None:
        ...

    @abstractmethod
    async def cancel_all_orders(self, symbol: str | None = None) -> None:
        ...
