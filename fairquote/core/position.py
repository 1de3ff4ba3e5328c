"""仓位与风险跟踪：由账户快照整体替换，派生带符号名义价值与模式阈值。"""

from __future__ import annotations

import logging

from fairquote.core.config import MarketMakerConfig
from fairquote.core.models import Account, Position, PositionState, Side

logger = logging.getLogger(__name__)


class PositionTracker:
    """
    仓位管理器 (Position/Risk Tracker)

    职责：
    1. 每次账户快照到来时整体替换 PositionState（没有增量补丁路径）
    2. 计算带符号名义价值，判断平仓模式 / 满仓
    3. 检查保证金率
    """

    def __init__(self, config: MarketMakerConfig):
        self.config = config
        self._state = PositionState(symbol=config.symbol)

    @property
    def position(self) -> PositionState:
        return self._state

    def update_position(self, snapshot: Position | None, mark_price: float | None = None) -> PositionState:
        """
        用交易所快照替换当前仓位

        Args:
            snapshot: 交易所持仓记录；None 或 size 为 0 视为无仓位
            mark_price: 可选的外部标记价格（优先于快照中的 mark_price）
        """
        if snapshot is None or snapshot.size == 0 or snapshot.side == "none":
            self._state = PositionState(symbol=self.config.symbol, mark_price=mark_price or 0.0)
            return self._state

        price = mark_price or snapshot.mark_price or snapshot.entry_price
        size = abs(snapshot.size)
        notional = size * price

        self._state = PositionState(
            symbol=self.config.symbol,
            side=snapshot.side,
            size=size,
            entry_price=snapshot.entry_price,
            mark_price=price,
            notional=notional,
            unrealized_pnl=snapshot.unrealized_pnl,
            margin=snapshot.margin or 0.0,
        )
        logger.debug(
            f"Position updated: {snapshot.side} {size} @ {snapshot.entry_price}, notional=${notional:.2f}"
        )
        return self._state

    def signed_notional(self) -> float:
        """多头为正、空头为负。"""
        if self._state.side == "long":
            return self._state.notional
        if self._state.side == "short":
            return -self._state.notional
        return 0.0

    def is_close_mode(self) -> bool:
        return self._state.notional > self.config.close_threshold_usd

    def is_at_max(self) -> bool:
        return self._state.notional >= self.config.max_position_usd

    def can_add_position(self, side: Side) -> bool:
        """该方向的新订单是否允许。"""
        if self.is_at_max():
            return False
        if self.is_close_mode():
            # 平仓模式只允许减仓方向
            if self._state.side == "long" and side == "buy":
                return False
            if self._state.side == "short" and side == "sell":
                return False
        return True

    def utilization(self) -> float:
        return self._state.notional / self.config.max_position_usd

    def is_margin_healthy(self, account: Account) -> bool:
        """可用保证金 / 权益 >= min_margin_ratio。"""
        if account.equity <= 0:
            logger.warning(f"⚠️ Non-positive equity ({account.equity}), margin check failed")
            return False
        ratio = account.available_margin / account.equity
        if ratio < self.config.min_margin_ratio:
            logger.warning(
                f"⚠️ Margin ratio {ratio:.2%} below minimum {self.config.min_margin_ratio:.2%}"
            )
            return False
        return True

    def format_position(self) -> str:
        s = self._state
        if s.side == "none":
            return "No position"
        pnl_sign = "+" if s.unrealized_pnl >= 0 else "-"
        return (
            f"{s.side.upper()} {s.size:.6f} @ {s.entry_price:.2f} | Notional: ${s.notional:.2f} "
            f"| PnL: {pnl_sign}${abs(s.unrealized_pnl):.2f}"
        )
