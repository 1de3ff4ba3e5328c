"""精度与步进工具（价格按 tick 取整、数量按精度截断）。

所有取整都走 Decimal，避免 0.1 * 3 = 0.30000000000000004 这类浮点噪声
把价格多推出一个 tick。
"""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Literal

RoundDirection = Literal["up", "down"]


def to_decimal(value: float | int | str | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def decimals_from_step(step: float) -> int:
    """根据 step（通常是 10 的负次幂）推导小数位数。"""
    d = to_decimal(step)
    if d == 0:
        return 0
    exp = d.as_tuple().exponent
    return max(0, -int(exp))


def _to_step(value: float | Decimal, step: float, rounding: str) -> float:
    sd = to_decimal(step)
    if sd <= 0:
        return float(value)
    n = (to_decimal(value) / sd).to_integral_value(rounding=rounding)
    out = n * sd
    decs = decimals_from_step(step)
    out = out.quantize(Decimal(1).scaleb(-decs)) if decs > 0 else out.quantize(Decimal(1))
    return float(out)


def floor_to_step(value: float | Decimal, step: float) -> float:
    """把 value 向下裁剪到 step 的整数倍。"""
    return _to_step(value, step, ROUND_FLOOR)


def ceil_to_step(value: float | Decimal, step: float) -> float:
    """把 value 向上取到 step 的整数倍。"""
    return _to_step(value, step, ROUND_CEILING)


def round_to_tick(price: float | Decimal, tick_size: float, direction: RoundDirection) -> float:
    """按 tick 取整。

    bid 用 "down"，ask 用 "up"：两侧都只会把价差拉宽，不会收窄。
    """
    if direction == "down":
        return floor_to_step(price, tick_size)
    if direction == "up":
        return ceil_to_step(price, tick_size)
    raise ValueError(f"Unknown rounding direction: {direction}")


def floor_to_decimals(value: float | Decimal, decimals: int) -> float:
    """数量按小数位向下截断（下单量永远不向上取整）。"""
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    quantum = Decimal(1).scaleb(-decimals)
    return float(to_decimal(value).quantize(quantum, rounding=ROUND_FLOOR))
