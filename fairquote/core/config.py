"""做市配置（Pydantic Schema + YAML/环境变量加载）。

优先级：默认值 < YAML 文件 < 环境变量 < 显式 overrides。
配置错误在启动阶段直接失败，任何行情流打开之前。
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)

ExchangeName = Literal["aftermath", "hyperliquid"]
PriceSource = Literal["binance", "hyperliquid"]


class MarketMakerConfig(BaseModel):
    """单个交易对的做市参数。"""

    # Exchange settings
    exchange: ExchangeName
    symbol: str = Field(min_length=1)
    is_testnet: bool = False
    # 只读账户快照（仓位 / 保证金）；不设置则按无仓位报价
    wallet_address: str | None = None

    # Price oracle
    price_source: PriceSource = "binance"

    # Spread (half-spread, bps from fair price)
    spread_bps: float = 10.0
    take_profit_bps: float = 5.0

    # Position limits (USD)
    order_size_usd: float = 100.0
    close_threshold_usd: float = 500.0
    max_position_usd: float = 2000.0

    # Timing
    warmup_seconds: float = 10.0
    update_throttle_ms: int = 100
    order_sync_interval_ms: int = 3000
    reconnect_delay_ms: int = 5000

    # Fair price
    fair_price_window_ms: int = 5 * 60 * 1000
    min_fair_price_samples: int = 10

    # Risk
    min_margin_ratio: float = 0.1
    stale_order_bps: float = 50.0

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _check_limits(self) -> "MarketMakerConfig":
        for name in ("spread_bps", "take_profit_bps", "order_size_usd", "close_threshold_usd"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_position_usd <= self.close_threshold_usd:
            raise ValueError("max_position_usd must be greater than close_threshold_usd")
        if self.fair_price_window_ms <= 0:
            raise ValueError("fair_price_window_ms must be positive")
        if self.warmup_seconds < 0:
            raise ValueError("warmup_seconds must be >= 0")
        if not 0 <= self.min_margin_ratio < 1:
            raise ValueError("min_margin_ratio must be in [0, 1)")
        if self.stale_order_bps <= 0:
            raise ValueError("stale_order_bps must be positive")
        return self


# env var -> (field, caster)
_ENV_FIELDS: dict[str, tuple[str, type]] = {
    "EXCHANGE": ("exchange", str),
    "SYMBOL": ("symbol", str),
    "PRICE_SOURCE": ("price_source", str),
    "SPREAD_BPS": ("spread_bps", float),
    "TAKE_PROFIT_BPS": ("take_profit_bps", float),
    "ORDER_SIZE_USD": ("order_size_usd", float),
    "CLOSE_THRESHOLD_USD": ("close_threshold_usd", float),
    "MAX_POSITION_USD": ("max_position_usd", float),
    "WARMUP_SECONDS": ("warmup_seconds", float),
    "UPDATE_THROTTLE_MS": ("update_throttle_ms", int),
    "ORDER_SYNC_INTERVAL_MS": ("order_sync_interval_ms", int),
    "RECONNECT_DELAY_MS": ("reconnect_delay_ms", int),
    "FAIR_PRICE_WINDOW_MS": ("fair_price_window_ms", int),
    "MIN_FAIR_PRICE_SAMPLES": ("min_fair_price_samples", int),
    "MIN_MARGIN_RATIO": ("min_margin_ratio", float),
    "STALE_ORDER_BPS": ("stale_order_bps", float),
    "HL_TESTNET": ("is_testnet", bool),
    "WALLET_ADDRESS": ("wallet_address", str),
}

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}


def _cast_env(raw: str, caster: type) -> Any:
    if caster is bool:
        return raw.strip().lower() in _TRUE_VALUES
    if caster is str:
        return raw.strip()
    try:
        return caster(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid numeric value in environment: {raw!r}") from exc


def config_from_env(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """从环境变量读取覆盖项（只返回已设置的字段）。"""
    env = os.environ if environ is None else environ
    out: dict[str, Any] = {}
    for var, (name, caster) in _ENV_FIELDS.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        out[name] = _cast_env(raw, caster)
    return out


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        def replacer(match: re.Match[str]) -> str:
            var_name = match.group(1)
            if var_name not in os.environ:
                raise ValueError(f"Missing environment variable: {var_name}")
            return os.environ[var_name]

        return re.sub(r"\$\{([^}]+)\}", replacer, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _load_envs(cfg_path: Path) -> None:
    """加载配置目录与上一级目录下的 .env/.env.local（不覆盖已有环境变量）。"""
    for env_file in (
        cfg_path.parent / ".env",
        cfg_path.parent / ".env.local",
        cfg_path.parent.parent / ".env",
        cfg_path.parent.parent / ".env.local",
    ):
        if env_file.exists():
            load_dotenv(env_file, override=False)


def read_yaml_config(path: str | Path, *, load_env: bool = True) -> dict[str, Any]:
    """读取 YAML 并展开 `${VAR}` 占位符。

    文件可以是扁平结构，也可以把参数放在顶层 `market_maker:` 下。
    """
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")
    if load_env:
        _load_envs(cfg_path)

    with cfg_path.open("r", encoding="utf-8") as f:
        raw: Any = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a dict")
    if isinstance(raw.get("market_maker"), dict):
        raw = raw["market_maker"]
    return _expand_env(raw)


def load_config(
    path: str | Path | None = None,
    *,
    overrides: dict[str, Any] | None = None,
    load_env: bool = True,
    environ: dict[str, str] | None = None,
) -> MarketMakerConfig:
    """合并 YAML / 环境变量 / overrides 并校验。

    Raises
    ------
    FileNotFoundError
        指定的配置文件不存在。
    ValueError
        缺失环境变量、取值非法或参数越界（pydantic.ValidationError 也是 ValueError）。
    """
    merged: dict[str, Any] = {}
    if path is not None:
        merged.update(read_yaml_config(path, load_env=load_env))
    merged.update(config_from_env(environ))
    if overrides:
        merged.update({k: v for k, v in overrides.items() if v is not None})

    cfg = MarketMakerConfig.model_validate(merged)
    logger.info(
        f"⚙️ Market maker config: {cfg.exchange}/{cfg.symbol} source={cfg.price_source} "
        f"spread={cfg.spread_bps}bps tp={cfg.take_profit_bps}bps size=${cfg.order_size_usd} "
        f"close>${cfg.close_threshold_usd} max=${cfg.max_position_usd}"
    )
    return cfg
