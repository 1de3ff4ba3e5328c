"""fairquote 命令行入口。

子命令（均为 dry-run，不会下单）：

- `quote`：连接价格源，按配置持续计算并打印双边报价。
- `book`：订阅交易所订单簿，打印最优买卖价与价差。
- `markets`：列出交易所市场元数据。
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any

from fairquote.core.config import MarketMakerConfig, load_config
from fairquote.core.models import MarketInfo, OrderBookView, OrderRequest, Quote
from fairquote.engine import MarketMakerEngine
from fairquote.gateways.orderbook_streams import DeltaOrderbookStream, SnapshotOrderbookStream
from fairquote.gateways.venues import AftermathClient, MarketRegistry, create_account_source, create_venue_client
from fairquote.utils.logging import setup_logger

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "config/market_maker.yml"


@dataclass
class CliArgs:
    """命令行参数。

    config: 配置文件路径（不存在时只用环境变量）
    task: quote / book / markets
    """
    config: str
    task: str
    symbol: str | None = None
    exchange: str | None = None
    price_source: str | None = None
    max_quotes: int | None = None
    max_updates: int | None = None
    log_level: str = "INFO"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fairquote", description="fairquote 做市报价（dry-run）")

    def _add_common(p: argparse.ArgumentParser, *, default: Any) -> None:
        p.add_argument("--config", default=default, help=f"配置文件路径 (默认: {DEFAULT_CONFIG})")
        p.add_argument("--symbol", default=default, help="覆盖配置中的交易对")
        p.add_argument("--exchange", default=default, choices=["aftermath", "hyperliquid"], help="覆盖交易所")
        p.add_argument("--log-level", default=default, help="日志级别 (默认: LOG_LEVEL 或 INFO)")

    # 允许全局参数写在子命令前或后
    _add_common(parser, default=None)

    sub = parser.add_subparsers(dest="task")

    p_quote = sub.add_parser("quote", help="持续计算并打印报价")
    _add_common(p_quote, default=argparse.SUPPRESS)
    p_quote.add_argument("--price-source", default=None, choices=["binance", "hyperliquid"])
    p_quote.add_argument("--max-quotes", type=int, default=None, help="输出多少次报价后退出")

    p_book = sub.add_parser("book", help="订阅并打印订单簿")
    _add_common(p_book, default=argparse.SUPPRESS)
    p_book.add_argument("--max-updates", type=int, default=None, help="收到多少次更新后退出")

    p_markets = sub.add_parser("markets", help="列出交易所市场")
    _add_common(p_markets, default=argparse.SUPPRESS)

    return parser


def parse_args(argv: list[str] | None = None) -> CliArgs:
    ns = build_parser().parse_args(argv)
    return CliArgs(
        config=str(getattr(ns, "config", None) or DEFAULT_CONFIG),
        task=ns.task or "quote",
        symbol=getattr(ns, "symbol", None),
        exchange=getattr(ns, "exchange", None),
        price_source=getattr(ns, "price_source", None),
        max_quotes=getattr(ns, "max_quotes", None),
        max_updates=getattr(ns, "max_updates", None),
        log_level=getattr(ns, "log_level", None) or os.getenv("LOG_LEVEL", "INFO"),
    )


def load_cli_config(args: CliArgs) -> MarketMakerConfig:
    path = args.config if os.path.exists(args.config) else None
    if path is None:
        logger.info(f"Config file {args.config} not found, using environment only")
    overrides = {"symbol": args.symbol, "exchange": args.exchange, "price_source": args.price_source}
    return load_config(path, overrides=overrides)


def format_quote(quote: Quote) -> str:
    mode = "CLOSE" if quote.is_close_mode else "NORMAL"
    return (
        f"[{mode}] fair={quote.fair_price:.4f} "
        f"bid={quote.bid_price} x {quote.bid_size} | ask={quote.ask_price} x {quote.ask_size} "
        f"({quote.spread_bps}bps)"
    )


def format_book(view: OrderBookView) -> str:
    bid = view.best_bid()
    ask = view.best_ask()
    if bid is None or ask is None:
        return f"{view.symbol}: empty side (bids={len(view.bids)}, asks={len(view.asks)})"
    mid = (bid.price + ask.price) / 2
    spread_bps = (ask.price - bid.price) / mid * 10000
    return f"{view.symbol}: {bid.price} x {bid.size} / {ask.price} x {ask.size} spread={spread_bps:.2f}bps"


async def run_quote(cfg: MarketMakerConfig, *, max_quotes: int | None = None) -> list[Quote]:
    quotes: list[Quote] = []
    stop = asyncio.Event()

    def on_quote(quote: Quote, orders: list[OrderRequest]) -> None:
        quotes.append(quote)
        print(format_quote(quote))
        if max_quotes is not None and len(quotes) >= max_quotes:
            stop.set()

    client = create_venue_client(cfg.exchange, is_testnet=cfg.is_testnet)
    account_source = None
    if cfg.wallet_address:
        account_source = create_account_source(cfg.exchange, client, cfg.wallet_address)
    else:
        logger.warning("⚠️ WALLET_ADDRESS not set, quoting as if flat (no position / margin checks)")
    try:
        engine = MarketMakerEngine(cfg, market_source=client, account_source=account_source, on_quote=on_quote)
        await engine.run(stop)
    finally:
        await client.close()
    return quotes


async def run_book(cfg: MarketMakerConfig, *, max_updates: int | None = None) -> int:
    updates = 0
    stop = asyncio.Event()

    def on_book(view: OrderBookView) -> None:
        nonlocal updates
        updates += 1
        print(format_book(view))
        if max_updates is not None and updates >= max_updates:
            stop.set()

    reconnect_delay_s = cfg.reconnect_delay_ms / 1000
    if cfg.exchange == "hyperliquid":
        books = SnapshotOrderbookStream(is_testnet=cfg.is_testnet, reconnect_delay_s=reconnect_delay_s)
        try:
            await books.subscribe_orderbook(cfg.symbol, on_book)
            await stop.wait()
        finally:
            await books.close()
        return updates

    client = AftermathClient()
    try:
        market = await MarketRegistry(client).get_market(cfg.symbol)
        book = DeltaOrderbookStream(client, market.market_id or market.symbol, on_book, reconnect_delay_s=reconnect_delay_s)
        try:
            await book.start()
            await stop.wait()
        finally:
            await book.close()
    finally:
        await client.close()
    return updates


async def run_markets(cfg: MarketMakerConfig) -> list[MarketInfo]:
    client = create_venue_client(cfg.exchange, is_testnet=cfg.is_testnet)
    try:
        markets = await MarketRegistry(client).markets()
    finally:
        await client.close()
    for m in markets:
        print(f"{m.symbol:<24} tick={m.tick_size:<10g} size_precision={m.size_precision} min={m.min_size:g}")
    return markets


def main(argv: list[str] | None = None) -> Any:
    """程序主入口；返回对应子命令的结果。"""
    args = parse_args(argv)
    setup_logger("fairquote", args.log_level)
    setup_logger(__name__, args.log_level)

    cfg = load_cli_config(args)

    try:
        if args.task == "quote":
            return asyncio.run(run_quote(cfg, max_quotes=args.max_quotes))
        if args.task == "book":
            return asyncio.run(run_book(cfg, max_updates=args.max_updates))
        if args.task == "markets":
            return asyncio.run(run_markets(cfg))
    except KeyboardInterrupt:
        logger.info("🛑 Interrupted")
        return None

    raise ValueError(f"Unknown task: {args.task}")


if __name__ == "__main__":
    main()
