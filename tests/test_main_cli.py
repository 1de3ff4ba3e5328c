import logging

import pytest

import main as cli
from fairquote.core.config import _ENV_FIELDS, MarketMakerConfig
from fairquote.core.models import OrderBookView, PriceLevel, Quote
from fairquote.gateways.venues import HyperliquidAccountSource
from fairquote.utils.logging import setup_logger


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch):
    for var in list(_ENV_FIELDS) + ["LOG_LEVEL"]:
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


def test_parse_args_defaults(clean_env):
    args = cli.parse_args([])
    assert args.task == "quote"
    assert args.config == cli.DEFAULT_CONFIG
    assert args.log_level == "INFO"
    assert args.symbol is None


def test_parse_args_subcommands(clean_env):
    args = cli.parse_args(["book", "--symbol", "ETH", "--max-updates", "3"])
    assert args.task == "book"
    assert args.symbol == "ETH"
    assert args.max_updates == 3

    args = cli.parse_args(["--config", "custom.yml", "--exchange", "aftermath", "markets"])
    assert args.task == "markets"
    assert args.config == "custom.yml"
    assert args.exchange == "aftermath"

    args = cli.parse_args(["quote", "--price-source", "hyperliquid", "--max-quotes", "2", "--log-level", "debug"])
    assert args.price_source == "hyperliquid"
    assert args.max_quotes == 2
    assert args.log_level == "debug"


def test_load_cli_config_applies_overrides(tmp_path, clean_env):
    path = tmp_path / "mm.yml"
    path.write_text("market_maker:\n  exchange: hyperliquid\n  symbol: BTC\n  spread_bps: 7\n", encoding="utf-8")

    cfg = cli.load_cli_config(cli.parse_args(["--config", str(path), "quote", "--symbol", "ETH", "--price-source", "hyperliquid"]))
    assert cfg.symbol == "ETH"
    assert cfg.spread_bps == 7
    assert cfg.price_source == "hyperliquid"


def test_load_cli_config_without_file_uses_env(tmp_path, clean_env):
    clean_env.setenv("EXCHANGE", "aftermath")
    clean_env.setenv("SYMBOL", "SUI")
    cfg = cli.load_cli_config(cli.parse_args(["--config", str(tmp_path / "missing.yml")]))
    assert cfg.exchange == "aftermath"
    assert cfg.symbol == "SUI"


def test_main_dispatches_quote_task(tmp_path, clean_env):
    calls = {}
    sentinel = object()

    def fake_load(args):
        calls["args"] = args
        return sentinel

    async def fake_run_quote(cfg, *, max_quotes=None):
        calls["run"] = (cfg, max_quotes)
        return ["q"]

    clean_env.setattr(cli, "load_cli_config", fake_load)
    clean_env.setattr(cli, "run_quote", fake_run_quote)

    assert cli.main(["quote", "--max-quotes", "1"]) == ["q"]
    assert calls["run"] == (sentinel, 1)
    assert calls["args"].task == "quote"


def test_format_helpers():
    quote = Quote(
        bid_price=49950.0, ask_price=50050.0, bid_size=0.002, ask_size=0.002,
        fair_price=50000.0, spread_bps=10.0, is_close_mode=False,
    )
    assert cli.format_quote(quote).startswith("[NORMAL] fair=50000.0000 bid=49950.0 x 0.002")

    view = OrderBookView(symbol="BTC", bids=(PriceLevel(100.0, 1.0),), asks=(PriceLevel(101.0, 2.0),))
    assert cli.format_book(view) == "BTC: 100.0 x 1.0 / 101.0 x 2.0 spread=99.50bps"
    assert "empty side" in cli.format_book(OrderBookView(symbol="BTC"))


def test_setup_logger_is_idempotent():
    logger = setup_logger("fairquote.test_cli", "debug")
    setup_logger("fairquote.test_cli", "warning")
    console = [h for h in logger.handlers if getattr(h, "_fairquote_console", False)]
    assert len(console) == 1
    assert logger.level == logging.WARNING
    assert setup_logger("fairquote.test_cli", "nonsense").level == logging.INFO


class RecordingEngine:
    instances = []

    def __init__(self, cfg, *, market_source=None, account_source=None, on_quote=None):
        self.market_source = market_source
        self.account_source = account_source
        RecordingEngine.instances.append(self)

    async def run(self, stop):
        return None


@pytest.mark.asyncio
async def test_run_quote_wires_account_source_from_wallet(monkeypatch: pytest.MonkeyPatch):
    RecordingEngine.instances = []
    monkeypatch.setattr(cli, "MarketMakerEngine", RecordingEngine)

    cfg = MarketMakerConfig(exchange="hyperliquid", symbol="BTC", wallet_address="0xabc")
    await cli.run_quote(cfg, max_quotes=1)
    source = RecordingEngine.instances[-1].account_source
    assert isinstance(source, HyperliquidAccountSource)
    assert source.address == "0xabc"

    await cli.run_quote(MarketMakerConfig(exchange="hyperliquid", symbol="BTC"), max_quotes=1)
    assert RecordingEngine.instances[-1].account_source is None
