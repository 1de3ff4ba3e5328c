import asyncio

import pytest

from fairquote.core.config import MarketMakerConfig
from fairquote.core.fair_price import FairPriceCalculator
from fairquote.core.models import Account, MarketInfo, Position
from fairquote.engine import MarketMakerEngine, run_pipelines
from fairquote.gateways.venues import MarketNotFoundError
from fairquote.sim.fakes import FakeAccountSource, FakeClock, FakeMarketSource, FakePriceFeed

BTC = MarketInfo(symbol="BTC/USD:USD", base="BTC", quote="USD", tick_size=0.1, size_precision=5, min_size=0.00001)


def make_engine(*, markets=(BTC,), account_source=None, on_quote=None, now_fn=None, **cfg_overrides):
    params = {
        "exchange": "hyperliquid",
        "symbol": "BTC",
        "warmup_seconds": 0,
        "min_fair_price_samples": 1,
        "fair_price_window_ms": 1000,
        "update_throttle_ms": 1,
    }
    params.update(cfg_overrides)
    config = MarketMakerConfig(**params)
    feed = FakePriceFeed("BTC")
    fair = FairPriceCalculator(
        "BTC", feed=feed, window_ms=1000, min_samples=1, warmup_s=0, clock=FakeClock(0)
    )
    engine = MarketMakerEngine(
        config,
        market_source=FakeMarketSource(markets),
        account_source=account_source,
        fair_price=fair,
        on_quote=on_quote,
        now_fn=now_fn,
    )
    return engine, feed


@pytest.mark.asyncio
async def test_no_quote_before_first_price():
    engine, feed = make_engine()
    await engine.start()
    assert engine.running
    assert feed.connected
    assert await engine.step() is None
    await engine.stop()
    assert not feed.connected


@pytest.mark.asyncio
async def test_step_quotes_around_fair_price():
    seen = []
    engine, feed = make_engine(on_quote=lambda quote, orders: seen.append((quote, orders)))
    await engine.start()
    assert engine.market == BTC

    feed.push(50000.0, 1)
    quote = await engine.step()

    assert quote.bid_price == 49950.0
    assert quote.ask_price == 50050.0
    assert quote.bid_size == 0.002
    assert engine.last_quote == quote
    assert len(seen) == 1
    assert [o.side for o in seen[0][1]] == ["buy", "sell"]
    await engine.stop()


@pytest.mark.asyncio
async def test_large_long_position_switches_to_close_mode():
    account = FakeAccountSource(Position(symbol="BTC", side="long", size=0.02, entry_price=49000))
    seen = []
    engine, feed = make_engine(account_source=account, on_quote=lambda q, orders: seen.append(orders))
    await engine.start()
    feed.push(50000.0, 1)

    quote = await engine.step()
    assert engine.tracker.position.notional == pytest.approx(1000)
    assert quote.is_close_mode
    assert quote.bid_size == 0
    assert [o.side for o in seen[0]] == ["sell"]
    await engine.stop()


@pytest.mark.asyncio
async def test_unhealthy_margin_suppresses_quotes():
    account = FakeAccountSource(account=Account(address="0x1", equity=1000, margin=950, available_margin=50))
    engine, feed = make_engine(account_source=account)
    await engine.start()
    feed.push(50000.0, 1)
    assert await engine.step() is None
    await engine.stop()


@pytest.mark.asyncio
async def test_missing_market_fails_start():
    engine, feed = make_engine(markets=())
    with pytest.raises(MarketNotFoundError):
        await engine.start()
    assert feed.connect_calls == 0
    assert not engine.running


@pytest.mark.asyncio
async def test_position_refresh_failure_keeps_quoting():
    account = FakeAccountSource(error=RuntimeError("api down"))
    engine, feed = make_engine(account_source=account)
    await engine.start()
    feed.push(50000.0, 1)

    quote = await engine.step()
    assert quote is not None
    assert account.calls["position"] == 1
    assert engine.tracker.position.side == "none"
    await engine.stop()


@pytest.mark.asyncio
async def test_position_refresh_is_throttled():
    clock = FakeClock(0)
    account = FakeAccountSource()
    engine, feed = make_engine(account_source=account, now_fn=clock, order_sync_interval_ms=3000)
    await engine.start()
    feed.push(50000.0, 1)

    await engine.step()
    await engine.step()
    assert account.calls["position"] == 1

    clock.advance(2.5)
    await engine.step()
    assert account.calls["position"] == 1

    clock.advance(0.5)
    await engine.step()
    assert account.calls["position"] == 2
    await engine.stop()


@pytest.mark.asyncio
async def test_run_until_stop_event():
    stop = asyncio.Event()
    quotes = []

    async def on_quote(quote, orders):
        quotes.append(quote)
        if len(quotes) == 2:
            stop.set()

    engine, feed = make_engine(on_quote=on_quote)
    feed.push(50000.0, 1)

    async def pump():
        while not stop.is_set():
            await asyncio.sleep(0.005)
            feed.push(50010.0, 2)

    pumper = asyncio.create_task(pump())
    await asyncio.wait_for(engine.run(stop), timeout=2)
    await pumper

    assert len(quotes) == 2
    assert not engine.running
    assert not feed.connected


@pytest.mark.asyncio
async def test_run_pipelines_isolates_failures():
    stop = asyncio.Event()
    good, good_feed = make_engine(on_quote=lambda q, orders: stop.set())
    bad, _ = make_engine(markets=())
    good_feed.push(50000.0, 1)

    outcome = await asyncio.wait_for(run_pipelines([bad, good], stop), timeout=2)

    assert isinstance(outcome[0], MarketNotFoundError)
    assert outcome[1] is None
    assert good.last_quote is not None


@pytest.mark.asyncio
async def test_on_quote_failure_does_not_stop_pipeline():
    stop = asyncio.Event()
    calls = []

    async def on_quote(quote, orders):
        calls.append(quote.fair_price)
        if len(calls) == 1:
            raise RuntimeError("order sync hiccup")
        stop.set()

    engine, feed = make_engine(on_quote=on_quote)
    feed.push(50000.0, 1)
    task = asyncio.create_task(engine.run(stop))

    await asyncio.sleep(0.05)
    assert not task.done()
    assert engine.running
    assert feed.connected

    feed.push(50100.0, 2)
    await asyncio.wait_for(task, timeout=2)
    assert len(calls) == 2
    assert calls[-1] == pytest.approx(50100.0)
