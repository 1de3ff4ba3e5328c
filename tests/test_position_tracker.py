import pytest

from fairquote.core.config import MarketMakerConfig
from fairquote.core.models import Account, Position
from fairquote.core.position import PositionTracker


@pytest.fixture
def tracker():
    cfg = MarketMakerConfig(exchange="hyperliquid", symbol="BTC", close_threshold_usd=500, max_position_usd=2000)
    return PositionTracker(cfg)


def test_starts_flat(tracker):
    pos = tracker.position
    assert pos.side == "none"
    assert pos.notional == 0
    assert tracker.signed_notional() == 0
    assert tracker.format_position() == "No position"


def test_long_snapshot_over_threshold_enters_close_mode(tracker):
    state = tracker.update_position(Position(symbol="BTC", side="long", size=0.01, entry_price=50000, mark_price=60000))

    assert state.side == "long"
    assert state.notional == pytest.approx(600)
    assert tracker.signed_notional() == pytest.approx(600)
    assert tracker.is_close_mode() is True
    assert tracker.can_add_position("buy") is False
    assert tracker.can_add_position("sell") is True
    assert tracker.utilization() == pytest.approx(0.3)
    assert "LONG" in tracker.format_position()


def test_short_snapshot_has_negative_signed_notional(tracker):
    tracker.update_position(Position(symbol="BTC", side="short", size=0.002, entry_price=50000))
    assert tracker.position.notional == pytest.approx(100)
    assert tracker.signed_notional() == pytest.approx(-100)
    assert tracker.is_close_mode() is False
    assert tracker.can_add_position("sell") is True


def test_external_mark_price_takes_precedence(tracker):
    pos = Position(symbol="BTC", side="long", size=0.01, entry_price=50000, mark_price=60000)
    state = tracker.update_position(pos, mark_price=55000)
    assert state.mark_price == 55000
    assert state.notional == pytest.approx(550)


def test_at_max_blocks_both_sides(tracker):
    tracker.update_position(Position(symbol="BTC", side="short", size=0.05, entry_price=50000))
    assert tracker.position.notional == pytest.approx(2500)
    assert tracker.is_at_max() is True
    assert tracker.can_add_position("sell") is False
    assert tracker.can_add_position("buy") is False


@pytest.mark.parametrize(
    "snapshot",
    [None, Position(symbol="BTC", side="long", size=0.0, entry_price=50000), Position(symbol="BTC", side="none", size=1, entry_price=1)],
)
def test_empty_snapshot_resets_to_flat(tracker, snapshot):
    tracker.update_position(Position(symbol="BTC", side="long", size=0.01, entry_price=50000))
    state = tracker.update_position(snapshot)
    assert state.side == "none"
    assert state.size == 0
    assert state.notional == 0
    assert tracker.is_close_mode() is False


def test_margin_health(tracker):
    assert tracker.is_margin_healthy(Account(address="0x1", equity=1000, margin=500, available_margin=500)) is True
    assert tracker.is_margin_healthy(Account(address="0x1", equity=1000, margin=950, available_margin=50)) is False
    assert tracker.is_margin_healthy(Account(address="0x1", equity=0, margin=0, available_margin=0)) is False
