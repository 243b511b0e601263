from datetime import datetime, timezone
from decimal import Decimal

import pytest

from conftest import live_position, resting_order
from tradeledger.data.decoders import decode_position, decode_resting_order
from tradeledger.domain.models import Side
from tradeledger.positions.active_positions import (
    build_active_positions,
    exit_plan_for,
    fetch_active_positions,
)


def test_position_without_orders_has_zero_exit_plan():
    [active] = build_active_positions([live_position()], [])

    assert active.side == Side.LONG
    assert active.notional == Decimal("1000")
    assert active.leverage == Decimal("10")
    assert active.entry_price == Decimal("1900")
    assert active.unrealized_pnl == Decimal("-20")
    assert active.exit_plan.target == Decimal("0")
    assert active.exit_plan.stop == Decimal("0")


def test_short_position_uses_absolute_amount():
    [active] = build_active_positions([live_position(amt="-2", mark="50")], [])
    assert active.side == Side.SHORT
    assert active.notional == Decimal("100")


def test_flat_positions_are_excluded():
    assert build_active_positions([live_position(amt="0")], []) == []


def test_exit_plan_takes_first_reduce_only_tp_and_sl():
    orders = [
        resting_order(1, "TAKE_PROFIT_MARKET", "2500", reduce_only=False),
        resting_order(2, "TAKE_PROFIT_MARKET", "2400"),
        resting_order(3, "STOP_MARKET", "1800"),
        resting_order(4, "TAKE_PROFIT", "2600"),
        resting_order(5, "STOP_MARKET", "1700"),
        resting_order(6, "LIMIT", "0"),
    ]
    plan = exit_plan_for(orders)
    assert plan.target == Decimal("2400")
    assert plan.stop == Decimal("1800")


def test_exit_plan_only_uses_orders_of_the_same_symbol():
    orders = [
        resting_order(1, "TAKE_PROFIT_MARKET", "4000", symbol="ETHUSDT"),
        resting_order(2, "STOP_MARKET", "1800"),
    ]
    [active] = build_active_positions([live_position()], orders)
    assert active.exit_plan.target == Decimal("0")
    assert active.exit_plan.stop == Decimal("1800")


def test_malformed_venue_fields_fall_back_to_zero():
    position = decode_position({"symbol": "BTCUSDT", "positionAmt": "1", "markPrice": "NaN",
                                "entryPrice": None, "leverage": "x", "unRealizedProfit": "oops"})
    order = decode_resting_order({"symbol": "BTCUSDT", "type": "STOP_MARKET", "reduceOnly": True, "stopPrice": None})

    [active] = build_active_positions([position], [order])
    assert active.notional == Decimal("0")
    assert active.entry_price == Decimal("0")
    assert active.leverage == Decimal("0")
    assert active.unrealized_pnl == Decimal("0")
    assert active.exit_plan.stop == Decimal("0")


def test_created_at_uses_update_time_or_now():
    updated = datetime(2025, 1, 2, tzinfo=timezone.utc)
    [with_time] = build_active_positions([live_position(updated=updated)], [])
    assert with_time.created_at == updated

    before = datetime.now(timezone.utc)
    [without_time] = build_active_positions([live_position()], [])
    assert before <= without_time.created_at <= datetime.now(timezone.utc)


def test_symbol_filter():
    positions = [live_position("BTCUSDT"), live_position("DOGEUSDT")]
    assert [a.symbol for a in build_active_positions(positions, [], symbols=["BTCUSDT"])] == ["BTCUSDT"]


@pytest.mark.asyncio
async def test_fetch_reads_positions_and_orders_from_venue(venue):
    venue.positions = [live_position()]
    venue.open_orders = [resting_order(1, "TAKE_PROFIT_MARKET", "2400")]

    [active] = await fetch_active_positions(venue)

    assert active.exit_plan.target == Decimal("2400")
    assert venue.count("get_positions") == 1
    assert venue.count("get_open_orders") == 1
