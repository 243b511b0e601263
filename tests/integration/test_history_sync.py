from decimal import Decimal

import pytest

from conftest import FakeVenue, make_fill, make_order_event
from tradeledger.exceptions import LeaseUnavailable, VenueUnavailable
from tradeledger.storage.repository import (
    acquire_lease,
    count_fills,
    count_order_events,
    get_max_fill_id,
    get_max_order_id,
    get_portfolio,
)
from tradeledger.sync.history_sync import HistorySynchronizer, fresh_records
from tradeledger.sync.lease import lease_key


def _seed(venue, total, symbol="BTCUSDT", pnl="0.1"):
    venue.fills[symbol] = [make_fill(i, i, symbol=symbol, pnl=pnl, minutes=i) for i in range(1, total + 1)]


def test_fresh_records_drops_cursor_and_duplicates():
    fills = [make_fill(5, 1), make_fill(3, 1), make_fill(4, 1), make_fill(4, 1)]
    assert [f.venue_trade_id for f in fresh_records(fills, 3, lambda f: f.venue_trade_id)] == [4, 5]
    assert [f.venue_trade_id for f in fresh_records(fills, None, lambda f: f.venue_trade_id)] == [3, 4, 5]


@pytest.mark.asyncio
async def test_pagination_stops_on_short_page(portfolio, venue):
    _seed(venue, 650)
    sync = HistorySynchronizer(venue, portfolio.id, page_size=300)

    stored = await sync.sync_fills("BTCUSDT")

    assert stored == 650
    assert venue.count("get_fills") == 3
    assert [c[2] for c in venue.calls] == [None, 301, 601]
    assert get_max_fill_id(portfolio.id, "BTCUSDT") == 650
    assert get_portfolio(portfolio.id).realized_pnl == Decimal("65")


@pytest.mark.asyncio
async def test_replay_is_idempotent(portfolio, venue):
    _seed(venue, 40)
    sync = HistorySynchronizer(venue, portfolio.id, page_size=300)

    assert await sync.sync_fills("BTCUSDT") == 40
    assert await sync.sync_fills("BTCUSDT") == 0

    assert count_fills(portfolio.id, "BTCUSDT") == 40
    assert get_portfolio(portfolio.id).realized_pnl == Decimal("4")


@pytest.mark.asyncio
async def test_inclusive_venue_boundary_is_filtered(portfolio):
    venue = FakeVenue(inclusive_overlap=True)
    _seed(venue, 10)
    sync = HistorySynchronizer(venue, portfolio.id, page_size=4)

    # The repeated boundary record makes the second page short, so the cycle
    # stops early and the next one picks up the rest
    assert await sync.sync_fills("BTCUSDT") == 7
    assert await sync.sync_fills("BTCUSDT") == 3
    assert await sync.sync_fills("BTCUSDT") == 0
    assert count_fills(portfolio.id) == 10


class DroppingVenue(FakeVenue):
    """Venue whose pages contain rows the client cannot decode and drops."""

    def __init__(self, undecodable):
        super().__init__()
        self.undecodable = set(undecodable)

    async def get_fills(self, symbol, from_id=None, limit=500):
        page = await super().get_fills(symbol, from_id=from_id, limit=limit)
        return [f for f in page if f.venue_trade_id not in self.undecodable]


@pytest.mark.asyncio
async def test_dropped_row_ends_the_cycle_and_next_cycle_resumes(portfolio):
    venue = DroppingVenue(undecodable={3})
    _seed(venue, 10)
    sync = HistorySynchronizer(venue, portfolio.id, page_size=4)

    assert await sync.sync_fills("BTCUSDT") == 3
    assert venue.count("get_fills") == 1
    assert get_max_fill_id(portfolio.id, "BTCUSDT") == 4

    assert await sync.sync_fills("BTCUSDT") == 6
    assert [c[2] for c in venue.calls] == [None, 5, 9]
    assert count_fills(portfolio.id) == 9


@pytest.mark.asyncio
async def test_cursor_only_moves_forward(portfolio, venue):
    _seed(venue, 5)
    sync = HistorySynchronizer(venue, portfolio.id, page_size=300)
    await sync.sync_fills("BTCUSDT")

    # The venue re-reports a stored id next to a new one
    venue.fills["BTCUSDT"].append(make_fill(3, 3))
    venue.fills["BTCUSDT"].append(make_fill(6, 6, pnl="1"))
    await sync.sync_fills("BTCUSDT")

    assert get_max_fill_id(portfolio.id, "BTCUSDT") == 6
    assert count_fills(portfolio.id) == 6


@pytest.mark.asyncio
async def test_failed_page_keeps_earlier_pages_and_applies_nothing_else(portfolio, venue):
    _seed(venue, 650, pnl="1")
    venue.fail_after["get_fills"] = 1
    sync = HistorySynchronizer(venue, portfolio.id, page_size=300)

    with pytest.raises(VenueUnavailable):
        await sync.sync_fills("BTCUSDT")

    assert count_fills(portfolio.id) == 300
    assert get_portfolio(portfolio.id).realized_pnl == Decimal("300")

    # Next scheduled run resumes from the stored cursor
    venue.fail_after.clear()
    assert await sync.sync_fills("BTCUSDT") == 350
    assert venue.calls[-2][2] == 301
    assert get_portfolio(portfolio.id).realized_pnl == Decimal("650")


@pytest.mark.asyncio
async def test_symbols_use_independent_cursors(portfolio, venue):
    _seed(venue, 3, symbol="BTCUSDT")
    _seed(venue, 7, symbol="ETHUSDT")
    sync = HistorySynchronizer(venue, portfolio.id)

    await sync.sync_fills("BTCUSDT")
    await sync.sync_fills("ETHUSDT")

    assert get_max_fill_id(portfolio.id, "BTCUSDT") == 3
    assert get_max_fill_id(portfolio.id, "ETHUSDT") == 7


@pytest.mark.asyncio
async def test_order_events_sync(portfolio, venue):
    venue.order_events["BTCUSDT"] = [make_order_event(i) for i in (10, 20, 30)]
    sync = HistorySynchronizer(venue, portfolio.id, page_size=2)

    assert await sync.sync_orders("BTCUSDT") == 3
    assert await sync.sync_orders("BTCUSDT") == 0
    assert get_max_order_id(portfolio.id, "BTCUSDT") == 30
    assert count_order_events(portfolio.id) == 3
    # Order events carry no PnL
    assert get_portfolio(portfolio.id).realized_pnl == Decimal("0")


@pytest.mark.asyncio
async def test_busy_lease_skips_the_cycle(portfolio, venue):
    _seed(venue, 5)
    acquire_lease(lease_key(portfolio.id, "BTCUSDT", "fills"), "other-worker", 600)
    sync = HistorySynchronizer(venue, portfolio.id)

    with pytest.raises(LeaseUnavailable):
        await sync.sync_fills("BTCUSDT")

    assert venue.calls == []
    assert count_fills(portfolio.id) == 0


@pytest.mark.asyncio
async def test_lease_is_released_after_failure(portfolio, venue):
    _seed(venue, 5)
    venue.fail_after["get_fills"] = 0
    sync = HistorySynchronizer(venue, portfolio.id)

    with pytest.raises(VenueUnavailable):
        await sync.sync_fills("BTCUSDT")

    venue.fail_after.clear()
    assert await sync.sync_fills("BTCUSDT") == 5
