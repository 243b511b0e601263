"""
Pytest configuration and shared fixtures.
"""
import os

# Unit tests never reach a real database; anything that does use one goes
# through the `db` fixture below, which points at a temporary SQLite file.
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tradeledger.domain.models import Fill, LivePosition, OrderEvent, RestingOrder, VenueBalance
from tradeledger.exceptions import VenueUnavailable
from tradeledger.storage.db import close_db, init_db
from tradeledger.storage.repository import add_symbol, create_portfolio

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_fill(trade_id, order_id=None, *, symbol="BTCUSDT", price="100", qty="1", pnl="0", minutes=0, side="BUY"):
    return Fill(
        venue_trade_id=trade_id,
        order_id=order_id,
        symbol=symbol,
        side=side,
        price=Decimal(price),
        qty=Decimal(qty),
        realized_pnl=Decimal(pnl),
        time=T0 + timedelta(minutes=minutes),
    )


def make_order_event(order_id, *, symbol="BTCUSDT", status="FILLED", minutes=0):
    created = T0 + timedelta(minutes=minutes)
    return OrderEvent(
        order_id=order_id,
        symbol=symbol,
        status=status,
        side="BUY",
        type="MARKET",
        time=created,
        update_time=created,
    )


class FakeVenue:
    """
    In-memory venue with the VenueClient interface.

    History endpoints page by id starting at `from_id`. `fail_after` maps a
    method name to the number of successful calls before it starts raising
    VenueUnavailable; `down_symbols` always fail.
    """

    def __init__(self, inclusive_overlap=False):
        self.fills = {}
        self.order_events = {}
        self.positions = []
        self.open_orders = []
        self.balance = VenueBalance(available=Decimal("0"), total_margin=Decimal("0"), unrealized_pnl=Decimal("0"))
        self.fail_after = {}
        self.down_symbols = set()
        self.inclusive_overlap = inclusive_overlap
        self.calls = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True

    def _record(self, method, *args):
        self.calls.append((method,) + args)
        made = sum(1 for c in self.calls if c[0] == method)
        limit = self.fail_after.get(method)
        if limit is not None and made > limit:
            raise VenueUnavailable(f"{method} unavailable")
        if args and args[0] in self.down_symbols:
            raise VenueUnavailable(f"{args[0]} unavailable")

    def _page(self, records, record_id, from_id, limit):
        start = from_id
        if start is not None and self.inclusive_overlap:
            # Venues with an off-by-one boundary repeat the last record
            start -= 1
        rows = sorted(records, key=record_id)
        if start is not None:
            rows = [r for r in rows if record_id(r) >= start]
        return rows[:limit]

    async def get_fills(self, symbol, from_id=None, limit=500):
        self._record("get_fills", symbol, from_id)
        return self._page(self.fills.get(symbol, []), lambda f: f.venue_trade_id, from_id, limit)

    async def get_order_events(self, symbol, from_id=None, limit=500):
        self._record("get_order_events", symbol, from_id)
        return self._page(self.order_events.get(symbol, []), lambda e: e.order_id, from_id, limit)

    async def get_positions(self, symbol=None):
        self._record("get_positions")
        return [p for p in self.positions if symbol is None or p.symbol == symbol]

    async def get_open_orders(self, symbol=None):
        self._record("get_open_orders")
        return [o for o in self.open_orders if symbol is None or o.symbol == symbol]

    async def get_balance(self):
        self._record("get_balance")
        return self.balance

    def count(self, method):
        return sum(1 for c in self.calls if c[0] == method)


@pytest.fixture
def venue():
    return FakeVenue()


@pytest.fixture
def db(tmp_path):
    """Fresh SQLite ledger per test."""
    database = init_db(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield database
    close_db()


@pytest.fixture
def portfolio(db):
    add_symbol("BTCUSDT", "Bitcoin")
    add_symbol("ETHUSDT", "Ethereum")
    return create_portfolio("Alpha", {"apiKey": "test-key", "apiSecret": "test-secret"})


def live_position(symbol="BTCUSDT", amt="0.5", entry="1900", mark="2000", pnl="-20", leverage="10", updated=None):
    return LivePosition(
        symbol=symbol,
        position_amt=Decimal(amt),
        entry_price=Decimal(entry),
        mark_price=Decimal(mark),
        unrealized_pnl=Decimal(pnl),
        leverage=Decimal(leverage),
        update_time=updated,
    )


def resting_order(order_id, order_type, stop_price, *, symbol="BTCUSDT", reduce_only=True):
    return RestingOrder(
        order_id=order_id,
        symbol=symbol,
        type=order_type,
        side="SELL",
        reduce_only=reduce_only,
        stop_price=Decimal(stop_price),
    )
