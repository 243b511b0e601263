"""
Domain models for the ledger pipeline.

Fill and OrderEvent are the immutable ledger records written by the
synchronizer. Everything else is derived on read from the ledger or from
live venue state. All timestamps are UTC timezone-aware datetimes and all
money/quantity fields are Decimal.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from tradeledger.domain.money import ZERO


class Side(str, Enum):
    """Position direction."""
    LONG = "LONG"
    SHORT = "SHORT"


class LotKind(str, Enum):
    """Role of an order aggregate in lot matching."""
    ENTRY = "entry"  # opening movement, no realized PnL
    EXIT = "exit"    # closing movement, realized PnL booked


@dataclass(frozen=True)
class Credentials:
    """Venue credentials stored on a portfolio."""
    api_key: str
    api_secret: str = ""
    base_url: Optional[str] = None
    password: Optional[str] = None

    def is_usable(self) -> bool:
        return bool(self.api_key) and not self.api_key.startswith("${")


@dataclass(frozen=True)
class Portfolio:
    id: int
    name: str
    realized_pnl: Decimal = ZERO
    credentials: Optional[Credentials] = None
    is_visible: bool = True
    avatar: Optional[str] = None


# ---------------------------------------------------------------------------
# Ledger records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Fill:
    """One executed trade against the venue's book."""
    venue_trade_id: int
    order_id: Optional[int]
    symbol: str
    side: str  # venue side: BUY / SELL
    price: Decimal
    qty: Decimal
    realized_pnl: Decimal
    time: datetime
    commission: Decimal = ZERO
    commission_asset: str = ""
    margin_asset: str = ""
    quote_qty: Decimal = ZERO
    position_side: str = "BOTH"
    buyer: bool = False
    maker: bool = False
    portfolio_id: Optional[int] = None


@dataclass(frozen=True)
class OrderEvent:
    """Venue order status record."""
    order_id: int
    symbol: str
    status: str
    side: str
    type: str
    time: datetime
    update_time: datetime
    client_order_id: str = ""
    orig_type: str = ""
    price: Decimal = ZERO
    avg_price: Decimal = ZERO
    orig_qty: Decimal = ZERO
    executed_qty: Decimal = ZERO
    cum_quote: Decimal = ZERO
    stop_price: Decimal = ZERO
    time_in_force: str = ""
    working_type: str = ""
    reduce_only: bool = False
    close_position: bool = False
    price_protect: bool = False
    portfolio_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Live venue state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LivePosition:
    symbol: str
    position_amt: Decimal
    entry_price: Decimal
    mark_price: Decimal
    unrealized_pnl: Decimal
    leverage: Decimal
    update_time: Optional[datetime] = None
    position_side: str = "BOTH"


@dataclass(frozen=True)
class RestingOrder:
    order_id: Optional[int]
    symbol: str
    type: str
    side: str
    reduce_only: bool
    stop_price: Decimal


@dataclass(frozen=True)
class VenueBalance:
    available: Decimal
    total_margin: Decimal
    unrealized_pnl: Decimal
    wallet: Decimal = ZERO


# ---------------------------------------------------------------------------
# Derived read models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OrderAggregate:
    """
    Fills sharing one order id, folded together.

    `kind` is fixed when the aggregate is built: ENTRY when the net realized
    PnL is within epsilon of zero, EXIT otherwise.
    """
    order_id: str
    symbol: str
    side: str
    total_qty: Decimal
    avg_price: Decimal
    net_realized_pnl: Decimal
    first_time: datetime
    last_time: datetime
    kind: LotKind
    fills: Tuple[Fill, ...] = field(default_factory=tuple)

    @property
    def is_entry(self) -> bool:
        return self.kind == LotKind.ENTRY


@dataclass(frozen=True)
class CompletedPosition:
    side: Side
    entry_price: Decimal
    exit_price: Decimal
    quantity: Decimal
    pnl: Decimal
    symbol: str
    holding_time: timedelta
    created_at: datetime


@dataclass(frozen=True)
class ExitPlan:
    target: Decimal = ZERO
    stop: Decimal = ZERO


@dataclass(frozen=True)
class ActivePosition:
    side: Side
    symbol: str
    leverage: Decimal
    notional: Decimal
    entry_price: Decimal
    exit_plan: ExitPlan
    unrealized_pnl: Decimal
    created_at: datetime


@dataclass(frozen=True)
class BalanceSnapshot:
    """One point of the append-only valuation series."""
    portfolio_id: int
    available_balance: Decimal
    total_balance: Decimal
    total_pnl: Decimal
    created_at: datetime
    locked_margin: Decimal = ZERO
