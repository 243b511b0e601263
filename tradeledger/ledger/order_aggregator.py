"""
Order aggregator: folds ledger fills into order-level aggregates.

Aggregates are a read-time materialization over a bounded window of the
most recent fills; nothing here is persisted or cached. Each aggregate is
tagged ENTRY or EXIT once, here, from its net realized PnL.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from tradeledger.domain.models import Fill, LotKind, OrderAggregate
from tradeledger.domain.money import DECIMAL_PLACES, ZERO, truncate
from tradeledger.storage.repository import get_recent_fills

DEFAULT_FILL_WINDOW = 5000
DEFAULT_PNL_EPSILON = Decimal("1e-12")


def classify_lot(net_realized_pnl: Decimal, epsilon: Decimal = DEFAULT_PNL_EPSILON) -> LotKind:
    """ENTRY when |pnl| < epsilon, EXIT otherwise."""
    return LotKind.ENTRY if abs(net_realized_pnl) < epsilon else LotKind.EXIT


def order_key(fill: Fill) -> str:
    """Grouping key: the order id, or the fill's own venue id when the order id is absent."""
    if fill.order_id is not None:
        return str(fill.order_id)
    return f"trade-{fill.venue_trade_id}"


@dataclass
class _Accumulator:
    order_id: str
    symbol: str
    side: str
    first_time: datetime
    last_time: datetime
    avg_price: Decimal
    total_qty: Decimal = ZERO
    notional: Decimal = ZERO
    pnl: Decimal = ZERO
    fills: List[Fill] = field(default_factory=list)

    def add(self, fill: Fill, places: int) -> None:
        self.fills.append(fill)
        self.first_time = min(self.first_time, fill.time)
        self.last_time = max(self.last_time, fill.time)
        self.total_qty += fill.qty
        self.notional += fill.qty * fill.price
        # Keep the previous average while no quantity has accumulated
        if self.total_qty > 0:
            self.avg_price = truncate(self.notional / self.total_qty, places)
        self.pnl += fill.realized_pnl

    def freeze(self, epsilon: Decimal) -> OrderAggregate:
        return OrderAggregate(
            order_id=self.order_id,
            symbol=self.symbol,
            side=self.side,
            total_qty=self.total_qty,
            avg_price=self.avg_price,
            net_realized_pnl=self.pnl,
            first_time=self.first_time,
            last_time=self.last_time,
            kind=classify_lot(self.pnl, epsilon),
            fills=tuple(self.fills),
        )


def aggregate_fills(
    fills: Iterable[Fill],
    epsilon: Decimal = DEFAULT_PNL_EPSILON,
    places: int = DECIMAL_PLACES,
) -> List[OrderAggregate]:
    """
    Group fills by (symbol, order id) into aggregates, newest first by last fill time.

    Args:
        fills: Ledger fills in any order
        epsilon: PnL magnitude below which an aggregate is an entry lot
        places: Fractional digits kept for the weighted average price
    """
    groups: Dict[Tuple[str, str], _Accumulator] = {}
    for fill in fills:
        key = (fill.symbol, order_key(fill))
        acc = groups.get(key)
        if acc is None:
            acc = _Accumulator(
                order_id=key[1],
                symbol=fill.symbol,
                side=fill.side,
                first_time=fill.time,
                last_time=fill.time,
                avg_price=fill.price,
            )
            groups[key] = acc
        acc.add(fill, places)

    aggregates = [acc.freeze(epsilon) for acc in groups.values()]
    aggregates.sort(key=lambda a: a.last_time, reverse=True)
    return aggregates


def aggregate(
    portfolio_id: int,
    symbol: Optional[str] = None,
    *,
    window: int = DEFAULT_FILL_WINDOW,
    epsilon: Decimal = DEFAULT_PNL_EPSILON,
    places: int = DECIMAL_PLACES,
) -> List[OrderAggregate]:
    """Order aggregates over the most recent `window` fills of a portfolio (optionally one symbol)."""
    fills = get_recent_fills(portfolio_id, symbol=symbol, limit=window)
    return aggregate_fills(fills, epsilon=epsilon, places=places)
