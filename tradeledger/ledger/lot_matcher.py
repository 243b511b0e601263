"""
Lot matcher: rebuilds completed positions from entry/exit order aggregates.

Entries and exits are each sorted newest first by first fill time and
walked with two cursors. Each step matches min(remaining entry, remaining
exit) quantity and books the exit's PnL pro rata to the matched share, so
an exit's PnL is partitioned across the entries it meets, never
duplicated.

This pairs the most recent entry with the most recent exit. It is not
chronological FIFO lot accounting; the pairing is kept as is.
"""
from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from tradeledger.domain.models import CompletedPosition, OrderAggregate, Side
from tradeledger.domain.money import DECIMAL_PLACES, ZERO, truncate
from tradeledger.ledger.order_aggregator import (
    DEFAULT_FILL_WINDOW,
    DEFAULT_PNL_EPSILON,
    aggregate,
)
from tradeledger.monitoring.logger import get_logger
from tradeledger.storage.repository import get_portfolio

logger = get_logger(__name__)

DEFAULT_MAX_COMPLETED = 100


def infer_side(entry_price: Decimal, exit_price: Decimal, pnl: Decimal) -> Side:
    """
    Direction of a matched portion from its prices and PnL sign.

    Price up with a gain (or price down with a loss) was a long.
    """
    if exit_price >= entry_price:
        return Side.LONG if pnl >= 0 else Side.SHORT
    return Side.SHORT if pnl >= 0 else Side.LONG


def match_positions(
    symbol: str,
    aggregates: Sequence[OrderAggregate],
    places: int = DECIMAL_PLACES,
) -> List[CompletedPosition]:
    """
    Match one symbol's entry lots against its exit lots.

    Args:
        symbol: Symbol being matched; aggregates of other symbols are ignored
        aggregates: Order aggregates tagged ENTRY / EXIT
        places: Fractional digits kept for each PnL portion

    Returns:
        One CompletedPosition per matched portion, in match order (newest
        entry and exit lots first). Sorting by exit time across symbols and
        the result cap are applied by match_all.
    """
    lots = [a for a in aggregates if a.symbol == symbol]
    entries = sorted((a for a in lots if a.is_entry), key=lambda a: a.first_time, reverse=True)
    exits = sorted((a for a in lots if not a.is_entry), key=lambda a: a.first_time, reverse=True)

    entry_remaining = [a.total_qty for a in entries]
    exit_remaining = [a.total_qty for a in exits]
    exit_booked = [ZERO for _ in exits]

    results: List[CompletedPosition] = []
    ei = 0
    xi = 0
    while ei < len(entries) and xi < len(exits):
        match_qty = min(entry_remaining[ei], exit_remaining[xi])
        if match_qty <= 0:
            if entry_remaining[ei] <= 0:
                ei += 1
            if exit_remaining[xi] <= 0:
                xi += 1
            continue

        entry = entries[ei]
        exit_ = exits[xi]

        entry_remaining[ei] -= match_qty
        exit_remaining[xi] -= match_qty

        if exit_remaining[xi] <= 0:
            # Last slice of this exit takes the remainder, so truncation dust is not lost
            pnl = exit_.net_realized_pnl - exit_booked[xi]
        else:
            pnl = truncate(exit_.net_realized_pnl * match_qty / exit_.total_qty, places)
        exit_booked[xi] += pnl

        results.append(CompletedPosition(
            side=infer_side(entry.avg_price, exit_.avg_price, pnl),
            entry_price=entry.avg_price,
            exit_price=exit_.avg_price,
            quantity=match_qty,
            pnl=pnl,
            symbol=symbol,
            holding_time=exit_.last_time - entry.first_time,
            created_at=exit_.last_time,
        ))

        if entry_remaining[ei] <= 0:
            ei += 1
        if exit_remaining[xi] <= 0:
            xi += 1

    return results


def match_all(
    aggregates: Sequence[OrderAggregate],
    limit: int = DEFAULT_MAX_COMPLETED,
    places: int = DECIMAL_PLACES,
) -> List[CompletedPosition]:
    """Match every symbol, newest exit first, capped at `limit`."""
    by_symbol: Dict[str, List[OrderAggregate]] = defaultdict(list)
    for agg in aggregates:
        by_symbol[agg.symbol].append(agg)

    results: List[CompletedPosition] = []
    for symbol, group in by_symbol.items():
        results.extend(match_positions(symbol, group, places))

    results.sort(key=lambda p: p.created_at, reverse=True)
    return results[:limit]


def completed_positions(
    portfolio_id: int,
    symbol: Optional[str] = None,
    *,
    window: int = DEFAULT_FILL_WINDOW,
    epsilon: Decimal = DEFAULT_PNL_EPSILON,
    limit: int = DEFAULT_MAX_COMPLETED,
    places: int = DECIMAL_PLACES,
) -> List[CompletedPosition]:
    """Completed positions for a portfolio from its recent fill window. Empty for unknown portfolios."""
    if get_portfolio(portfolio_id) is None:
        logger.debug("Completed positions requested for unknown portfolio", portfolio_id=portfolio_id)
        return []

    aggregates = aggregate(portfolio_id, symbol, window=window, epsilon=epsilon, places=places)
    return match_all(aggregates, limit=limit, places=places)
