"""
Active position deriver: live venue positions enriched with their exit plan.

For every symbol with a nonzero live amount, the first resting reduce-only
take-profit order gives the target and the first resting reduce-only stop
order gives the stop. Missing or malformed optional fields fall back to 0;
this module never raises on bad venue data.
"""
import asyncio
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from tradeledger.config.config import VenueConfig
from tradeledger.data.venue_client import VenueClient, client_for_portfolio
from tradeledger.domain.models import (
    ActivePosition,
    ExitPlan,
    LivePosition,
    RestingOrder,
    Side,
)
from tradeledger.domain.money import ZERO, truncate
from tradeledger.exceptions import MissingCredentials
from tradeledger.monitoring.logger import get_logger
from tradeledger.storage.repository import get_portfolio

logger = get_logger(__name__)


def is_take_profit(order: RestingOrder) -> bool:
    return "TAKE_PROFIT" in order.type.upper()


def is_stop_loss(order: RestingOrder) -> bool:
    order_type = order.type.upper()
    return "STOP" in order_type and "TAKE_PROFIT" not in order_type


def exit_plan_for(orders: Iterable[RestingOrder]) -> ExitPlan:
    """Exit plan from the first reduce-only TP and SL orders (0 when absent)."""
    target: Optional[RestingOrder] = None
    stop: Optional[RestingOrder] = None
    for order in orders:
        if not order.reduce_only:
            continue
        if target is None and is_take_profit(order):
            target = order
        elif stop is None and is_stop_loss(order):
            stop = order
    return ExitPlan(
        target=target.stop_price if target else ZERO,
        stop=stop.stop_price if stop else ZERO,
    )


def build_active_position(
    position: LivePosition,
    orders: Sequence[RestingOrder],
    now: Optional[datetime] = None,
) -> Optional[ActivePosition]:
    """Active view of one live position; None when the position is flat."""
    amount = position.position_amt
    if amount == 0:
        return None

    symbol_orders = [o for o in orders if o.symbol == position.symbol]
    return ActivePosition(
        side=Side.LONG if amount > 0 else Side.SHORT,
        symbol=position.symbol,
        leverage=position.leverage,
        notional=truncate(abs(amount) * position.mark_price),
        entry_price=position.entry_price,
        exit_plan=exit_plan_for(symbol_orders),
        unrealized_pnl=position.unrealized_pnl,
        created_at=position.update_time or now or datetime.now(timezone.utc),
    )


def build_active_positions(
    positions: Sequence[LivePosition],
    orders: Sequence[RestingOrder],
    symbols: Optional[Iterable[str]] = None,
) -> List[ActivePosition]:
    """Active views for all nonzero positions, optionally limited to `symbols`."""
    allowed = set(symbols) if symbols is not None else None
    now = datetime.now(timezone.utc)
    result = []
    for position in positions:
        if allowed is not None and position.symbol not in allowed:
            continue
        active = build_active_position(position, orders, now)
        if active is not None:
            result.append(active)
    return result


async def fetch_active_positions(client: VenueClient, symbols: Optional[Iterable[str]] = None) -> List[ActivePosition]:
    """Fetch positions and resting orders in parallel and derive active positions."""
    positions, orders = await asyncio.gather(
        client.get_positions(),
        client.get_open_orders(),
    )
    return build_active_positions(positions, orders, symbols)


async def derive_active_positions(
    portfolio_id: int,
    *,
    client: Optional[VenueClient] = None,
    symbols: Optional[Iterable[str]] = None,
    venue_config: Optional[VenueConfig] = None,
) -> List[ActivePosition]:
    """
    Active positions of a portfolio.

    Without `client`, one is built from the stored credentials and
    `venue_config` (base URL fallback and timeouts).

    Unknown portfolios and portfolios without credentials yield an empty
    list. Venue failures (VenueUnavailable) propagate.
    """
    if client is not None:
        return await fetch_active_positions(client, symbols)

    portfolio = await asyncio.to_thread(get_portfolio, portfolio_id)
    if portfolio is None:
        return []
    try:
        owned = client_for_portfolio(portfolio, venue_config)
    except MissingCredentials:
        logger.debug("Skipping active positions, no credentials", portfolio_id=portfolio_id)
        return []

    async with owned:
        return await fetch_active_positions(owned, symbols)
