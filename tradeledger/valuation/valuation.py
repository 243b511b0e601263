"""
Valuation aggregator.

total = available + locked margin + unrealized PnL, where locked margin is
the sum of notional / leverage over active positions (leverage below 1 is
treated as 1).
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence

from tradeledger.config.config import VenueConfig
from tradeledger.data.venue_client import VenueClient, client_for_portfolio
from tradeledger.domain.models import ActivePosition, BalanceSnapshot, VenueBalance
from tradeledger.domain.money import ZERO, truncate
from tradeledger.exceptions import MissingCredentials
from tradeledger.monitoring.logger import get_logger
from tradeledger.positions.active_positions import fetch_active_positions
from tradeledger.storage.repository import get_portfolio, save_balance_snapshot

logger = get_logger(__name__)

ONE = Decimal("1")


@dataclass(frozen=True)
class Valuation:
    available: Decimal
    locked_margin: Decimal
    unrealized_pnl: Decimal

    @property
    def total(self) -> Decimal:
        return truncate(self.available + self.locked_margin + self.unrealized_pnl)


def effective_leverage(leverage: Decimal) -> Decimal:
    if not leverage.is_finite() or leverage < ONE:
        return ONE
    return leverage


def locked_margin(positions: Sequence[ActivePosition]) -> Decimal:
    total = ZERO
    for position in positions:
        total += truncate(position.notional / effective_leverage(position.leverage))
    return truncate(total)


def unrealized_pnl(positions: Sequence[ActivePosition]) -> Decimal:
    return truncate(sum((p.unrealized_pnl for p in positions), ZERO))


def compute_valuation(balance: VenueBalance, positions: Sequence[ActivePosition]) -> Valuation:
    return Valuation(
        available=balance.available,
        locked_margin=locked_margin(positions),
        unrealized_pnl=unrealized_pnl(positions),
    )


def build_snapshot(
    portfolio_id: int,
    balance: VenueBalance,
    positions: Sequence[ActivePosition],
    now: Optional[datetime] = None,
) -> BalanceSnapshot:
    """Pure snapshot construction; `total_pnl` holds the unrealized sum."""
    valuation = compute_valuation(balance, positions)
    return BalanceSnapshot(
        portfolio_id=portfolio_id,
        available_balance=valuation.available,
        total_balance=valuation.total,
        total_pnl=valuation.unrealized_pnl,
        created_at=now or datetime.now(timezone.utc),
        locked_margin=valuation.locked_margin,
    )


async def value_with_client(portfolio_id: int, client: VenueClient) -> BalanceSnapshot:
    balance, positions = await asyncio.gather(
        client.get_balance(),
        fetch_active_positions(client),
    )
    return build_snapshot(portfolio_id, balance, positions)


async def snapshot_valuation(
    portfolio_id: int,
    *,
    client: Optional[VenueClient] = None,
    venue_config: Optional[VenueConfig] = None,
) -> BalanceSnapshot:
    """
    Value a portfolio against live venue state and append one snapshot row.

    Raises:
        MissingCredentials: unknown portfolio or no usable credentials
        VenueUnavailable: a venue call failed; nothing is written
    """
    if client is None:
        portfolio = await asyncio.to_thread(get_portfolio, portfolio_id)
        if portfolio is None:
            raise MissingCredentials(f"Portfolio {portfolio_id} not found")
        async with client_for_portfolio(portfolio, venue_config) as owned:
            snapshot = await value_with_client(portfolio_id, owned)
    else:
        snapshot = await value_with_client(portfolio_id, client)

    await asyncio.to_thread(save_balance_snapshot, snapshot)
    logger.info(
        "Balance snapshot saved",
        portfolio_id=portfolio_id,
        available=str(snapshot.available_balance),
        locked_margin=str(snapshot.locked_margin),
        unrealized=str(snapshot.total_pnl),
        total=str(snapshot.total_balance),
    )
    return snapshot
