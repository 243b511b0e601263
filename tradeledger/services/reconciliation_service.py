"""
Reconciliation service: runs the pipeline across portfolios.

- sync_portfolio / sync_all: fill and order history per tradable symbol
- snapshot_all: one balance snapshot per portfolio with credentials
- portfolio_overview / overview_all: read model for visible portfolios

Failures are isolated. A venue outage or a busy lease on one symbol or stream never
blocks the others, and a portfolio without credentials is skipped.
"""
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

from tradeledger.config.config import Config
from tradeledger.data.venue_client import VenueClient, client_for_portfolio
from tradeledger.domain.models import (
    ActivePosition,
    BalanceSnapshot,
    CompletedPosition,
    Portfolio,
)
from tradeledger.exceptions import DataError, LeaseUnavailable, MissingCredentials, OperationalError
from tradeledger.ledger.lot_matcher import completed_positions
from tradeledger.monitoring.logger import get_logger
from tradeledger.positions.active_positions import fetch_active_positions
from tradeledger.storage.repository import (
    get_balance_snapshots,
    get_portfolio,
    get_portfolios,
    get_trading_symbols,
)
from tradeledger.sync.history_sync import HistorySynchronizer
from tradeledger.valuation.valuation import compute_valuation, snapshot_valuation

logger = get_logger(__name__)

ClientFactory = Callable[[Portfolio], VenueClient]


def _note(symbols: List[str], symbol: str) -> None:
    if symbol not in symbols:
        symbols.append(symbol)


@dataclass
class SyncSummary:
    """Outcome of one sync cycle for a portfolio."""
    portfolio_id: int
    fills: int = 0
    orders: int = 0
    failed: List[str] = field(default_factory=list)
    busy: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class PortfolioOverview:
    portfolio_id: int
    name: str
    avatar: Optional[str]
    realized_pnl: Decimal
    unrealized_pnl: Decimal
    locked_margin: Decimal
    total_balance: Decimal
    available_balance: Decimal
    snapshots: List[BalanceSnapshot]
    active_positions: List[ActivePosition]
    completed_positions: List[CompletedPosition]


class ReconciliationService:
    """
    Drives synchronization, valuation and reporting for all portfolios.

    Args:
        config: Validated application config
        client_factory: Builds a venue client for a portfolio. Defaults to
            the portfolio's stored credentials.
    """

    def __init__(self, config: Config, client_factory: Optional[ClientFactory] = None):
        self.config = config
        self.client_factory = client_factory or (lambda p: client_for_portfolio(p, config.venue))
        self._semaphore = asyncio.Semaphore(config.sync.max_concurrency)

    async def sync_portfolio(self, portfolio_id: int) -> SyncSummary:
        """Sync fills and order events for every tradable symbol concurrently."""
        summary = SyncSummary(portfolio_id=portfolio_id)

        portfolio = await asyncio.to_thread(get_portfolio, portfolio_id)
        if portfolio is None:
            logger.warning("Sync requested for unknown portfolio", portfolio_id=portfolio_id)
            return summary

        try:
            client = self.client_factory(portfolio)
        except MissingCredentials:
            logger.info("Skipping portfolio sync, no credentials", portfolio_id=portfolio_id)
            return summary

        symbols = await asyncio.to_thread(get_trading_symbols)
        synchronizer = HistorySynchronizer(
            client,
            portfolio_id,
            page_size=self.config.sync.page_size,
            lease_ttl_seconds=self.config.sync.lease_ttl_seconds,
        )

        async with client:
            await asyncio.gather(*(self._sync_symbol(synchronizer, symbol, summary) for symbol in symbols))

        logger.info(
            "Portfolio sync complete",
            portfolio_id=portfolio_id,
            symbols=len(symbols),
            fills=summary.fills,
            orders=summary.orders,
            failed=summary.failed,
            busy=summary.busy,
        )
        return summary

    async def _sync_symbol(self, synchronizer: HistorySynchronizer, symbol: str, summary: SyncSummary) -> None:
        async with self._semaphore:
            summary.fills += await self._sync_stream("fills", synchronizer.sync_fills, symbol, summary)
            summary.orders += await self._sync_stream("orders", synchronizer.sync_orders, symbol, summary)

    async def _sync_stream(
        self,
        stream: str,
        sync: Callable[[str], Awaitable[int]],
        symbol: str,
        summary: SyncSummary,
    ) -> int:
        """Run one stream for one symbol. Fills and orders have separate cursors and leases."""
        try:
            return await sync(symbol)
        except LeaseUnavailable:
            logger.debug(
                "Stream sync already running",
                portfolio_id=summary.portfolio_id,
                symbol=symbol,
                stream=stream,
            )
            _note(summary.busy, symbol)
        except (OperationalError, DataError) as e:
            logger.warning(
                "Stream sync failed",
                portfolio_id=summary.portfolio_id,
                symbol=symbol,
                stream=stream,
                error=str(e),
            )
            _note(summary.failed, symbol)
        return 0

    async def sync_all(self) -> List[SyncSummary]:
        portfolios = await asyncio.to_thread(get_portfolios)
        return list(await asyncio.gather(*(self.sync_portfolio(p.id) for p in portfolios)))

    async def snapshot_portfolio(self, portfolio: Portfolio) -> Optional[BalanceSnapshot]:
        try:
            client = self.client_factory(portfolio)
        except MissingCredentials:
            return None

        try:
            async with client:
                return await snapshot_valuation(portfolio.id, client=client)
        except (OperationalError, DataError) as e:
            logger.warning("Balance snapshot failed", portfolio_id=portfolio.id, error=str(e))
            return None

    async def snapshot_all(self) -> Dict[int, BalanceSnapshot]:
        """One snapshot per portfolio with credentials. Returns the rows written."""
        portfolios = await asyncio.to_thread(get_portfolios)
        results = await asyncio.gather(*(self.snapshot_portfolio(p) for p in portfolios))
        written = {p.id: s for p, s in zip(portfolios, results) if s is not None}
        logger.info("Balance snapshots written", portfolios=len(portfolios), written=len(written))
        return written

    async def portfolio_overview(self, portfolio_id: int) -> Optional[PortfolioOverview]:
        """
        Read model for one portfolio.

        None for unknown, hidden or credential-less portfolios. Balance and
        active positions come from live venue state, completed positions and
        snapshot history from the ledger.
        """
        portfolio = await asyncio.to_thread(get_portfolio, portfolio_id)
        if portfolio is None or not portfolio.is_visible:
            return None

        try:
            client = self.client_factory(portfolio)
        except MissingCredentials:
            return None

        async with client:
            balance, active = await asyncio.gather(
                client.get_balance(),
                fetch_active_positions(client),
            )

        ledger = self.config.ledger
        completed, snapshots = await asyncio.gather(
            asyncio.to_thread(
                completed_positions,
                portfolio_id,
                window=ledger.fill_window,
                epsilon=ledger.pnl_epsilon,
                limit=ledger.max_completed_positions,
                places=ledger.decimal_places,
            ),
            asyncio.to_thread(get_balance_snapshots, portfolio_id),
        )

        valuation = compute_valuation(balance, active)
        return PortfolioOverview(
            portfolio_id=portfolio.id,
            name=portfolio.name,
            avatar=portfolio.avatar,
            realized_pnl=portfolio.realized_pnl,
            unrealized_pnl=valuation.unrealized_pnl,
            locked_margin=valuation.locked_margin,
            total_balance=valuation.total,
            available_balance=valuation.available,
            snapshots=snapshots,
            active_positions=active,
            completed_positions=completed,
        )

    async def overview_all(self) -> List[PortfolioOverview]:
        """Overviews for visible portfolios. A portfolio whose venue is down is left out."""
        portfolios = await asyncio.to_thread(get_portfolios)

        async def _one(portfolio_id: int) -> Optional[PortfolioOverview]:
            try:
                return await self.portfolio_overview(portfolio_id)
            except (OperationalError, DataError) as e:
                logger.warning("Portfolio overview failed", portfolio_id=portfolio_id, error=str(e))
                return None

        results = await asyncio.gather(*(_one(p.id) for p in portfolios if p.is_visible))
        return [r for r in results if r is not None]
