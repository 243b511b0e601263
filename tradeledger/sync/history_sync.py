"""
History synchronizer: incremental, idempotent ingestion of venue fills and
order events into the ledger.

Per (portfolio, symbol) and stream, the cursor is the highest stored venue
id. Each page requests `from_id = cursor + 1`, drops anything at or below
the cursor, appends the rest (fills also add their realized PnL to the
portfolio counter in the same write), then advances the cursor. A short
page means the tip was reached.

A venue failure aborts the current page only. Pages already written stay
written; the failed page writes nothing. No retries here: the scheduler
re-runs the cycle, which is safe because ingestion is keyed on venue id.
"""
import asyncio
import dataclasses
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from tradeledger.data.venue_client import VenueClient
from tradeledger.domain.models import Fill, OrderEvent
from tradeledger.exceptions import DataError, OperationalError
from tradeledger.monitoring.logger import get_logger
from tradeledger.storage.repository import (
    append_fills,
    append_order_events,
    get_max_fill_id,
    get_max_order_id,
)
from tradeledger.sync.lease import lease_key, sync_lease

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 300

T = TypeVar("T")


def fresh_records(records: Sequence[T], cursor: Optional[int], record_id: Callable[[T], int]) -> List[T]:
    """
    Records strictly above the cursor, ascending by id, without duplicates.

    Guards against venues whose `fromId` boundary is inclusive.
    """
    seen = set()
    fresh = []
    for record in sorted(records, key=record_id):
        rid = record_id(record)
        if cursor is not None and rid <= cursor:
            continue
        if rid in seen:
            continue
        seen.add(rid)
        fresh.append(record)
    return fresh


class HistorySynchronizer:
    """
    Pulls unseen fills / order events for one portfolio.

    Args:
        client: Venue client bound to the portfolio's credentials
        portfolio_id: Ledger owner
        page_size: Records requested per venue call
        lease_ttl_seconds: Expiry of the per-(portfolio, symbol) lease
    """

    def __init__(
        self,
        client: VenueClient,
        portfolio_id: int,
        page_size: int = DEFAULT_PAGE_SIZE,
        lease_ttl_seconds: int = 600,
    ):
        self.client = client
        self.portfolio_id = portfolio_id
        self.page_size = page_size
        self.lease_ttl_seconds = lease_ttl_seconds

    async def sync_fills(self, symbol: str) -> int:
        """Ingest new fills for `symbol`. Returns the number of rows stored."""
        async with sync_lease(lease_key(self.portfolio_id, symbol, "fills"), self.lease_ttl_seconds):
            cursor = await asyncio.to_thread(get_max_fill_id, self.portfolio_id, symbol)
            return await self._paginate(
                stream="fills",
                symbol=symbol,
                cursor=cursor,
                fetch=lambda from_id: self.client.get_fills(symbol, from_id=from_id, limit=self.page_size),
                record_id=lambda f: f.venue_trade_id,
                apply=lambda page: self._apply_fills(symbol, page),
            )

    async def sync_orders(self, symbol: str) -> int:
        """Ingest new order events for `symbol`. Returns the number of rows stored."""
        async with sync_lease(lease_key(self.portfolio_id, symbol, "orders"), self.lease_ttl_seconds):
            cursor = await asyncio.to_thread(get_max_order_id, self.portfolio_id, symbol)
            return await self._paginate(
                stream="orders",
                symbol=symbol,
                cursor=cursor,
                fetch=lambda from_id: self.client.get_order_events(symbol, from_id=from_id, limit=self.page_size),
                record_id=lambda e: e.order_id,
                apply=lambda page: self._apply_order_events(symbol, page),
            )

    async def _paginate(
        self,
        *,
        stream: str,
        symbol: str,
        cursor: Optional[int],
        fetch: Callable[[Optional[int]], Awaitable[Sequence[T]]],
        record_id: Callable[[T], int],
        apply: Callable[[List[T]], Awaitable[int]],
    ) -> int:
        stored = 0
        pages = 0
        log = logger.bind(portfolio_id=self.portfolio_id, symbol=symbol, stream=stream)

        while True:
            from_id = cursor + 1 if cursor is not None else None
            try:
                records = await fetch(from_id)
            except (OperationalError, DataError) as e:
                log.warning(
                    "Sync page aborted",
                    from_id=from_id,
                    pages_applied=pages,
                    stored=stored,
                    error=str(e),
                )
                raise

            fresh = fresh_records(records, cursor, record_id)
            if not fresh:
                break

            stored += await apply(fresh)
            pages += 1
            cursor = record_id(fresh[-1])

            log.debug("Sync page applied", page=pages, fresh=len(fresh), cursor=cursor)

            # Also short when the client dropped undecodable rows or the venue
            # repeated the boundary record. The cycle then ends early and the
            # next one resumes from the cursor.
            if len(fresh) < self.page_size:
                break

        if stored:
            log.info("History synced", stored=stored, pages=pages, cursor=cursor)
        return stored

    async def _apply_fills(self, symbol: str, page: List[Fill]) -> int:
        page = [dataclasses.replace(f, symbol=symbol, portfolio_id=self.portfolio_id) for f in page]
        count, delta = await asyncio.to_thread(append_fills, self.portfolio_id, page)
        if delta:
            logger.info(
                "Realized PnL ingested",
                portfolio_id=self.portfolio_id,
                symbol=symbol,
                fills=count,
                realized_pnl_delta=str(delta),
            )
        return count

    async def _apply_order_events(self, symbol: str, page: List[OrderEvent]) -> int:
        page = [dataclasses.replace(e, symbol=symbol, portfolio_id=self.portfolio_id) for e in page]
        return await asyncio.to_thread(append_order_events, self.portfolio_id, page)
