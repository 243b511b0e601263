"""
Sync lease: serializes cycles for one (portfolio, symbol, stream).

The cursor-read → fetch → append protocol is not safe to run twice at once
for the same key, so each cycle holds a persisted lease for its duration.
The lease is released when the cycle ends (success or error); a crashed
holder's lease expires after its TTL.
"""
import asyncio
import os
import socket
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from tradeledger.exceptions import LeaseUnavailable
from tradeledger.monitoring.logger import get_logger
from tradeledger.storage.repository import acquire_lease, release_lease

logger = get_logger(__name__)


def lease_key(portfolio_id: int, symbol: str, stream: str) -> str:
    return f"sync:{stream}:{portfolio_id}:{symbol}"


def default_owner() -> str:
    """Unique holder id for this process/cycle."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@asynccontextmanager
async def sync_lease(key: str, ttl_seconds: int, owner: Optional[str] = None) -> AsyncIterator[str]:
    """
    Hold the lease `key` for the body of the block.

    Raises:
        LeaseUnavailable: another live cycle holds the lease
    """
    owner = owner or default_owner()
    acquired = await asyncio.to_thread(acquire_lease, key, owner, ttl_seconds)
    if not acquired:
        raise LeaseUnavailable(f"Sync lease busy: {key}")

    logger.debug("Sync lease acquired", key=key, owner=owner, ttl_seconds=ttl_seconds)
    try:
        yield owner
    finally:
        released = await asyncio.to_thread(release_lease, key, owner)
        if not released:
            logger.warning("Sync lease was taken over before release", key=key, owner=owner)
