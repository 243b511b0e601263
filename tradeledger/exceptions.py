"""
Exception hierarchy for the ledger reconciliation pipeline.

Hierarchy:

    TradeLedgerError (base)
    ├── OperationalError      : transient (venue, network, timeouts)
    │   ├── VenueUnavailable  : venue call failed or timed out
    │   └── LeaseUnavailable  : another cycle holds the sync lease
    ├── DataError             : bad data, skip record/symbol
    │   └── MalformedVenueResponse
    └── MissingCredentials    : portfolio has no usable venue credentials

Rules:
    - OperationalError: log, abort the current page/cycle, next schedule retries
    - DataError: coerce or drop the record; an unreadable body aborts the page like an outage
    - MissingCredentials: skip the portfolio silently for this cycle
    - Everything else (AttributeError, TypeError, etc.): let it propagate.
"""


class TradeLedgerError(Exception):
    """Base exception for all ledger errors."""
    pass


# ============ OPERATIONAL (transient) ============

class OperationalError(TradeLedgerError):
    """Transient error: venue API, network, timeouts.

    Treatment: log, abort the current page, continue with the next symbol.
    """
    pass


class VenueUnavailable(OperationalError):
    """Venue call failed (connection error, non-2xx status or timeout)."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class LeaseUnavailable(OperationalError):
    """A sync cycle for the same (portfolio, symbol) is already running."""
    pass


# ============ DATA (bad input) ============

class DataError(TradeLedgerError):
    """Bad data from the venue or the store."""
    pass


class MalformedVenueResponse(DataError):
    """Venue payload does not have the expected shape."""
    pass


# ============ CONFIGURATION ============

class MissingCredentials(TradeLedgerError):
    """Portfolio has no credentials; skipped for this cycle."""
    pass
