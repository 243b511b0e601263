"""
Persistence functions for the execution ledger.

Provides repository functions over the ORM models: append-only fill and
order-event rows keyed by (portfolio, symbol, venue id), the portfolio
realized-PnL counter, balance snapshots and sync leases.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.exc import IntegrityError

from tradeledger.domain.models import (
    BalanceSnapshot,
    Credentials,
    Fill,
    OrderEvent,
    Portfolio,
)
from tradeledger.domain.money import ZERO, to_decimal
from tradeledger.monitoring.logger import get_logger
from tradeledger.storage.db import Base, get_db

logger = get_logger(__name__)

_MONEY = Numeric(precision=28, scale=8)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the store."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ORM Models
class PortfolioModel(Base):
    """Portfolio with its venue credentials and cumulative realized PnL."""
    __tablename__ = "portfolios"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    avatar = Column(String, nullable=True)
    realized_pnl = Column(_MONEY, nullable=False, default=Decimal("0"))
    credentials = Column(JSON, nullable=True)
    is_visible = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class SymbolModel(Base):
    """Tradable symbol universe."""
    __tablename__ = "symbols"

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False, default="")
    can_trade = Column(Boolean, nullable=False, default=True)


class FillModel(Base):
    """Ledger row per venue fill."""
    __tablename__ = "fills"
    __table_args__ = (
        UniqueConstraint("portfolio_id", "symbol", "venue_trade_id", name="uq_fill_venue_id"),
        Index("idx_fill_portfolio_time", "portfolio_id", "time"),
        Index("idx_fill_portfolio_symbol_time", "portfolio_id", "symbol", "time"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    portfolio_id = Column(Integer, ForeignKey("portfolios.id"), nullable=False)
    venue_trade_id = Column(BigInteger, nullable=False)
    order_id = Column(BigInteger, nullable=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    price = Column(_MONEY, nullable=False)
    qty = Column(_MONEY, nullable=False)
    realized_pnl = Column(_MONEY, nullable=False)
    commission = Column(_MONEY, nullable=False)
    commission_asset = Column(String, nullable=False, default="")
    margin_asset = Column(String, nullable=False, default="")
    quote_qty = Column(_MONEY, nullable=False)
    time = Column(DateTime(timezone=True), nullable=False)
    position_side = Column(String, nullable=False)
    buyer = Column(Boolean, nullable=False)
    maker = Column(Boolean, nullable=False)


class OrderEventModel(Base):
    """Ledger row per venue order-history record."""
    __tablename__ = "order_events"
    __table_args__ = (
        UniqueConstraint("portfolio_id", "symbol", "order_id", name="uq_order_event_venue_id"),
        Index("idx_order_event_portfolio_time", "portfolio_id", "time"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    portfolio_id = Column(Integer, ForeignKey("portfolios.id"), nullable=False)
    order_id = Column(BigInteger, nullable=False)
    symbol = Column(String, nullable=False)
    status = Column(String, nullable=False)
    client_order_id = Column(String, nullable=False, default="")
    side = Column(String, nullable=False)
    type = Column(String, nullable=False)
    orig_type = Column(String, nullable=False, default="")
    price = Column(_MONEY, nullable=False)
    avg_price = Column(_MONEY, nullable=False)
    orig_qty = Column(_MONEY, nullable=False)
    executed_qty = Column(_MONEY, nullable=False)
    cum_quote = Column(_MONEY, nullable=False)
    stop_price = Column(_MONEY, nullable=False)
    time_in_force = Column(String, nullable=False, default="")
    working_type = Column(String, nullable=False, default="")
    reduce_only = Column(Boolean, nullable=False)
    close_position = Column(Boolean, nullable=False)
    price_protect = Column(Boolean, nullable=False)
    time = Column(DateTime(timezone=True), nullable=False)
    update_time = Column(DateTime(timezone=True), nullable=False)


class BalanceSnapshotModel(Base):
    """Append-only valuation time series."""
    __tablename__ = "balance_snapshots"
    __table_args__ = (
        Index("idx_snapshot_portfolio_created", "portfolio_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    portfolio_id = Column(Integer, ForeignKey("portfolios.id"), nullable=False)
    available_balance = Column(_MONEY, nullable=False)
    total_balance = Column(_MONEY, nullable=False)
    total_pnl = Column(_MONEY, nullable=False)
    locked_margin = Column(_MONEY, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class SyncLeaseModel(Base):
    """Per-(portfolio, symbol, stream) lease held for one sync cycle."""
    __tablename__ = "sync_leases"

    key = Column(String, primary_key=True)
    owner = Column(String, nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Row <-> domain conversion
# ---------------------------------------------------------------------------

def _credentials_from_json(raw: Optional[Dict[str, Any]]) -> Optional[Credentials]:
    if not raw or not isinstance(raw, dict):
        return None
    api_key = raw.get("apiKey") or raw.get("api_key")
    if not api_key:
        return None
    return Credentials(
        api_key=str(api_key),
        api_secret=str(raw.get("apiSecret") or raw.get("api_secret") or ""),
        base_url=raw.get("baseUrl") or raw.get("base_url"),
        password=raw.get("password"),
    )


def _portfolio_from_model(model: PortfolioModel) -> Portfolio:
    return Portfolio(
        id=model.id,
        name=model.name,
        avatar=model.avatar,
        realized_pnl=to_decimal(model.realized_pnl),
        credentials=_credentials_from_json(model.credentials),
        is_visible=bool(model.is_visible),
    )


def _fill_from_model(model: FillModel) -> Fill:
    return Fill(
        portfolio_id=model.portfolio_id,
        venue_trade_id=int(model.venue_trade_id),
        order_id=int(model.order_id) if model.order_id is not None else None,
        symbol=model.symbol,
        side=model.side,
        price=to_decimal(model.price),
        qty=to_decimal(model.qty),
        realized_pnl=to_decimal(model.realized_pnl),
        commission=to_decimal(model.commission),
        commission_asset=model.commission_asset,
        margin_asset=model.margin_asset,
        quote_qty=to_decimal(model.quote_qty),
        time=_utc(model.time),
        position_side=model.position_side,
        buyer=bool(model.buyer),
        maker=bool(model.maker),
    )


def _fill_to_model(portfolio_id: int, fill: Fill) -> FillModel:
    return FillModel(
        portfolio_id=portfolio_id,
        venue_trade_id=fill.venue_trade_id,
        order_id=fill.order_id,
        symbol=fill.symbol,
        side=fill.side,
        price=fill.price,
        qty=fill.qty,
        realized_pnl=fill.realized_pnl,
        commission=fill.commission,
        commission_asset=fill.commission_asset,
        margin_asset=fill.margin_asset,
        quote_qty=fill.quote_qty,
        time=fill.time,
        position_side=fill.position_side,
        buyer=fill.buyer,
        maker=fill.maker,
    )


def _order_event_to_model(portfolio_id: int, event: OrderEvent) -> OrderEventModel:
    return OrderEventModel(
        portfolio_id=portfolio_id,
        order_id=event.order_id,
        symbol=event.symbol,
        status=event.status,
        client_order_id=event.client_order_id,
        side=event.side,
        type=event.type,
        orig_type=event.orig_type,
        price=event.price,
        avg_price=event.avg_price,
        orig_qty=event.orig_qty,
        executed_qty=event.executed_qty,
        cum_quote=event.cum_quote,
        stop_price=event.stop_price,
        time_in_force=event.time_in_force,
        working_type=event.working_type,
        reduce_only=event.reduce_only,
        close_position=event.close_position,
        price_protect=event.price_protect,
        time=event.time,
        update_time=event.update_time,
    )


# ---------------------------------------------------------------------------
# Portfolios and symbols
# ---------------------------------------------------------------------------

def create_portfolio(
    name: str,
    credentials: Optional[Dict[str, Any]] = None,
    *,
    avatar: Optional[str] = None,
    is_visible: bool = True,
) -> Portfolio:
    """Create a portfolio. `credentials` is the raw JSON form ({apiKey, apiSecret, baseUrl})."""
    db = get_db()
    with db.get_session() as session:
        model = PortfolioModel(
            name=name,
            avatar=avatar,
            credentials=credentials,
            is_visible=is_visible,
            realized_pnl=Decimal("0"),
        )
        session.add(model)
        session.flush()
        return _portfolio_from_model(model)


def get_portfolio(portfolio_id: int) -> Optional[Portfolio]:
    """Get a non-deleted portfolio by id."""
    db = get_db()
    with db.get_session() as session:
        model = session.query(PortfolioModel).filter(
            PortfolioModel.id == portfolio_id,
            PortfolioModel.deleted_at.is_(None),
        ).first()
        return _portfolio_from_model(model) if model else None


def get_portfolios() -> List[Portfolio]:
    """All non-deleted portfolios."""
    db = get_db()
    with db.get_session() as session:
        models = session.query(PortfolioModel).filter(
            PortfolioModel.deleted_at.is_(None)
        ).order_by(PortfolioModel.id).all()
        return [_portfolio_from_model(m) for m in models]


def get_credentials(portfolio_id: int) -> Optional[Credentials]:
    portfolio = get_portfolio(portfolio_id)
    return portfolio.credentials if portfolio else None


def add_symbol(symbol: str, name: str = "", can_trade: bool = True) -> None:
    db = get_db()
    with db.get_session() as session:
        session.add(SymbolModel(symbol=symbol, name=name or symbol, can_trade=can_trade))


def get_trading_symbols() -> List[str]:
    """Symbols flagged tradable, in stable order."""
    db = get_db()
    with db.get_session() as session:
        rows = session.query(SymbolModel.symbol).filter(
            SymbolModel.can_trade.is_(True)
        ).order_by(SymbolModel.symbol).all()
        return [r[0] for r in rows]


def _increment_realized_pnl(session, portfolio_id: int, delta: Decimal) -> Decimal:
    """Add delta to the counter under a row lock. Returns the new value."""
    model = session.query(PortfolioModel).filter(
        PortfolioModel.id == portfolio_id
    ).with_for_update().first()
    if model is None:
        raise ValueError(f"Portfolio {portfolio_id} not found")
    new_value = to_decimal(model.realized_pnl) + delta
    model.realized_pnl = new_value
    model.updated_at = datetime.now(timezone.utc)
    return new_value


def add_realized_pnl(portfolio_id: int, delta: Decimal) -> Optional[Decimal]:
    """
    Add delta to the portfolio's realized-PnL counter.

    Zero deltas are a no-op and return None.
    """
    if not delta:
        return None
    db = get_db()
    with db.get_session() as session:
        return _increment_realized_pnl(session, portfolio_id, delta)


# ---------------------------------------------------------------------------
# Ledger: fills
# ---------------------------------------------------------------------------

def get_max_fill_id(portfolio_id: int, symbol: str) -> Optional[int]:
    """Fill cursor: highest stored venue trade id for (portfolio, symbol)."""
    db = get_db()
    with db.get_session() as session:
        value = session.query(func.max(FillModel.venue_trade_id)).filter(
            FillModel.portfolio_id == portfolio_id,
            FillModel.symbol == symbol,
        ).scalar()
        return int(value) if value is not None else None


def append_fills(portfolio_id: int, fills: Sequence[Fill]) -> Tuple[int, Decimal]:
    """
    Append a page of fills and add their realized PnL to the portfolio counter.

    Rows and counter are written in one transaction: either the whole page
    lands with its PnL, or nothing does.

    Returns:
        (rows inserted, realized PnL delta applied)
    """
    if not fills:
        return 0, ZERO

    delta = sum((f.realized_pnl for f in fills), ZERO)
    db = get_db()
    with db.get_session() as session:
        session.add_all([_fill_to_model(portfolio_id, f) for f in fills])
        session.flush()
        if delta:
            _increment_realized_pnl(session, portfolio_id, delta)
    return len(fills), delta


def get_recent_fills(portfolio_id: int, symbol: Optional[str] = None, limit: int = 5000) -> List[Fill]:
    """Most recent fills, newest first, capped at `limit`."""
    db = get_db()
    with db.get_session() as session:
        query = session.query(FillModel).filter(FillModel.portfolio_id == portfolio_id)
        if symbol:
            query = query.filter(FillModel.symbol == symbol)
        models = query.order_by(FillModel.time.desc(), FillModel.venue_trade_id.desc()).limit(limit).all()
        return [_fill_from_model(m) for m in models]


def count_fills(portfolio_id: int, symbol: Optional[str] = None) -> int:
    db = get_db()
    with db.get_session() as session:
        query = session.query(func.count(FillModel.id)).filter(FillModel.portfolio_id == portfolio_id)
        if symbol:
            query = query.filter(FillModel.symbol == symbol)
        return int(query.scalar() or 0)


# ---------------------------------------------------------------------------
# Ledger: order events
# ---------------------------------------------------------------------------

def get_max_order_id(portfolio_id: int, symbol: str) -> Optional[int]:
    """Order-event cursor: highest stored order id for (portfolio, symbol)."""
    db = get_db()
    with db.get_session() as session:
        value = session.query(func.max(OrderEventModel.order_id)).filter(
            OrderEventModel.portfolio_id == portfolio_id,
            OrderEventModel.symbol == symbol,
        ).scalar()
        return int(value) if value is not None else None


def append_order_events(portfolio_id: int, events: Sequence[OrderEvent]) -> int:
    """Append a page of order events. Returns rows inserted."""
    if not events:
        return 0
    db = get_db()
    with db.get_session() as session:
        session.add_all([_order_event_to_model(portfolio_id, e) for e in events])
    return len(events)


def count_order_events(portfolio_id: int, symbol: Optional[str] = None) -> int:
    db = get_db()
    with db.get_session() as session:
        query = session.query(func.count(OrderEventModel.id)).filter(OrderEventModel.portfolio_id == portfolio_id)
        if symbol:
            query = query.filter(OrderEventModel.symbol == symbol)
        return int(query.scalar() or 0)


# ---------------------------------------------------------------------------
# Balance snapshots
# ---------------------------------------------------------------------------

def save_balance_snapshot(snapshot: BalanceSnapshot) -> None:
    """Append one valuation row."""
    db = get_db()
    with db.get_session() as session:
        session.add(BalanceSnapshotModel(
            portfolio_id=snapshot.portfolio_id,
            available_balance=snapshot.available_balance,
            total_balance=snapshot.total_balance,
            total_pnl=snapshot.total_pnl,
            locked_margin=snapshot.locked_margin,
            created_at=snapshot.created_at,
        ))


def get_balance_snapshots(portfolio_id: int, limit: int = 100) -> List[BalanceSnapshot]:
    """Snapshot history, newest first."""
    db = get_db()
    with db.get_session() as session:
        models = session.query(BalanceSnapshotModel).filter(
            BalanceSnapshotModel.portfolio_id == portfolio_id
        ).order_by(BalanceSnapshotModel.created_at.desc(), BalanceSnapshotModel.id.desc()).limit(limit).all()
        return [
            BalanceSnapshot(
                portfolio_id=m.portfolio_id,
                available_balance=to_decimal(m.available_balance),
                total_balance=to_decimal(m.total_balance),
                total_pnl=to_decimal(m.total_pnl),
                locked_margin=to_decimal(m.locked_margin),
                created_at=_utc(m.created_at),
            )
            for m in models
        ]


# ---------------------------------------------------------------------------
# Sync leases
# ---------------------------------------------------------------------------

def acquire_lease(key: str, owner: str, ttl_seconds: int) -> bool:
    """
    Try to take the lease `key` for `owner`.

    Succeeds when no lease exists, the existing one has expired, or `owner`
    already holds it. Returns False when another live holder owns it.
    """
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(seconds=ttl_seconds)
    db = get_db()
    try:
        with db.get_session() as session:
            lease = session.query(SyncLeaseModel).filter(
                SyncLeaseModel.key == key
            ).with_for_update().first()

            if lease is None:
                session.add(SyncLeaseModel(key=key, owner=owner, acquired_at=now, expires_at=expires_at))
                return True

            if lease.owner != owner and _utc(lease.expires_at) > now:
                return False

            if lease.owner != owner:
                logger.warning(
                    "Taking over expired sync lease",
                    key=key,
                    previous_owner=lease.owner,
                    expired_at=_utc(lease.expires_at).isoformat(),
                )
            lease.owner = owner
            lease.acquired_at = now
            lease.expires_at = expires_at
            return True
    except IntegrityError:
        # Lost an insert race for a brand-new key
        return False


def release_lease(key: str, owner: str) -> bool:
    """Release `key` if `owner` still holds it."""
    db = get_db()
    with db.get_session() as session:
        deleted = session.query(SyncLeaseModel).filter(
            SyncLeaseModel.key == key,
            SyncLeaseModel.owner == owner,
        ).delete(synchronize_session=False)
        return deleted > 0
