"""
Venue payload decoding.

Raw venue dicts are converted here, once, into domain records before any
pipeline logic sees them. Unexpected shapes are coerced to safe defaults
per field; a record that lacks its venue id is dropped with a warning so
one bad row never fails the batch.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from tradeledger.domain.models import (
    Fill,
    LivePosition,
    OrderEvent,
    RestingOrder,
    VenueBalance,
)
from tradeledger.domain.money import from_epoch_ms, to_bool, to_decimal, to_int
from tradeledger.monitoring.logger import get_logger

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def unwrap_list(payload: Any) -> List[Dict[str, Any]]:
    """
    Extract a list of record dicts from a venue response.

    Accepts a bare list or a `{"data": [...]}` envelope. Non-dict items are
    skipped; anything else yields an empty list.
    """
    if isinstance(payload, dict):
        payload = payload.get("data")
    if not isinstance(payload, list):
        if payload is not None:
            logger.warning("Unexpected venue list payload, treating as empty", payload_type=type(payload).__name__)
        return []
    return [item for item in payload if isinstance(item, dict)]


def unwrap_object(payload: Any) -> Dict[str, Any]:
    """Extract a single record dict from a bare or `{"data": {...}}` response."""
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        return payload["data"]
    if isinstance(payload, dict):
        return payload
    logger.warning("Unexpected venue object payload, treating as empty", payload_type=type(payload).__name__)
    return {}


def decode_fill(raw: Dict[str, Any], portfolio_id: Optional[int] = None) -> Optional[Fill]:
    """Convert a venue trade record into a Fill. Returns None when the trade id is missing."""
    trade_id = to_int(raw.get("id"))
    if trade_id is None:
        logger.warning("Dropping fill without venue id", raw=str(raw)[:200])
        return None

    return Fill(
        portfolio_id=portfolio_id,
        venue_trade_id=trade_id,
        order_id=to_int(raw.get("orderId")),
        symbol=str(raw.get("symbol") or ""),
        side=str(raw.get("side") or "").upper(),
        price=to_decimal(raw.get("price")),
        qty=to_decimal(raw.get("qty")),
        realized_pnl=to_decimal(raw.get("realizedPnl")),
        commission=to_decimal(raw.get("commission")),
        commission_asset=str(raw.get("commissionAsset") or ""),
        margin_asset=str(raw.get("marginAsset") or ""),
        quote_qty=to_decimal(raw.get("quoteQty")),
        time=from_epoch_ms(raw.get("time")) or _EPOCH,
        position_side=str(raw.get("positionSide") or "BOTH"),
        buyer=to_bool(raw.get("buyer")),
        maker=to_bool(raw.get("maker")),
    )


def decode_order_event(raw: Dict[str, Any], portfolio_id: Optional[int] = None) -> Optional[OrderEvent]:
    """Convert a venue order-history record into an OrderEvent. None when the order id is missing."""
    order_id = to_int(raw.get("orderId"))
    if order_id is None:
        logger.warning("Dropping order event without venue id", raw=str(raw)[:200])
        return None

    created = from_epoch_ms(raw.get("time")) or _EPOCH
    return OrderEvent(
        portfolio_id=portfolio_id,
        order_id=order_id,
        symbol=str(raw.get("symbol") or ""),
        status=str(raw.get("status") or ""),
        client_order_id=str(raw.get("clientOrderId") or ""),
        side=str(raw.get("side") or "").upper(),
        type=str(raw.get("type") or ""),
        orig_type=str(raw.get("origType") or ""),
        price=to_decimal(raw.get("price")),
        avg_price=to_decimal(raw.get("avgPrice")),
        orig_qty=to_decimal(raw.get("origQty")),
        executed_qty=to_decimal(raw.get("executedQty")),
        cum_quote=to_decimal(raw.get("cumQuote")),
        stop_price=to_decimal(raw.get("stopPrice")),
        time_in_force=str(raw.get("timeInForce") or ""),
        working_type=str(raw.get("workingType") or ""),
        reduce_only=to_bool(raw.get("reduceOnly")),
        close_position=to_bool(raw.get("closePosition")),
        price_protect=to_bool(raw.get("priceProtect")),
        time=created,
        update_time=from_epoch_ms(raw.get("updateTime")) or created,
    )


def decode_position(raw: Dict[str, Any]) -> LivePosition:
    """Convert a venue position record. Never raises."""
    return LivePosition(
        symbol=str(raw.get("symbol") or ""),
        position_amt=to_decimal(raw.get("positionAmt")),
        entry_price=to_decimal(raw.get("entryPrice")),
        mark_price=to_decimal(raw.get("markPrice")),
        unrealized_pnl=to_decimal(raw.get("unRealizedProfit", raw.get("unrealizedProfit"))),
        leverage=to_decimal(raw.get("leverage")),
        update_time=from_epoch_ms(raw.get("updateTime")),
        position_side=str(raw.get("positionSide") or "BOTH"),
    )


def decode_resting_order(raw: Dict[str, Any]) -> RestingOrder:
    """Convert a venue open-order record. Never raises."""
    return RestingOrder(
        order_id=to_int(raw.get("orderId")),
        symbol=str(raw.get("symbol") or ""),
        type=str(raw.get("type") or ""),
        side=str(raw.get("side") or "").upper(),
        reduce_only=raw.get("reduceOnly") is True,
        stop_price=to_decimal(raw.get("stopPrice")),
    )


def decode_balance(raw: Dict[str, Any]) -> VenueBalance:
    return VenueBalance(
        available=to_decimal(raw.get("availableBalance")),
        total_margin=to_decimal(raw.get("totalMarginBalance")),
        unrealized_pnl=to_decimal(raw.get("totalUnrealizedProfit")),
        wallet=to_decimal(raw.get("totalWalletBalance")),
    )
