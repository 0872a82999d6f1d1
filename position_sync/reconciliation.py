"""
Snapshot merge for the position view.

reconcile() folds one balance snapshot and one (possibly missing) analytics
snapshot into the previous view and returns the next view. The result reuses
every unchanged PositionView object from the previous view, and returns the
previous list itself when nothing changed, so callers can detect changes with
an identity check.

Merge rules per asset:
    holdings        always taken from the balance snapshot
    cost fields     fresh analytics if present, else previous, else zero
    valuation       peg asset fixed at 1; reference asset from the streaming
                    price when known; everything else from analytics
    unrealized P&L  fresh analytics if present, else previous; never
                    recomputed here
"""

import logging
from decimal import Decimal
from typing import Optional, List, Dict, Union

try:
    from .view_models import (
        ANALYTICS_UNAVAILABLE,
        EMPTY_TRADE_SUMMARY,
        BalanceRecord,
        PositionAnalytics,
        PositionView,
        _AnalyticsUnavailable,
    )
except ImportError:
    from view_models import (
        ANALYTICS_UNAVAILABLE,
        EMPTY_TRADE_SUMMARY,
        BalanceRecord,
        PositionAnalytics,
        PositionView,
        _AnalyticsUnavailable,
    )

logger = logging.getLogger(__name__)


PEG_PRICE = Decimal("1")
VALUE_QUANTUM = Decimal("0.01")

# Fields of the reference asset that a snapshot merge is allowed to change;
# its valuation and P&L belong to the price path.
REFERENCE_SNAPSHOT_FIELDS = (
    "asset_id",
    "available",
    "locked",
    "current_balance",
    "average_entry_price",
    "total_bought_amount",
    "total_bought_cost",
    "trade_summary",
)


def sort_key(asset_id: str, peg_asset: str):
    """Peg asset first, everything else by asset_id."""
    return (asset_id != peg_asset, asset_id)


def _same_fields(old: PositionView, new: PositionView, names) -> bool:
    return all(getattr(old, name) == getattr(new, name) for name in names)


def _merge_record(
    balance: BalanceRecord,
    analytics: Optional[PositionAnalytics],
    prev: Optional[PositionView],
    reference_asset: str,
    peg_asset: str,
    reference_price: Optional[Decimal],
) -> PositionView:
    current_balance = balance.current_balance

    def pick(name, default):
        fresh = getattr(analytics, name) if analytics is not None else None
        if fresh is not None:
            return fresh
        if prev is not None:
            return getattr(prev, name)
        return default

    market_price: Optional[Decimal] = None
    value: Optional[Decimal] = None
    if balance.asset_id == peg_asset:
        market_price = PEG_PRICE
        value = current_balance
    elif balance.asset_id == reference_asset and reference_price is not None:
        market_price = reference_price
        value = (reference_price * current_balance).quantize(VALUE_QUANTUM)
    elif analytics is not None and analytics.current_market_price is not None:
        market_price = analytics.current_market_price
        value = analytics.current_value

    return PositionView(
        asset_id=balance.asset_id,
        available=balance.available,
        locked=balance.locked,
        current_balance=current_balance,
        average_entry_price=pick("average_entry_price", None),
        total_bought_amount=pick("total_bought_amount", Decimal("0")),
        total_bought_cost=pick("total_bought_cost", Decimal("0")),
        current_market_price=market_price,
        current_value=value,
        unrealized_pnl=pick("unrealized_pnl", None),
        unrealized_pnl_percent=pick("unrealized_pnl_percent", None),
        trade_summary=pick("trade_summary", EMPTY_TRADE_SUMMARY),
    )


def diff_views(
    previous: List[PositionView],
    candidate: List[PositionView],
    reference_asset: str,
) -> List[PositionView]:
    """
    Keep every element of `previous` that `candidate` does not really change.

    Elements are compared at the same sorted position. For the reference
    asset only the REFERENCE_SNAPSHOT_FIELDS are compared; other assets are
    compared on every field.

    :return: `previous` itself when nothing changed, otherwise a new list
    """
    if len(previous) != len(candidate):
        return candidate

    merged: List[PositionView] = []
    for old, new in zip(previous, candidate):
        if new.asset_id == reference_asset and old.asset_id == reference_asset:
            unchanged = _same_fields(old, new, REFERENCE_SNAPSHOT_FIELDS)
        else:
            unchanged = old == new
        merged.append(old if unchanged else new)

    if all(a is b for a, b in zip(merged, previous)):
        return previous
    return merged


def reconcile(
    balances: List[BalanceRecord],
    analytics: Union[List[PositionAnalytics], _AnalyticsUnavailable],
    previous: List[PositionView],
    reference_asset: str,
    peg_asset: str,
    reference_price: Optional[Decimal] = None,
) -> List[PositionView]:
    """
    Merge one snapshot cycle into the previous view.

    :param balances: Balance snapshot (authoritative for which assets exist)
    :param analytics: Analytics snapshot, or ANALYTICS_UNAVAILABLE if that
        poll failed this cycle
    :param previous: The current view
    :param reference_asset: Asset whose valuation is driven by the price stream
    :param peg_asset: Asset valued at a fixed 1:1
    :param reference_price: Latest streaming price for the reference asset
    :return: The next view (identical object when nothing changed)

    Example:
        view = reconcile(balances, ANALYTICS_UNAVAILABLE, view, "SOL", "USDT")
    """
    if analytics is ANALYTICS_UNAVAILABLE:
        by_asset: Dict[str, PositionAnalytics] = {}
    else:
        by_asset = {a.asset_id: a for a in analytics}

    prev_by_asset = {p.asset_id: p for p in previous}

    unique: Dict[str, BalanceRecord] = {}
    for balance in balances:
        if balance.asset_id in unique:
            logger.warning(f"Duplicate balance for {balance.asset_id}, keeping the last one")
        unique[balance.asset_id] = balance

    candidate = [
        _merge_record(
            balance,
            by_asset.get(balance.asset_id),
            prev_by_asset.get(balance.asset_id),
            reference_asset,
            peg_asset,
            reference_price,
        )
        for balance in unique.values()
    ]
    candidate.sort(key=lambda p: sort_key(p.asset_id, peg_asset))

    result = diff_views(previous, candidate, reference_asset)
    if result is not previous:
        logger.debug(f"Snapshot merge produced {len(result)} positions")
    return result
