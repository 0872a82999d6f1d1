"""
Typed records exchanged between the snapshot sources, the price stream and
the reconciliation engine.

Wire payloads are mapped onto these dataclasses with dacite; every monetary
or quantity field is carried as a Decimal so that equality checks used for
change detection are exact.
"""

from dataclasses import dataclass, field, fields
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Dict, Any

from dacite import Config, from_dict


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class BalanceRecord:
    """
    Holdings for one asset as reported by the balance snapshot source.

    Attributes:
        asset_id: Asset identifier (e.g., "SOL")
        available: Freely usable quantity
        locked: Quantity reserved by open orders
    """
    asset_id: str
    available: Decimal
    locked: Decimal

    @property
    def current_balance(self) -> Decimal:
        return self.available + self.locked


@dataclass(frozen=True)
class TradeSummary:
    """Trade counters and realized P&L for one asset."""
    buy_count: int = 0
    sell_count: int = 0
    realized_pnl: Decimal = Decimal("0")


EMPTY_TRADE_SUMMARY = TradeSummary()


@dataclass(frozen=True)
class PositionAnalytics:
    """
    Derived analytics for one asset. Any field may be missing in a given poll.
    """
    asset_id: str
    average_entry_price: Optional[Decimal] = None
    total_bought_amount: Optional[Decimal] = None
    total_bought_cost: Optional[Decimal] = None
    current_market_price: Optional[Decimal] = None
    current_value: Optional[Decimal] = None
    unrealized_pnl: Optional[Decimal] = None
    unrealized_pnl_percent: Optional[Decimal] = None
    trade_summary: Optional[TradeSummary] = None


@dataclass(frozen=True)
class PriceTick:
    """Latest price and 24h change for the reference asset."""
    price: Decimal
    change_percent: Decimal = Decimal("0")


@dataclass(frozen=True)
class PositionView:
    """
    Merged per-asset record owned by the engine.

    Instances are immutable; an update always produces a new object so that
    consumers can use identity (`is`) as a change signal.
    """
    asset_id: str
    available: Decimal
    locked: Decimal
    current_balance: Decimal
    average_entry_price: Optional[Decimal] = None
    total_bought_amount: Decimal = Decimal("0")
    total_bought_cost: Decimal = Decimal("0")
    current_market_price: Optional[Decimal] = None
    current_value: Optional[Decimal] = None
    unrealized_pnl: Optional[Decimal] = None
    unrealized_pnl_percent: Optional[Decimal] = None
    trade_summary: TradeSummary = field(default=EMPTY_TRADE_SUMMARY)

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict with decimals rendered as strings."""
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, TradeSummary):
                value = {
                    "buy_count": value.buy_count,
                    "sell_count": value.sell_count,
                    "realized_pnl": str(value.realized_pnl),
                }
            elif isinstance(value, Decimal):
                value = str(value)
            out[f.name] = value
        return out


class _AnalyticsUnavailable:
    """Marker passed to reconcile() when the analytics poll failed."""

    def __repr__(self) -> str:
        return "ANALYTICS_UNAVAILABLE"


ANALYTICS_UNAVAILABLE = _AnalyticsUnavailable()


# =============================================================================
# Parsing
# =============================================================================

def to_decimal(value: Any) -> Decimal:
    """
    Convert a wire value (string, int or float) into a Decimal.

    :raises ValueError: If the value is not numeric or not finite
    """
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Not a decimal value: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"Not a finite decimal value: {value!r}")
    return result


DACITE_CONFIG = Config(type_hooks={Decimal: to_decimal})


def _drop_blank(data: Dict[str, Any]) -> Dict[str, Any]:
    # empty strings and nulls mean "not provided"
    return {k: v for k, v in data.items() if v is not None and v != ""}


def parse_balance(data: Dict[str, Any]) -> BalanceRecord:
    """
    Build a BalanceRecord from a balances API item.

    Accepts either the API field name ("mint_address") or "asset_id".

    :raises dacite.DaciteError: If asset_id or available is missing
    :raises ValueError: If a quantity is not numeric
    """
    data = _drop_blank(data)
    normalized = _drop_blank({
        "asset_id": data.get("asset_id", data.get("mint_address")),
        "available": data.get("available"),
        "locked": data.get("locked", "0"),
    })
    return from_dict(data_class=BalanceRecord, data=normalized, config=DACITE_CONFIG)


def _normalize_trade_summary(data: Dict[str, Any]) -> Dict[str, Any]:
    data = _drop_blank(data)
    return {
        "buy_count": int(data.get("buy_count", data.get("total_buy_trades", 0))),
        "sell_count": int(data.get("sell_count", data.get("total_sell_trades", 0))),
        "realized_pnl": data.get("realized_pnl", "0"),
    }


def parse_analytics(data: Dict[str, Any]) -> PositionAnalytics:
    """
    Build a PositionAnalytics from a positions API item.

    Accepts either the API field name ("mint") or "asset_id". Blank values
    are treated as absent.
    """
    normalized = _drop_blank(data)
    if "asset_id" not in normalized and "mint" in normalized:
        normalized["asset_id"] = normalized["mint"]
    normalized.pop("mint", None)

    summary = normalized.get("trade_summary")
    if isinstance(summary, dict):
        normalized["trade_summary"] = _normalize_trade_summary(summary)

    return from_dict(data_class=PositionAnalytics, data=normalized, config=DACITE_CONFIG)


def parse_balances(items: List[Dict[str, Any]]) -> List[BalanceRecord]:
    return [parse_balance(item) for item in items]


def parse_analytics_list(items: List[Dict[str, Any]]) -> List[PositionAnalytics]:
    return [parse_analytics(item) for item in items]
