"""
Real-time position reconciliation package.

This package merges polled balance and analytics snapshots with a streaming
price feed into a single, stable per-asset position view.

Modules:
    view_models: Typed records and wire parsing
    reconciliation: Snapshot merge and minimal-change diffing
    price_recompute: Streaming price patch for the reference asset
    snapshot_sources: HTTP balance and analytics sources
    price_stream: Websocket price feed
    trade_ledger: DuckDB trade ledger usable as an analytics source
    position_engine: Single-writer engine owning the view
"""

try:
    from .view_models import (
        ANALYTICS_UNAVAILABLE,
        BalanceRecord,
        PositionAnalytics,
        PositionView,
        PriceTick,
        TradeSummary,
    )
    from .reconciliation import reconcile
    from .price_recompute import apply_price_tick
    from .snapshot_sources import BalanceSnapshotSource, PositionSnapshotSource
    from .price_stream import PriceStreamSource
    from .trade_ledger import TradeLedger
    from .position_engine import PositionEngine, build_engine, run_engine
    from .sync_config import SyncConfig, RecomputePolicy, load_config
except ImportError:
    # When running tests directly from source directory
    pass

__all__ = [
    "ANALYTICS_UNAVAILABLE",
    "BalanceRecord",
    "PositionAnalytics",
    "PositionView",
    "PriceTick",
    "TradeSummary",
    "reconcile",
    "apply_price_tick",
    "BalanceSnapshotSource",
    "PositionSnapshotSource",
    "PriceStreamSource",
    "TradeLedger",
    "PositionEngine",
    "build_engine",
    "run_engine",
    "SyncConfig",
    "RecomputePolicy",
    "load_config",
]
