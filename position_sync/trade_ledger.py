"""
Trade ledger and position analytics source.

This module provides a TradeLedger class that records buys and sells in a
DuckDB database, maintains per-asset positions with the average cost method,
and serves the resulting analytics through the same fetch() contract as the
HTTP PositionSnapshotSource.

=============================================================================
USAGE GUIDE
=============================================================================

READ OPERATIONS (no side effects):
    - fetch()                   → List[PositionAnalytics], one per traded asset
    - get_position(asset_id)    → Single position or None
    - get_trade_history()       → Full trade ledger (optionally filtered)

MUTATION OPERATIONS (transactional, validated):
    - record_buy_trade(...)     → Records a buy and updates the position
    - record_sell_trade(...)    → Records a sell, validates quantity, realizes P&L
    - update_mark_price(...)    → Stores the latest mark price for valuation

GUARANTEES:
    1. All writes are transactional (atomic commit or full rollback)
    2. Inputs are validated before any database changes
    3. Trades are append-only
    4. Sells validate that sufficient quantity exists

EXAMPLE USAGE:
    from decimal import Decimal
    from position_sync.trade_ledger import TradeLedger

    ledger = TradeLedger(":memory:")
    ledger.record_buy_trade("SOL", Decimal("2"), Decimal("140"), datetime.now())
    ledger.update_mark_price("SOL", Decimal("150"))
    analytics = ledger.fetch()
    ledger.close()

=============================================================================
"""

import duckdb
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List, Dict, Any
from datetime import datetime
from contextlib import contextmanager

try:
    from .view_models import PositionAnalytics, TradeSummary
except ImportError:
    from view_models import PositionAnalytics, TradeSummary

logger = logging.getLogger(__name__)


# =============================================================================
# Dataclasses (typed return values)
# =============================================================================

@dataclass
class LedgerPosition:
    """
    Net holdings for one asset.

    Attributes:
        asset_id: Asset identifier (e.g., "SOL")
        quantity: Net quantity currently held
        avg_cost: Weighted average cost per unit
        mark_price: Latest mark price (None until update_mark_price is called)
        opened_at: When the position was first opened
        last_updated_at: Last modification timestamp
    """
    asset_id: str
    quantity: Decimal
    avg_cost: Decimal
    mark_price: Optional[Decimal]
    opened_at: datetime
    last_updated_at: datetime


# =============================================================================
# Constants
# =============================================================================

SIDE_BUY = "BUY"
SIDE_SELL = "SELL"

STORAGE_QUANTUM = Decimal("1e-12")
REPORT_QUANTUM = Decimal("0.01")


def _store(value: Decimal) -> Decimal:
    return value.quantize(STORAGE_QUANTUM, rounding=ROUND_HALF_UP)


def _report(value: Decimal) -> Decimal:
    return value.quantize(REPORT_QUANTUM, rounding=ROUND_HALF_UP)


# =============================================================================
# TradeLedger Class
# =============================================================================

class TradeLedger:
    """
    DuckDB-backed trade ledger that doubles as a position analytics source.

    Thread Safety:
        Not thread-safe. Each thread should use its own TradeLedger instance.
    """

    def __init__(self, db_path: str = "trade_ledger.duckdb"):
        """
        Open the DuckDB database and create the schema.

        :param db_path: Path to DuckDB database file. Use ':memory:' for in-memory DB.
        """
        self.db_path = db_path
        self.conn = duckdb.connect(db_path)
        self._initialize_schema()

    def _initialize_schema(self):
        """Create the positions and trades tables if they don't exist."""

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS positions (
                asset_id VARCHAR PRIMARY KEY,
                quantity DECIMAL(38, 12) NOT NULL DEFAULT 0,
                avg_cost DECIMAL(38, 12) NOT NULL DEFAULT 0,
                mark_price DECIMAL(38, 12),
                opened_at TIMESTAMP NOT NULL,
                last_updated_at TIMESTAMP NOT NULL
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                trade_id VARCHAR PRIMARY KEY,
                asset_id VARCHAR NOT NULL,
                side VARCHAR NOT NULL,
                quantity DECIMAL(38, 12) NOT NULL,
                price DECIMAL(38, 12) NOT NULL,
                trade_value DECIMAL(38, 12) NOT NULL,
                fees DECIMAL(38, 12) DEFAULT 0,
                realized_pnl DECIMAL(38, 12),
                executed_at TIMESTAMP NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
        """)

        self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_trades_asset
            ON trades(asset_id)
        """)

        logger.info("Trade ledger schema initialized")

    def close(self):
        """Close the database connection. The ledger must not be reused afterwards."""
        if self.conn:
            self.conn.close()
            self.conn = None

    @contextmanager
    def transaction(self):
        """
        Context manager for transactional operations.

        Raises:
            Exception: Re-raises any exception after rollback
        """
        try:
            self.conn.execute("BEGIN TRANSACTION")
            yield
            self.conn.execute("COMMIT")
        except Exception as e:
            self.conn.execute("ROLLBACK")
            logger.error(f"Transaction rolled back due to error: {e}")
            raise

    # =========================================================================
    # Write Operations
    # =========================================================================

    def record_buy_trade(
        self,
        asset_id: str,
        quantity: Decimal,
        price: Decimal,
        executed_at: datetime,
        fees: Decimal = Decimal("0")
    ) -> str:
        """
        Record a BUY trade and update the position.

        Average cost:
            new_avg = (old_qty * old_avg + qty * price) / (old_qty + qty)

        :param asset_id: Asset identifier
        :param quantity: Amount purchased (must be > 0)
        :param price: Price per unit (must be > 0)
        :param executed_at: When the trade was executed
        :param fees: Transaction fees (default 0)
        :return: The generated trade_id (UUID string)
        :raises ValueError: If quantity <= 0 or price <= 0
        """
        if quantity <= 0:
            raise ValueError(f"quantity must be positive, got {quantity}")
        if price <= 0:
            raise ValueError(f"price must be positive, got {price}")

        trade_id = str(uuid.uuid4())
        now = datetime.now()

        with self.transaction():
            self._insert_trade(trade_id, asset_id, SIDE_BUY, quantity, price, fees, None, executed_at, now)

            existing = self._get_position_internal(asset_id)
            if existing is None:
                self.conn.execute("""
                    INSERT INTO positions (asset_id, quantity, avg_cost, mark_price, opened_at, last_updated_at)
                    VALUES (?, ?, ?, NULL, ?, ?)
                """, [asset_id, _store(quantity), _store(price), now, now])
            else:
                new_quantity = existing.quantity + quantity
                new_avg = (existing.quantity * existing.avg_cost + quantity * price) / new_quantity
                self.conn.execute("""
                    UPDATE positions
                    SET quantity = ?, avg_cost = ?, last_updated_at = ?
                    WHERE asset_id = ?
                """, [_store(new_quantity), _store(new_avg), now, asset_id])

        logger.info(f"Recorded BUY trade {trade_id}: {quantity} {asset_id} @ {price}")
        return trade_id

    def record_sell_trade(
        self,
        asset_id: str,
        quantity: Decimal,
        price: Decimal,
        executed_at: datetime,
        fees: Decimal = Decimal("0")
    ) -> str:
        """
        Record a SELL trade, realize P&L, and reduce the position.

        realized_pnl = quantity * (price - avg_cost) - fees
        The average cost is unchanged by a sell; a position sold down to zero
        is closed.

        :raises ValueError: If quantity <= 0 or price <= 0
        :raises ValueError: If no position exists or quantity is insufficient
        """
        if quantity <= 0:
            raise ValueError(f"quantity must be positive, got {quantity}")
        if price <= 0:
            raise ValueError(f"price must be positive, got {price}")

        trade_id = str(uuid.uuid4())
        now = datetime.now()

        with self.transaction():
            position = self._get_position_internal(asset_id)
            if position is None:
                raise ValueError(f"No position exists for asset_id '{asset_id}'")
            if quantity > position.quantity:
                raise ValueError(
                    f"Insufficient quantity: trying to sell {quantity} but only "
                    f"{position.quantity} available for '{asset_id}'"
                )

            realized_pnl = quantity * (price - position.avg_cost) - fees
            self._insert_trade(trade_id, asset_id, SIDE_SELL, quantity, price, fees, realized_pnl, executed_at, now)

            new_quantity = position.quantity - quantity
            if new_quantity <= 0:
                self.conn.execute("DELETE FROM positions WHERE asset_id = ?", [asset_id])
                logger.info(f"Closed position for {asset_id}")
            else:
                self.conn.execute("""
                    UPDATE positions SET quantity = ?, last_updated_at = ?
                    WHERE asset_id = ?
                """, [_store(new_quantity), now, asset_id])

        logger.info(f"Recorded SELL trade {trade_id}: {quantity} {asset_id} @ {price}, realized P&L: {_report(realized_pnl)}")
        return trade_id

    def update_mark_price(self, asset_id: str, price: Decimal) -> bool:
        """
        Store the latest mark price used for valuation in fetch().

        :return: False if there is no open position for asset_id
        """
        if price <= 0:
            raise ValueError(f"price must be positive, got {price}")
        if self._get_position_internal(asset_id) is None:
            return False
        self.conn.execute("""
            UPDATE positions SET mark_price = ?, last_updated_at = ?
            WHERE asset_id = ?
        """, [_store(price), datetime.now(), asset_id])
        return True

    def _insert_trade(self, trade_id, asset_id, side, quantity, price, fees, realized_pnl, executed_at, now):
        self.conn.execute("""
            INSERT INTO trades (
                trade_id, asset_id, side, quantity, price, trade_value,
                fees, realized_pnl, executed_at, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            trade_id, asset_id, side, _store(quantity), _store(price), _store(quantity * price),
            _store(fees), None if realized_pnl is None else _store(realized_pnl), executed_at, now
        ])

    def _get_position_internal(self, asset_id: str) -> Optional[LedgerPosition]:
        result = self.conn.execute("""
            SELECT asset_id, quantity, avg_cost, mark_price, opened_at, last_updated_at
            FROM positions
            WHERE asset_id = ?
        """, [asset_id]).fetchone()

        if result:
            return LedgerPosition(
                asset_id=result[0],
                quantity=Decimal(result[1]),
                avg_cost=Decimal(result[2]),
                mark_price=None if result[3] is None else Decimal(result[3]),
                opened_at=result[4],
                last_updated_at=result[5]
            )
        return None

    # =========================================================================
    # Read Operations
    # =========================================================================

    def get_position(self, asset_id: str) -> Optional[LedgerPosition]:
        return self._get_position_internal(asset_id)

    def get_trade_history(self, asset_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get trades, newest first, optionally filtered by asset.

        :param asset_id: Optional asset filter. If None, returns all trades.
        """
        query = """
            SELECT trade_id, asset_id, side, quantity, price, trade_value,
                   fees, realized_pnl, executed_at, created_at
            FROM trades
        """
        params: List[Any] = []
        if asset_id:
            query += " WHERE asset_id = ?"
            params.append(asset_id)
        query += " ORDER BY executed_at DESC, created_at DESC"

        columns = [
            "trade_id", "asset_id", "side", "quantity", "price", "trade_value",
            "fees", "realized_pnl", "executed_at", "created_at",
        ]
        return [dict(zip(columns, row)) for row in self.conn.execute(query, params).fetchall()]

    def fetch(self) -> List[PositionAnalytics]:
        """
        Build analytics for every asset that has trades.

        Closed positions report their trade summary and totals but no entry
        price or valuation. Open positions with a mark price also report
        current value and unrealized P&L.
        """
        rows = self.conn.execute("""
            SELECT
                t.asset_id,
                COALESCE(SUM(CASE WHEN t.side = 'BUY' THEN t.quantity ELSE 0 END), 0) AS bought_amount,
                COALESCE(SUM(CASE WHEN t.side = 'BUY' THEN t.trade_value ELSE 0 END), 0) AS bought_cost,
                SUM(CASE WHEN t.side = 'BUY' THEN 1 ELSE 0 END) AS buy_count,
                SUM(CASE WHEN t.side = 'SELL' THEN 1 ELSE 0 END) AS sell_count,
                COALESCE(SUM(t.realized_pnl), 0) AS realized_pnl,
                p.quantity,
                p.avg_cost,
                p.mark_price
            FROM trades t
            LEFT JOIN positions p ON p.asset_id = t.asset_id
            GROUP BY t.asset_id, p.quantity, p.avg_cost, p.mark_price
            ORDER BY t.asset_id
        """).fetchall()

        analytics = []
        for row in rows:
            asset_id, bought_amount, bought_cost, buys, sells, realized, quantity, avg_cost, mark = row
            summary = TradeSummary(
                buy_count=int(buys),
                sell_count=int(sells),
                realized_pnl=_report(Decimal(realized)),
            )

            entry = None if avg_cost is None else Decimal(avg_cost)
            price = value = pnl = pnl_percent = None
            if entry is not None and mark is not None and quantity:
                price = Decimal(mark)
                value = _report(Decimal(quantity) * price)
                pnl = _report(Decimal(quantity) * (price - entry))
                pnl_percent = _report((price - entry) / entry * 100)

            analytics.append(PositionAnalytics(
                asset_id=asset_id,
                average_entry_price=entry,
                total_bought_amount=Decimal(bought_amount),
                total_bought_cost=_report(Decimal(bought_cost)),
                current_market_price=price,
                current_value=value,
                unrealized_pnl=pnl,
                unrealized_pnl_percent=pnl_percent,
                trade_summary=summary,
            ))
        return analytics
