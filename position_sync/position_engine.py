"""
Position engine: owns the live position view.

Three producers feed one asyncio.Queue:
- a poll loop that fetches the balance snapshot (with the analytics snapshot
  chained in the same cycle) every poll_interval_seconds
- the price stream, which posts one message per tick
- refresh(), which runs an extra poll on demand

A single consumer task drains the queue and is the only writer of the view.
Every write swaps in a whole new list, so readers of current_view() never see
a partial merge, and listeners are notified only when the list identity
changes.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, List, Callable, Any

try:
    from .price_recompute import apply_price_tick, round_price
    from .reconciliation import reconcile
    from .snapshot_sources import BalanceSnapshotSource, PositionSnapshotSource, fetch_snapshot
    from .price_stream import PriceStreamSource
    from .source_errors import ErrorKind, FetchTimeoutError, classify_error
    from .sync_config import SyncConfig, load_config
    from .view_models import PositionView, PriceTick
except ImportError:
    from price_recompute import apply_price_tick, round_price
    from reconciliation import reconcile
    from snapshot_sources import BalanceSnapshotSource, PositionSnapshotSource, fetch_snapshot
    from price_stream import PriceStreamSource
    from source_errors import ErrorKind, FetchTimeoutError, classify_error
    from sync_config import SyncConfig, load_config
    from view_models import PositionView, PriceTick

logger = logging.getLogger(__name__)


AUTH_ERROR_MESSAGE = "Authentication required. Please log in again."
LOAD_ERROR_MESSAGE = "Failed to load positions."


@dataclass(frozen=True)
class ViewState:
    """What a consumer needs to render: positions plus loading/error flags."""
    positions: List[PositionView]
    loading: bool
    error: Optional[str]


# Queue messages
@dataclass
class _SnapshotMessage:
    balances: list
    analytics: Any


@dataclass
class _FailureMessage:
    error: BaseException


@dataclass
class _TickMessage:
    tick: PriceTick


class _Unauthenticated:
    pass


_STOP = object()


class PositionEngine:
    """
    Reconciles polled snapshots and streamed prices into one position view.

    Usage:
        engine = PositionEngine(balance_source, analytics_source, price_source,
                                config=load_config(), on_change=print)
        await engine.start()
        ...
        await engine.stop()
    """

    def __init__(
        self,
        balance_source,
        analytics_source=None,
        price_source: Optional[PriceStreamSource] = None,
        config: Optional[SyncConfig] = None,
        on_change: Optional[Callable[[List[PositionView]], None]] = None,
        on_auth_error: Optional[Callable[[BaseException], None]] = None,
    ):
        """
        :param balance_source: Object with fetch() -> List[BalanceRecord]
        :param analytics_source: Object with fetch() -> List[PositionAnalytics], or None
        :param price_source: Stream with run(callback) / close(), or None
        :param config: Engine configuration (defaults from load_config())
        :param on_change: Called with the new view whenever its identity changes
        :param on_auth_error: Called once when the balance source rejects our credentials
        """
        self.balance_source = balance_source
        self.analytics_source = analytics_source
        self.price_source = price_source
        self.config = config or load_config()
        self.on_change = on_change
        self.on_auth_error = on_auth_error

        self._view: List[PositionView] = []
        self._loading = True
        self._error: Optional[str] = None
        self._last_tick: Optional[PriceTick] = None
        self._active = False
        self._polling = False

        self._queue: Optional[asyncio.Queue] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._stream_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Read API
    # =========================================================================

    def current_view(self) -> List[PositionView]:
        return self._view

    def state(self) -> ViewState:
        return ViewState(positions=self._view, loading=self._loading, error=self._error)

    @property
    def last_tick(self) -> Optional[PriceTick]:
        """Latest streamed price (and 24h change) for the reference asset."""
        return self._last_tick

    @property
    def is_active(self) -> bool:
        return self._active

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the consumer, the poll loop and (if configured) the price stream."""
        if self._active:
            return
        self._active = True
        self._polling = True
        self._queue = asyncio.Queue()
        self._consumer_task = asyncio.create_task(self._consume())
        self._poll_task = asyncio.create_task(self._poll_loop())
        if self.price_source is not None:
            self._stream_task = asyncio.create_task(self.price_source.run(self._post_tick))
        logger.info("Position engine started")

    async def stop(self) -> None:
        """
        Stop polling and close the stream.

        A snapshot fetch still running in a worker thread is not aborted; its
        result is discarded when it arrives.
        """
        if not self._active:
            return
        self._active = False
        self._stop_polling()
        if self.price_source is not None:
            await self.price_source.close()
        if self._stream_task is not None:
            self._stream_task.cancel()
        await self._queue.put(_STOP)

        tasks = [t for t in (self._consumer_task, self._poll_task, self._stream_task) if t is not None]
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Position engine stopped")

    async def refresh(self) -> None:
        """Run one snapshot cycle now, outside the regular schedule."""
        message = await self._poll_once()
        if self._active:
            await self._queue.put(message)

    def _stop_polling(self) -> None:
        self._polling = False
        if self._poll_task is not None and self._poll_task is not asyncio.current_task():
            self._poll_task.cancel()

    # =========================================================================
    # Producers
    # =========================================================================

    async def _poll_once(self):
        is_authenticated = getattr(self.balance_source, "is_authenticated", None)
        if is_authenticated is not None and not is_authenticated():
            return _Unauthenticated()
        timeout = self.config.api.timeout_seconds
        try:
            # the worker thread is left to finish on its own after a timeout
            balances, analytics = await asyncio.wait_for(
                asyncio.to_thread(fetch_snapshot, self.balance_source, self.analytics_source),
                timeout,
            )
        except asyncio.TimeoutError:
            return _FailureMessage(FetchTimeoutError(f"Snapshot fetch exceeded {timeout}s"))
        except Exception as e:
            return _FailureMessage(e)
        return _SnapshotMessage(balances, analytics)

    async def _poll_loop(self) -> None:
        while self._active and self._polling:
            message = await self._poll_once()
            if not self._active:
                logger.debug("Engine stopped during fetch, dropping snapshot")
                break
            await self._queue.put(message)
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def _post_tick(self, tick: PriceTick) -> None:
        if self._active:
            await self._queue.put(_TickMessage(tick))

    # =========================================================================
    # Consumer
    # =========================================================================

    async def _consume(self) -> None:
        while True:
            message = await self._queue.get()
            if message is _STOP:
                break
            if not self._active:
                continue
            try:
                self._dispatch(message)
            except Exception as e:
                # keep consuming
                logger.exception(f"Failed to apply {type(message).__name__}: {e}")

    def _dispatch(self, message) -> None:
        if isinstance(message, _TickMessage):
            self.apply_tick(message.tick)
        elif isinstance(message, _SnapshotMessage):
            self.apply_snapshot(message.balances, message.analytics)
        elif isinstance(message, _FailureMessage):
            self.apply_failure(message.error)
        elif isinstance(message, _Unauthenticated):
            self.apply_unauthenticated()

    # The apply_* methods are the only writers of the view. They run on the
    # consumer task; tests may call them directly.

    def apply_snapshot(self, balances, analytics) -> None:
        """Merge a successful snapshot cycle into the view."""
        self._error = None
        reference_price = None
        if self._last_tick is not None:
            reference_price = round_price(self._last_tick.price, self.config.policy)

        view = reconcile(
            balances,
            analytics,
            self._view,
            reference_asset=self.config.assets.reference_asset,
            peg_asset=self.config.assets.peg_asset,
            reference_price=reference_price,
        )
        self._loading = False
        self._commit(view)

    def apply_failure(self, error: BaseException) -> None:
        """Apply a failed balance poll according to its ErrorKind."""
        self._error = None
        kind = classify_error(error)

        if kind is ErrorKind.AUTH:
            logger.error(f"Balance source rejected credentials: {error}")
            self._error = AUTH_ERROR_MESSAGE
            self._loading = False
            self._stop_polling()
            if self._view:
                self._commit([])
            if self.on_auth_error is not None:
                self.on_auth_error(error)
        elif kind is ErrorKind.TRANSIENT:
            logger.warning(f"Transient balance poll failure, keeping last view: {error}")
        else:
            logger.error(f"Balance poll failed: {error}")
            self._error = LOAD_ERROR_MESSAGE
            self._loading = False

    def apply_unauthenticated(self) -> None:
        logger.info("No credentials configured, skipping snapshot cycle")
        self._loading = False

    def apply_tick(self, tick: PriceTick) -> None:
        """Patch the reference asset's valuation from a streamed price."""
        self._last_tick = tick
        view = apply_price_tick(
            tick,
            self._view,
            reference_asset=self.config.assets.reference_asset,
            policy=self.config.policy,
        )
        self._commit(view)

    def _commit(self, view: List[PositionView]) -> None:
        if view is self._view:
            return
        self._view = view
        if self.on_change is not None:
            try:
                self.on_change(view)
            except Exception as e:
                logger.error(f"View listener failed: {e}")


def build_engine(
    config: Optional[SyncConfig] = None,
    on_change: Optional[Callable[[List[PositionView]], None]] = None,
    on_auth_error: Optional[Callable[[BaseException], None]] = None,
) -> PositionEngine:
    """
    Wire an engine to the HTTP snapshot sources and the websocket price stream.

    :param config: Engine configuration (defaults from load_config())
    """
    config = config or load_config()
    return PositionEngine(
        balance_source=BalanceSnapshotSource(config.api),
        analytics_source=PositionSnapshotSource(config.api),
        price_source=PriceStreamSource(config.stream),
        config=config,
        on_change=on_change,
        on_auth_error=on_auth_error,
    )


async def run_engine(
    config: Optional[SyncConfig] = None,
    duration_seconds: Optional[float] = None,
) -> List[PositionView]:
    """
    Convenience coroutine: run an engine until cancelled or for a fixed time.

    :param config: Engine configuration
    :param duration_seconds: Stop after this many seconds (None runs forever)
    :return: The last view
    """
    def log_view(view: List[PositionView]) -> None:
        for position in view:
            logger.info(
                f"{position.asset_id}: balance={position.current_balance} "
                f"price={position.current_market_price} value={position.current_value} "
                f"pnl={position.unrealized_pnl} ({position.unrealized_pnl_percent}%)"
            )

    engine = build_engine(config, on_change=log_view)
    await engine.start()
    try:
        if duration_seconds is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration_seconds)
    finally:
        await engine.stop()
    return engine.current_view()


if __name__ == "__main__":
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    print("Starting position sync engine...")
    try:
        asyncio.run(run_engine())
    except KeyboardInterrupt:
        print("\nStopped.")
