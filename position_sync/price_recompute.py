"""
Price-tick patch for the reference asset.

Between snapshot polls the reference asset's valuation follows the price
stream. apply_price_tick() replaces only that one PositionView and returns
the previous list untouched when the tick is noise.

P&L is recomputed locally only when the cost basis looks consistent:

    expected_total_cost = average_entry_price * current_balance
    |total_bought_cost - expected_total_cost| < cost_tolerance * expected_total_cost

Right after a trade the analytics source can lag the balance source, and a
P&L computed against that stale basis would be briefly wrong. When the gate
fails the previous P&L values are kept.
"""

import logging
from dataclasses import replace
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List, Tuple

try:
    from .view_models import PositionView, PriceTick
    from .sync_config import RecomputePolicy
except ImportError:
    from view_models import PositionView, PriceTick
    from sync_config import RecomputePolicy

logger = logging.getLogger(__name__)


ZERO = Decimal("0")
HUNDRED = Decimal("100")
PNL_QUANTUM = Decimal("0.01")


def round_price(price: Decimal, policy: RecomputePolicy) -> Decimal:
    return price.quantize(policy.price_quantum, rounding=ROUND_HALF_UP)


def _or_zero(value: Optional[Decimal]) -> Decimal:
    return ZERO if value is None else value


def cost_basis_consistent(
    total_bought_cost: Optional[Decimal],
    expected_total_cost: Decimal,
    policy: RecomputePolicy,
) -> bool:
    """
    True if a locally recomputed P&L can be trusted.

    A missing (or zero) total cost passes; otherwise it must lie within
    policy.cost_tolerance of expected_total_cost.
    """
    if not total_bought_cost:
        return True
    return abs(total_bought_cost - expected_total_cost) < expected_total_cost * policy.cost_tolerance


def recompute_pnl(
    position: PositionView,
    price: Decimal,
    value: Decimal,
    policy: RecomputePolicy,
) -> Optional[Tuple[Decimal, Decimal]]:
    """
    Compute (unrealized_pnl, unrealized_pnl_percent) at `price`.

    :return: None if the position has no usable entry price or balance, or
        if the cost-consistency gate rejects it
    """
    entry = position.average_entry_price
    balance = position.current_balance
    if entry is None or entry <= 0 or balance <= 0:
        return None

    expected_total_cost = entry * balance
    if not cost_basis_consistent(position.total_bought_cost, expected_total_cost, policy):
        logger.info(
            f"Skipping P&L recompute for {position.asset_id}: total cost "
            f"{position.total_bought_cost} inconsistent with {expected_total_cost}"
        )
        return None

    pnl_percent = ((price - entry) / entry * HUNDRED).quantize(PNL_QUANTUM, rounding=ROUND_HALF_UP)
    pnl = (value - expected_total_cost).quantize(PNL_QUANTUM, rounding=ROUND_HALF_UP)
    return pnl, pnl_percent


def apply_price_tick(
    tick: PriceTick,
    previous: List[PositionView],
    reference_asset: str,
    policy: Optional[RecomputePolicy] = None,
) -> List[PositionView]:
    """
    Patch the reference asset's valuation (and, if allowed, P&L) for a tick.

    :param tick: Latest price for the reference asset
    :param previous: The current view
    :param reference_asset: Asset the tick belongs to
    :param policy: Rounding and suppression thresholds
    :return: `previous` when nothing visible changes, otherwise a new list in
        which only the reference element is a new object
    """
    policy = policy or RecomputePolicy()

    index = next((i for i, p in enumerate(previous) if p.asset_id == reference_asset), None)
    if index is None:
        return previous

    position = previous[index]
    if position.current_balance == 0:
        return previous

    price = round_price(tick.price, policy)
    value = (price * position.current_balance).quantize(PNL_QUANTUM, rounding=ROUND_HALF_UP)

    price_delta = abs(_or_zero(position.current_market_price) - price)
    value_delta = abs(_or_zero(position.current_value) - value)
    if price_delta < policy.price_epsilon and value_delta < policy.value_epsilon:
        logger.debug(f"Suppressed tick {tick.price} for {reference_asset}")
        return previous

    updated = replace(position, current_market_price=price, current_value=value)

    pnl = recompute_pnl(updated, price, value, policy)
    if pnl is not None:
        new_pnl, new_pnl_percent = pnl
        if (
            abs(_or_zero(position.unrealized_pnl) - new_pnl) >= policy.pnl_epsilon
            or abs(_or_zero(position.unrealized_pnl_percent) - new_pnl_percent) >= policy.pnl_epsilon
        ):
            updated = replace(updated, unrealized_pnl=new_pnl, unrealized_pnl_percent=new_pnl_percent)

    patched = list(previous)
    patched[index] = updated
    return patched
