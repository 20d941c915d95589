"""
clmm-keeper Core: Rebalance Planner

Pure, deterministic functions that turn a PositionSnapshot into a
RebalancePlan: the new tick range and the ZAP swap that rebalances token
holdings toward the ratio the new range needs.

Range width uses 1 basis point ~= 1 tick. This approximates the 1.0001^tick
price curve and is close for narrow ranges; wide ranges come out slightly
narrower in price terms than the configured bps.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from core.snapshot import PositionSnapshot, is_above_range, is_below_range

Q64 = 2**64

MIN_TICK = -443636
MAX_TICK = 443636

SWAP_FEE_BUFFER = 1.003
MAX_SWAP_PERCENT = 0.95
MIN_IMBALANCE = 0.02
RATIO_FLOOR = 0.001
DEFAULT_SWAP_FEE_RATE = 0.003


class SwapDirection(Enum):
    X_TO_Y = "x_to_y"
    Y_TO_X = "y_to_x"
    NONE = "none"


class SkipReason(Enum):
    BALANCED = "balanced"
    SLIPPAGE_EXCEEDED = "slippage_exceeded"
    ZAP_DISABLED = "zap_disabled"


@dataclass(frozen=True)
class RebalancePlan:
    """
    Target range and ZAP parameters for one action.

    Produced and consumed inside a single scheduler action; never persisted.
    When `skipped` is set the executor re-adds liquidity without swapping.
    """
    new_tick_lower: int
    new_tick_upper: int
    target_x_ratio: float
    swap_direction: SwapDirection = SwapDirection.NONE
    swap_percent: float = 0.0
    skipped: bool = True
    skip_reason: Optional[SkipReason] = SkipReason.ZAP_DISABLED
    estimated_slippage_bps: int = 0
    imbalance: float = 0.0

    @property
    def swap_amount_bps(self) -> int:
        return int(math.floor(self.swap_percent * 10000))

    @property
    def should_swap(self) -> bool:
        return (
            not self.skipped
            and self.swap_direction != SwapDirection.NONE
            and self.swap_amount_bps > 0
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "new_tick_lower": self.new_tick_lower,
            "new_tick_upper": self.new_tick_upper,
            "new_sqrt_price_lower_x64": str(tick_index_to_sqrt_price_x64(self.new_tick_lower)),
            "new_sqrt_price_upper_x64": str(tick_index_to_sqrt_price_x64(self.new_tick_upper)),
            "target_x_ratio": self.target_x_ratio,
            "swap_direction": self.swap_direction.value,
            "swap_percent": self.swap_percent,
            "swap_amount_bps": self.swap_amount_bps,
            "should_swap": self.should_swap,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
            "estimated_slippage_bps": self.estimated_slippage_bps,
        }


@dataclass(frozen=True)
class SwapAmount:
    direction: SwapDirection
    amount_in_y: float
    swap_percent: float


def _floor_to_spacing(tick: int, spacing: int) -> int:
    return (tick // spacing) * spacing


def _ceil_to_spacing(tick: int, spacing: int) -> int:
    return -((-tick) // spacing) * spacing


def ticks_for_range_bps(range_bps: int) -> int:
    range_percent = range_bps / 10000
    return int(round(range_percent * 10000))


def compute_tick_range(current_tick: int, range_bps: int, tick_spacing: int) -> Tuple[int, int]:
    """
    Tick range of +/- range_bps around current_tick, snapped outward to spacing.

    Returns (lower, upper) with lower < upper, both multiples of tick_spacing
    and within the pool's tick bounds.
    """
    if tick_spacing <= 0:
        raise ValueError(f"tick_spacing must be positive, got {tick_spacing}")
    if not 1 <= range_bps <= 10000:
        raise ValueError(f"range_bps must be within 1..10000, got {range_bps}")

    half_width = ticks_for_range_bps(range_bps)
    lower = _floor_to_spacing(current_tick - half_width, tick_spacing)
    upper = _ceil_to_spacing(current_tick + half_width, tick_spacing)

    min_aligned = _ceil_to_spacing(MIN_TICK, tick_spacing)
    max_aligned = _floor_to_spacing(MAX_TICK, tick_spacing)
    lower = max(lower, min_aligned)
    upper = min(upper, max_aligned)

    if lower >= upper:
        if lower + tick_spacing <= max_aligned:
            upper = lower + tick_spacing
        else:
            lower = upper - tick_spacing
    return lower, upper


def _sqrt_price_at_tick(tick: int) -> float:
    return math.sqrt(math.pow(1.0001, tick))


def tick_index_to_sqrt_price_x64(tick: int) -> int:
    return int(math.floor(_sqrt_price_at_tick(tick) * Q64))


def calculate_target_x_ratio(sqrt_price_x64, tick_lower: int, tick_upper: int) -> float:
    """
    Fraction of position value that must be held as token X for [lower, upper].

    Per unit of liquidity at sqrt price P inside [Pa, Pb]:
      x = (sqrt_pb - sqrt_p) / (sqrt_p * sqrt_pb)
      y = sqrt_p - sqrt_pa
    X is valued in Y terms at price sqrt_p^2. Returns exactly 1.0 at or below
    the range and exactly 0.0 at or above it.
    """
    sqrt_p = int(sqrt_price_x64) / Q64
    sqrt_pa = _sqrt_price_at_tick(tick_lower)
    sqrt_pb = _sqrt_price_at_tick(tick_upper)

    if sqrt_p <= sqrt_pa:
        return 1.0
    if sqrt_p >= sqrt_pb:
        return 0.0

    amount_x_per_l = (sqrt_pb - sqrt_p) / (sqrt_p * sqrt_pb)
    amount_y_per_l = sqrt_p - sqrt_pa

    x_value_in_y = amount_x_per_l * sqrt_p * sqrt_p
    total_value = x_value_in_y + amount_y_per_l
    if total_value <= 0:
        return 0.5

    return min(max(x_value_in_y / total_value, 0.0), 1.0)


def estimate_slippage_bps(imbalance: float) -> int:
    """Rough slippage estimate as a step function of swap size."""
    if imbalance < 0.05:
        return 10
    if imbalance < 0.2:
        return 30
    return 50 + int(math.floor(imbalance * 100))


def clamp_swap_percent(value: float) -> float:
    return min(max(value, 0.0), MAX_SWAP_PERCENT)


def plan_zap(
    target_x_ratio: float,
    was_above_range: bool,
    was_below_range: bool,
    max_zap_slippage_bps: int = 0,
) -> Tuple[SwapDirection, float, float, int, Optional[SkipReason]]:
    """
    Swap direction and size for liquidity removed from an old range.

    Holdings are ~100% Y when price left the range upward and ~100% X when it
    left downward; otherwise (forced rebalance) a 50/50 split is assumed.

    Returns (direction, swap_percent, imbalance, estimated_slippage_bps, skip_reason).
    """
    if was_above_range:
        direction = SwapDirection.Y_TO_X
        swap_percent = target_x_ratio
    elif was_below_range:
        direction = SwapDirection.X_TO_Y
        swap_percent = 1.0 - target_x_ratio
    else:
        direction = SwapDirection.X_TO_Y if target_x_ratio < 0.5 else SwapDirection.Y_TO_X
        swap_percent = abs(0.5 - target_x_ratio) * 2

    swap_percent = clamp_swap_percent(swap_percent * SWAP_FEE_BUFFER)

    if was_above_range or was_below_range:
        imbalance = swap_percent
    else:
        imbalance = abs(0.5 - target_x_ratio)

    slippage_bps = estimate_slippage_bps(imbalance)

    skip_reason = None
    if max_zap_slippage_bps > 0 and slippage_bps > max_zap_slippage_bps:
        skip_reason = SkipReason.SLIPPAGE_EXCEEDED
    elif imbalance < MIN_IMBALANCE:
        skip_reason = SkipReason.BALANCED

    return direction, swap_percent, imbalance, slippage_bps, skip_reason


def calculate_swap_amount(
    value_x_in_y: float,
    value_y: float,
    target_x_ratio: float,
    swap_fee_rate: float = DEFAULT_SWAP_FEE_RATE,
) -> SwapAmount:
    """
    Exact swap needed to move known holdings to target_x_ratio.

    Values are in Y terms. Swapping s of the excess side loses s * fee, so
    s = excess / (1 - fee * target_share_of_other_side). The target ratio is
    floored away from 0 and 1 before use.
    """
    total_value = value_x_in_y + value_y
    if total_value <= 0:
        return SwapAmount(SwapDirection.NONE, 0.0, 0.0)

    ratio = min(max(target_x_ratio, RATIO_FLOOR), 1.0 - RATIO_FLOOR)
    x_excess = value_x_in_y - total_value * ratio

    if abs(x_excess) < 0.0001 * total_value:
        return SwapAmount(SwapDirection.NONE, 0.0, 0.0)

    if x_excess > 0:
        amount = x_excess / (1.0 - swap_fee_rate * ratio)
        percent = amount / value_x_in_y
        return SwapAmount(SwapDirection.X_TO_Y, amount, clamp_swap_percent(percent))

    amount = -x_excess / (1.0 - swap_fee_rate * (1.0 - ratio))
    percent = amount / value_y
    return SwapAmount(SwapDirection.Y_TO_X, amount, clamp_swap_percent(percent))


def plan_rebalance(snapshot: PositionSnapshot) -> RebalancePlan:
    """Plan for a rebalance or timer cycle: remove, re-range, optional ZAP, re-add."""
    settings = snapshot.settings
    lower, upper = compute_tick_range(snapshot.current_tick, settings.range_bps, snapshot.tick_spacing)
    target = calculate_target_x_ratio(snapshot.current_sqrt_price_x64, lower, upper)

    if not settings.use_zap:
        return RebalancePlan(new_tick_lower=lower, new_tick_upper=upper, target_x_ratio=target)

    direction, percent, imbalance, slippage_bps, skip_reason = plan_zap(
        target,
        was_above_range=is_above_range(snapshot),
        was_below_range=is_below_range(snapshot),
        max_zap_slippage_bps=settings.max_zap_slippage_bps,
    )
    return RebalancePlan(
        new_tick_lower=lower,
        new_tick_upper=upper,
        target_x_ratio=target,
        swap_direction=direction,
        swap_percent=percent,
        skipped=skip_reason is not None,
        skip_reason=skip_reason,
        estimated_slippage_bps=slippage_bps,
        imbalance=imbalance,
    )


def plan_initial_open(snapshot: PositionSnapshot) -> RebalancePlan:
    """Plan for deploying idle vault balances into a fresh range."""
    settings = snapshot.settings
    lower, upper = compute_tick_range(snapshot.current_tick, settings.range_bps, snapshot.tick_spacing)
    target = calculate_target_x_ratio(snapshot.current_sqrt_price_x64, lower, upper)

    if not settings.use_zap:
        return RebalancePlan(new_tick_lower=lower, new_tick_upper=upper, target_x_ratio=target)

    sqrt_p = snapshot.sqrt_price_x64_int / Q64
    value_x_in_y = int(snapshot.balance_x) * sqrt_p * sqrt_p
    value_y = float(int(snapshot.balance_y))
    swap = calculate_swap_amount(value_x_in_y, value_y, target)

    total_value = value_x_in_y + value_y
    imbalance = swap.amount_in_y / total_value if total_value > 0 else 0.0
    slippage_bps = estimate_slippage_bps(imbalance)

    skip_reason = None
    if settings.max_zap_slippage_bps > 0 and slippage_bps > settings.max_zap_slippage_bps:
        skip_reason = SkipReason.SLIPPAGE_EXCEEDED
    elif swap.direction == SwapDirection.NONE or imbalance < MIN_IMBALANCE:
        skip_reason = SkipReason.BALANCED

    return RebalancePlan(
        new_tick_lower=lower,
        new_tick_upper=upper,
        target_x_ratio=target,
        swap_direction=swap.direction,
        swap_percent=swap.swap_percent,
        skipped=skip_reason is not None,
        skip_reason=skip_reason,
        estimated_slippage_bps=slippage_bps,
        imbalance=imbalance,
    )
