"""
clmm-keeper Core: Position Snapshot Model

Canonical, chain-agnostic view of one managed position (LP registry entry or
cycling vault), rebuilt from chain state on every poll and never mutated.

Provides:
- Signed tick conversion for the chain's u32 tick encoding
- Range / timer / rebalance-delay predicates used by every other component
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

MAX_I32 = 2**31 - 1
U32_OVERFLOW = 2**32


class EntityKind(Enum):
    """Kind of on-chain object holding the position"""
    REGISTERED_POSITION = "registered_position"
    VAULT = "vault"


def to_signed_tick(raw: int) -> int:
    """Convert an I32 tick stored as u32 bits into a signed tick."""
    value = int(raw)
    if value < 0 or value >= U32_OVERFLOW:
        raise ValueError(f"Tick bits out of u32 range: {raw}")
    if value > MAX_I32:
        return value - U32_OVERFLOW
    return value


def _is_uint_string(value: str) -> bool:
    return isinstance(value, str) and value.isdigit()


@dataclass(frozen=True)
class PositionSettings:
    """Owner-configured automation settings"""
    auto_rebalance: bool = False
    auto_compound: bool = False
    use_zap: bool = True
    rebalance_delay_ms: int = 0
    range_bps: int = 500
    max_cycles: int = 0              # 0 = unlimited
    max_zap_slippage_bps: int = 0    # 0 = unlimited
    timer_duration_ms: int = 0       # vault timer cycling, 0 = disabled

    def __post_init__(self):
        if not 1 <= self.range_bps <= 10000:
            raise ValueError(f"range_bps must be within 1..10000, got {self.range_bps}")
        for name in ("rebalance_delay_ms", "max_cycles", "max_zap_slippage_bps", "timer_duration_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")


@dataclass(frozen=True)
class PositionSnapshot:
    """
    Read-only snapshot of a managed position.

    Ticks are already signed. `liquidity`, `current_sqrt_price_x64` and the
    balances are decimal strings so u128 values keep full precision.
    """
    entity_id: str
    kind: EntityKind
    owner: str
    pool_id: str
    token_x_type: str
    token_y_type: str
    tick_spacing: int
    current_tick: int
    current_sqrt_price_x64: str
    settings: PositionSettings = field(default_factory=PositionSettings)

    # Position (absent when has_position is False)
    has_position: bool = True
    tick_lower: int = 0
    tick_upper: int = 0
    liquidity: str = "0"
    position_id: Optional[str] = None
    position_type: Optional[str] = None

    # Mirrored on-chain flags
    is_active: bool = True
    is_paused: bool = False
    is_position_held: bool = False
    rebalance_pending: bool = False
    out_of_range_since: int = 0
    cycles_completed: int = 0
    next_execution_at: int = 0
    rebalance_count: int = 0

    # Vault balances not currently deployed
    balance_x: str = "0"
    balance_y: str = "0"

    fee_recipient: Optional[str] = None
    rewarder_coin_types: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.entity_id:
            raise ValueError("Snapshot entity_id is required")
        if self.tick_spacing <= 0:
            raise ValueError(f"tick_spacing must be positive, got {self.tick_spacing}")
        for name in ("liquidity", "current_sqrt_price_x64", "balance_x", "balance_y"):
            if not _is_uint_string(getattr(self, name)):
                raise ValueError(f"{name} must be an unsigned decimal string, got {getattr(self, name)!r}")
        if self.has_position:
            if self.tick_lower >= self.tick_upper:
                raise ValueError(
                    f"tick_lower ({self.tick_lower}) must be below tick_upper ({self.tick_upper})"
                )
            if self.tick_lower % self.tick_spacing or self.tick_upper % self.tick_spacing:
                raise ValueError(
                    f"ticks [{self.tick_lower}, {self.tick_upper}] not aligned to spacing {self.tick_spacing}"
                )

    @property
    def liquidity_int(self) -> int:
        return int(self.liquidity)

    @property
    def sqrt_price_x64_int(self) -> int:
        return int(self.current_sqrt_price_x64)

    @property
    def is_vault(self) -> bool:
        return self.kind == EntityKind.VAULT

    @property
    def short_id(self) -> str:
        return f"{self.entity_id[:10]}..."


def is_in_range(snapshot: PositionSnapshot) -> bool:
    """True when current tick is within [tick_lower, tick_upper].

    A snapshot without a position or with zero liquidity has no meaningful
    range and is reported as in range.
    """
    if not snapshot.has_position or snapshot.liquidity_int == 0:
        return True
    return snapshot.tick_lower <= snapshot.current_tick <= snapshot.tick_upper


def is_above_range(snapshot: PositionSnapshot) -> bool:
    return snapshot.has_position and snapshot.current_tick > snapshot.tick_upper


def is_below_range(snapshot: PositionSnapshot) -> bool:
    return snapshot.has_position and snapshot.current_tick < snapshot.tick_lower


def cycles_remaining(snapshot: PositionSnapshot) -> bool:
    max_cycles = snapshot.settings.max_cycles
    return max_cycles == 0 or snapshot.cycles_completed < max_cycles


def is_final_cycle(snapshot: PositionSnapshot) -> bool:
    """Next timer cycle reaches the configured cap."""
    max_cycles = snapshot.settings.max_cycles
    return max_cycles > 0 and snapshot.cycles_completed + 1 >= max_cycles


def has_expired_timer(snapshot: PositionSnapshot, now_ms: int) -> bool:
    """Timer-cycling vault whose next execution time has passed."""
    if not snapshot.is_vault or snapshot.settings.timer_duration_ms <= 0:
        return False
    if not cycles_remaining(snapshot):
        return False
    return now_ms >= snapshot.next_execution_at


def rebalance_eligible_at(snapshot: PositionSnapshot) -> Optional[int]:
    if not snapshot.rebalance_pending:
        return None
    return snapshot.out_of_range_since + snapshot.settings.rebalance_delay_ms


def is_rebalance_due_now(snapshot: PositionSnapshot, now_ms: int) -> bool:
    """Pending rebalance whose delay has elapsed."""
    eligible_at = rebalance_eligible_at(snapshot)
    return eligible_at is not None and now_ms >= eligible_at


def has_idle_balance(snapshot: PositionSnapshot) -> bool:
    return int(snapshot.balance_x) > 0 or int(snapshot.balance_y) > 0
