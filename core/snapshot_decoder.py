"""
clmm-keeper Core: Snapshot Decoder

Strict decode of raw Sui Move object JSON into PositionSnapshot.

Chain objects arrive as loosely typed JSON (u64 as strings, I32 ticks as
{"fields": {"bits": ...}}, nested struct wrappers). Everything is validated
here by pydantic models; the core only ever sees a typed snapshot. Any
rejection surfaces as SnapshotValidationError for that entity.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.exceptions import SnapshotValidationError
from core.snapshot import EntityKind, PositionSettings, PositionSnapshot, to_signed_tick

logger = logging.getLogger(__name__)

VAULT_TYPE_MARKER = "::cycling_vault::Vault<"
REGISTERED_POSITION_TYPE_MARKER = "::lp_registry::RegisteredPosition"
ZERO_ADDRESS = "0x0"


@dataclass(frozen=True)
class RawMoveObject:
    """`data` section of a sui_getObject response, reduced to what decoding needs."""
    object_id: str
    type: str
    fields: Dict[str, Any]

    @classmethod
    def from_rpc(cls, data: Optional[Dict[str, Any]], requested_id: str = "") -> "RawMoveObject":
        if not data:
            raise SnapshotValidationError(requested_id, "object not found")
        content = data.get("content") or {}
        if content.get("dataType") != "moveObject":
            raise SnapshotValidationError(requested_id or data.get("objectId", ""), "not a Move object")
        return cls(
            object_id=data.get("objectId") or requested_id,
            type=data.get("type") or content.get("type") or "",
            fields=content.get("fields") or {},
        )


def parse_type_arguments(type_str: str) -> List[str]:
    """Top-level generic arguments of a Move type, e.g. Pool<A, B<C>> -> [A, B<C>]."""
    start = type_str.find("<")
    if start < 0 or not type_str.endswith(">"):
        return []
    inner = type_str[start + 1:-1]
    args, depth, current = [], 0, []
    for ch in inner:
        if ch == "<":
            depth += 1
        elif ch == ">":
            depth -= 1
        if ch == "," and depth == 0:
            args.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    if current:
        args.append("".join(current).strip())
    return args


def detect_kind(object_type: str) -> Optional[EntityKind]:
    if VAULT_TYPE_MARKER in object_type:
        return EntityKind.VAULT
    if REGISTERED_POSITION_TYPE_MARKER in object_type:
        return EntityKind.REGISTERED_POSITION
    return None


def _normalize_coin_type(name: str) -> str:
    # TypeName renders addresses without the 0x prefix
    return name if name.startswith("0x") else f"0x{name}"


class I32Field(BaseModel):
    """Move I32 as rendered by JSON-RPC: {"type": ..., "fields": {"bits": "4294966296"}}"""
    model_config = ConfigDict(extra="ignore")

    bits: int = Field(ge=0, lt=2**32)

    @model_validator(mode="before")
    @classmethod
    def unwrap_fields(cls, data: Any) -> Any:
        if isinstance(data, dict) and "fields" in data:
            return data["fields"]
        return data

    @property
    def signed(self) -> int:
        return to_signed_tick(self.bits)


def _balance_value(value: Any) -> Any:
    """Balance<T> renders either as a plain string or as {"fields": {"value": ...}}."""
    if isinstance(value, dict):
        inner = value.get("fields", value)
        return inner.get("value", "0")
    return value


def _check_uint_string(value: Any) -> str:
    text = str(value)
    if not text.isdigit():
        raise ValueError(f"expected unsigned integer string, got {value!r}")
    return text


class VaultFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    owner: str = Field(min_length=3)
    pool_id: str = Field(min_length=3)
    range_bps: int = Field(default=500, ge=1, le=10000)
    timer_duration_ms: int = Field(default=0, ge=0)
    max_cycles: int = Field(default=0, ge=0)
    cycles_completed: int = Field(default=0, ge=0)
    next_execution_at: int = Field(default=0, ge=0)
    auto_rebalance: bool = False
    use_zap: bool = True
    auto_compound: bool = False
    rebalance_delay_ms: int = Field(default=0, ge=0)
    out_of_range_since: int = Field(default=0, ge=0)
    rebalance_pending: bool = False
    rebalance_count: int = Field(default=0, ge=0)
    fee_recipient: str = ZERO_ADDRESS
    max_zap_slippage_bps: int = Field(default=0, ge=0)
    is_active: bool = False
    is_paused: bool = False
    has_position: bool = False
    balance_x: str = "0"
    balance_y: str = "0"

    @field_validator("balance_x", "balance_y", mode="before")
    @classmethod
    def unwrap_balance(cls, v: Any) -> str:
        return _check_uint_string(_balance_value(v))


class RegisteredPositionFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    owner: str = Field(min_length=3)
    pool_id: str = Field(min_length=3)
    auto_rebalance: bool = False
    auto_compound: bool = False
    recurring_count: int = Field(default=0, ge=0)
    rebalance_delay_ms: int = Field(default=0, ge=0)
    range_percent_bps: int = Field(default=500, ge=1, le=10000)
    use_zap: bool = True
    is_paused: bool = False
    is_position_held: bool = False
    rebalance_pending: bool = False
    out_of_range_since: int = Field(default=0, ge=0)
    rebalance_count: int = Field(default=0, ge=0)
    max_zap_slippage_bps: int = Field(default=0, ge=0)


class PositionFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tick_lower_index: I32Field
    tick_upper_index: I32Field
    liquidity: str = "0"

    @model_validator(mode="before")
    @classmethod
    def unwrap_value(cls, data: Any) -> Any:
        # Dynamic fields may wrap the stored struct as {"value": {"fields": {...}}}
        if isinstance(data, dict) and "tick_lower_index" not in data and isinstance(data.get("value"), dict):
            return data["value"].get("fields", data["value"])
        return data

    @field_validator("liquidity", mode="before")
    @classmethod
    def check_liquidity(cls, v: Any) -> str:
        return _check_uint_string(v)


class RewardInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    coin_type: str
    ended_at_seconds: int = 0

    @model_validator(mode="before")
    @classmethod
    def flatten(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        inner = data.get("fields", data)
        coin = inner.get("reward_coin_type", {})
        if isinstance(coin, dict):
            coin = coin.get("fields", coin).get("name", "")
        return {"coin_type": coin, "ended_at_seconds": inner.get("ended_at_seconds", 0)}


class PoolFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sqrt_price: str
    tick_index: I32Field
    tick_spacing: int = Field(gt=0)
    reward_infos: List[RewardInfo] = Field(default_factory=list)

    @field_validator("sqrt_price", mode="before")
    @classmethod
    def check_sqrt_price(cls, v: Any) -> str:
        return _check_uint_string(v)


def _position_identity(position: RawMoveObject) -> Tuple[str, str]:
    """Id and type of the stored position, looking through a dynamic field wrapper."""
    value = position.fields.get("value")
    if isinstance(value, dict) and isinstance(value.get("fields"), dict):
        uid = value["fields"].get("id")
        inner_id = uid.get("id") if isinstance(uid, dict) else uid
        return inner_id or position.object_id, value.get("type") or position.type
    return position.object_id, position.type


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"]) or "<root>"
        parts.append(f"{field}: {error['msg']}")
    return "; ".join(parts)


def _decode(model, data: Dict[str, Any], entity_id: str, what: str):
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise SnapshotValidationError(entity_id, f"invalid {what}: {_validation_summary(exc)}") from exc


def decode_entity_fields(entity: RawMoveObject):
    """Validate the entity's own fields. Returns (kind, fields model)."""
    kind = detect_kind(entity.type)
    if kind is None:
        raise SnapshotValidationError(entity.object_id, f"unrecognized object type {entity.type!r}")
    if kind == EntityKind.VAULT:
        return kind, _decode(VaultFields, entity.fields, entity.object_id, "vault fields")
    return kind, _decode(RegisteredPositionFields, entity.fields, entity.object_id, "registered position fields")


def active_rewarders(pool: PoolFields, now_ms: int) -> Tuple[str, ...]:
    now_seconds = now_ms // 1000
    return tuple(
        _normalize_coin_type(info.coin_type)
        for info in pool.reward_infos
        if info.coin_type and info.ended_at_seconds > now_seconds
    )


def decode_snapshot(
    entity: RawMoveObject,
    pool: RawMoveObject,
    position: Optional[RawMoveObject],
    now_ms: int,
) -> PositionSnapshot:
    """
    Build a PositionSnapshot from the entity, its pool and (optionally) the
    position stored in the entity's "position" dynamic field.
    """
    entity_id = entity.object_id
    kind, fields = decode_entity_fields(entity)
    pool_fields = _decode(PoolFields, pool.fields, entity_id, "pool fields")

    if kind == EntityKind.VAULT:
        type_args = parse_type_arguments(entity.type)
    else:
        type_args = parse_type_arguments(pool.type)
    if len(type_args) != 2:
        raise SnapshotValidationError(entity_id, f"cannot read token types from {entity.type or pool.type!r}")
    token_x_type, token_y_type = type_args

    position_kwargs: Dict[str, Any] = {"has_position": False}
    if position is not None:
        position_fields = _decode(PositionFields, position.fields, entity_id, "position fields")
        position_id, position_type = _position_identity(position)
        position_kwargs = {
            "has_position": True,
            "tick_lower": position_fields.tick_lower_index.signed,
            "tick_upper": position_fields.tick_upper_index.signed,
            "liquidity": position_fields.liquidity,
            "position_id": position_id,
            "position_type": position_type,
        }

    common = dict(
        entity_id=entity_id,
        kind=kind,
        owner=fields.owner,
        pool_id=fields.pool_id,
        token_x_type=token_x_type,
        token_y_type=token_y_type,
        tick_spacing=pool_fields.tick_spacing,
        current_tick=pool_fields.tick_index.signed,
        current_sqrt_price_x64=pool_fields.sqrt_price,
        rewarder_coin_types=active_rewarders(pool_fields, now_ms),
        **position_kwargs,
    )

    try:
        if kind == EntityKind.VAULT:
            settings = PositionSettings(
                auto_rebalance=fields.auto_rebalance,
                auto_compound=fields.auto_compound,
                use_zap=fields.use_zap,
                rebalance_delay_ms=fields.rebalance_delay_ms,
                range_bps=fields.range_bps,
                max_cycles=fields.max_cycles,
                max_zap_slippage_bps=fields.max_zap_slippage_bps,
                timer_duration_ms=fields.timer_duration_ms,
            )
            return PositionSnapshot(
                settings=settings,
                is_active=fields.is_active,
                is_paused=fields.is_paused,
                rebalance_pending=fields.rebalance_pending,
                out_of_range_since=fields.out_of_range_since,
                cycles_completed=fields.cycles_completed,
                next_execution_at=fields.next_execution_at,
                rebalance_count=fields.rebalance_count,
                balance_x=fields.balance_x,
                balance_y=fields.balance_y,
                fee_recipient=fields.fee_recipient,
                **common,
            )

        settings = PositionSettings(
            auto_rebalance=fields.auto_rebalance,
            auto_compound=fields.auto_compound,
            use_zap=fields.use_zap,
            rebalance_delay_ms=fields.rebalance_delay_ms,
            range_bps=fields.range_percent_bps,
            max_cycles=fields.recurring_count,
            max_zap_slippage_bps=fields.max_zap_slippage_bps,
        )
        return PositionSnapshot(
            settings=settings,
            is_paused=fields.is_paused,
            is_position_held=fields.is_position_held,
            rebalance_pending=fields.rebalance_pending,
            out_of_range_since=fields.out_of_range_since,
            rebalance_count=fields.rebalance_count,
            **common,
        )
    except ValueError as exc:
        raise SnapshotValidationError(entity_id, str(exc)) from exc
