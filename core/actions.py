"""
clmm-keeper Core: Action Requests

An ActionRequest is the job description handed to the chain gateway: which
entity, which action, the ordered on-chain sub-steps and the rebalance plan.
The gateway executes all steps as one atomic transaction.

Step order matters: the retrieved position handle feeds fee collection and
liquidity removal, removed coins feed the swap and the new position.
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from core.planner import RebalancePlan, plan_initial_open, plan_rebalance
from core.snapshot import EntityKind, PositionSnapshot


class ActionType(Enum):
    """Actions the state machine can request"""
    OPEN_INITIAL = "open_initial"
    MARK_OUT_OF_RANGE = "mark_out_of_range"
    CLEAR_OUT_OF_RANGE = "clear_out_of_range"
    REBALANCE = "rebalance"
    CYCLE = "cycle"
    FINAL_CYCLE = "final_cycle"


class ActionStep(Enum):
    """On-chain sub-steps, in the order they may appear"""
    COMPOUND_FEES = "compound_fees"
    RETRIEVE_POSITION = "retrieve_position"
    COLLECT_FEES = "collect_fees"
    COLLECT_REWARDS = "collect_rewards"
    REMOVE_LIQUIDITY = "remove_liquidity"
    CLOSE_POSITION = "close_position"
    DEPOSIT_PROCEEDS = "deposit_proceeds"
    TRANSFER_POSITION_TO_OWNER = "transfer_position_to_owner"
    TRACK_FEES = "track_fees"
    MERGE_FEES = "merge_fees"
    TAKE_VAULT_BALANCE = "take_vault_balance"
    COMPUTE_RANGE = "compute_range"
    SWAP = "swap"
    OPEN_POSITION = "open_position"
    ADD_LIQUIDITY = "add_liquidity"
    DEPOSIT_LEFTOVER = "deposit_leftover"
    STORE_POSITION = "store_position"
    RECORD_REBALANCE = "record_rebalance"
    MARK_OUT_OF_RANGE = "mark_out_of_range"
    CLEAR_OUT_OF_RANGE = "clear_out_of_range"


class RewardRouting(Enum):
    """Where collected farming rewards go"""
    DEPOSIT_TO_VAULT = "deposit_to_vault"       # timer cycle: deposit_reward
    TRACK_AND_SEND = "track_and_send"           # vault rebalance: track_reward + transfer
    TRANSFER_TO_OWNER = "transfer_to_owner"     # registry rebalance
    NONE = "none"


ERROR_TRANSIENT = "transient"
ERROR_PRECONDITION = "precondition"
ERROR_FAILURE = "failure"
ERROR_TIMEOUT = "timeout"
ERROR_UNEXPECTED = "unexpected"
ERROR_CANCELLED = "cancelled"


PLANNED_ACTIONS = {
    ActionType.OPEN_INITIAL,
    ActionType.REBALANCE,
    ActionType.CYCLE,
}


@dataclass(frozen=True)
class ActionRequest:
    """Idempotent, retryable description of one on-chain action."""
    entity_id: str
    kind: EntityKind
    action: ActionType
    steps: Tuple[ActionStep, ...]
    snapshot: PositionSnapshot
    idempotency_key: str
    created_at_ms: int
    plan: Optional[RebalancePlan] = None
    reward_routing: RewardRouting = RewardRouting.NONE
    reward_recipient: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        """JSON payload for the transaction builder."""
        snap = self.snapshot
        return {
            "idempotency_key": self.idempotency_key,
            "entity_id": self.entity_id,
            "kind": self.kind.value,
            "action": self.action.value,
            "steps": [step.value for step in self.steps],
            "owner": snap.owner,
            "pool_id": snap.pool_id,
            "token_x_type": snap.token_x_type,
            "token_y_type": snap.token_y_type,
            "tick_spacing": snap.tick_spacing,
            "position_id": snap.position_id,
            "position_type": snap.position_type,
            "liquidity": snap.liquidity,
            "rewarder_coin_types": list(snap.rewarder_coin_types),
            "reward_routing": self.reward_routing.value,
            "reward_recipient": self.reward_recipient,
            "plan": self.plan.to_dict() if self.plan else None,
        }


@dataclass
class ActionResult:
    """Outcome of one action attempt, as reported across the executor boundary."""
    entity_id: str
    action: ActionType
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None   # one of the ERROR_* constants
    started_at_ms: int = 0
    finished_at_ms: int = 0
    new_tick_lower: Optional[int] = None
    new_tick_upper: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> int:
        return max(0, self.finished_at_ms - self.started_at_ms)

    @property
    def counts_as_failure(self) -> bool:
        return not self.success and self.error_kind != ERROR_PRECONDITION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "action": self.action.value,
            "success": self.success,
            "transaction_id": self.transaction_id,
            "error": self.error,
            "error_kind": self.error_kind,
            "started_at_ms": self.started_at_ms,
            "finished_at_ms": self.finished_at_ms,
            "duration_ms": self.duration_ms,
            "new_tick_lower": self.new_tick_lower,
            "new_tick_upper": self.new_tick_upper,
        }


def _is_zero_address(address: Optional[str]) -> bool:
    if not address:
        return True
    return address.lower().replace("0x", "").strip("0") == ""


def _swap_steps(plan: Optional[RebalancePlan]) -> List[ActionStep]:
    if plan is not None and plan.should_swap:
        return [ActionStep.SWAP]
    return []


def _redeploy_steps(plan: Optional[RebalancePlan], vault: bool) -> List[ActionStep]:
    steps = [ActionStep.COMPUTE_RANGE]
    steps += _swap_steps(plan)
    steps += [ActionStep.OPEN_POSITION, ActionStep.ADD_LIQUIDITY]
    if vault:
        steps.append(ActionStep.DEPOSIT_LEFTOVER)
    steps.append(ActionStep.STORE_POSITION)
    return steps


def build_steps(
    action: ActionType,
    snapshot: PositionSnapshot,
    plan: Optional[RebalancePlan] = None,
) -> Tuple[ActionStep, ...]:
    """Ordered sub-steps for an action on this kind of entity."""
    vault = snapshot.is_vault
    rewards = [ActionStep.COLLECT_REWARDS] if snapshot.rewarder_coin_types else []
    compound = [ActionStep.COMPOUND_FEES] if snapshot.settings.auto_compound else []
    unwind = [ActionStep.RETRIEVE_POSITION, ActionStep.COLLECT_FEES, *rewards, ActionStep.REMOVE_LIQUIDITY]

    if action == ActionType.MARK_OUT_OF_RANGE:
        steps = [ActionStep.MARK_OUT_OF_RANGE]
    elif action == ActionType.CLEAR_OUT_OF_RANGE:
        steps = [ActionStep.CLEAR_OUT_OF_RANGE]
    elif action == ActionType.OPEN_INITIAL:
        steps = compound + [ActionStep.TAKE_VAULT_BALANCE] + _redeploy_steps(plan, vault=True)
    elif action == ActionType.FINAL_CYCLE:
        steps = unwind + [ActionStep.DEPOSIT_PROCEEDS, ActionStep.TRANSFER_POSITION_TO_OWNER]
    elif action == ActionType.CYCLE:
        steps = (
            unwind
            + [ActionStep.DEPOSIT_PROCEEDS, ActionStep.TRANSFER_POSITION_TO_OWNER]
            + compound
            + [ActionStep.TAKE_VAULT_BALANCE]
            + _redeploy_steps(plan, vault=True)
        )
    elif action == ActionType.REBALANCE:
        steps = unwind + [ActionStep.CLOSE_POSITION]
        if vault:
            steps += [ActionStep.TRACK_FEES, ActionStep.MERGE_FEES, ActionStep.TAKE_VAULT_BALANCE]
        else:
            steps += [ActionStep.MERGE_FEES]
        steps += _redeploy_steps(plan, vault=vault)
        steps.append(ActionStep.RECORD_REBALANCE)
    else:  # pragma: no cover - enum is exhaustive
        raise ValueError(f"Unknown action: {action}")

    return tuple(steps)


def _reward_routing(action: ActionType, snapshot: PositionSnapshot) -> Tuple[RewardRouting, Optional[str]]:
    if not snapshot.rewarder_coin_types or action not in {
        ActionType.REBALANCE, ActionType.CYCLE, ActionType.FINAL_CYCLE
    }:
        return RewardRouting.NONE, None
    if not snapshot.is_vault:
        return RewardRouting.TRANSFER_TO_OWNER, snapshot.owner
    if action in {ActionType.CYCLE, ActionType.FINAL_CYCLE}:
        return RewardRouting.DEPOSIT_TO_VAULT, None
    recipient = snapshot.owner if _is_zero_address(snapshot.fee_recipient) else snapshot.fee_recipient
    return RewardRouting.TRACK_AND_SEND, recipient


def idempotency_key(action: ActionType, snapshot: PositionSnapshot) -> str:
    """Stable key for (entity, action, observed chain state)."""
    material = json.dumps(
        [
            snapshot.entity_id,
            action.value,
            snapshot.position_id,
            snapshot.tick_lower,
            snapshot.tick_upper,
            snapshot.liquidity,
            snapshot.cycles_completed,
            snapshot.rebalance_count,
            snapshot.out_of_range_since,
            snapshot.rebalance_pending,
        ],
        sort_keys=True,
    )
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]
    return f"{snapshot.entity_id}:{action.value}:{digest}"


def build_action_request(action: ActionType, snapshot: PositionSnapshot, now_ms: int) -> ActionRequest:
    """Build the job description for an action, planning the new range when needed."""
    plan = None
    if action == ActionType.OPEN_INITIAL:
        plan = plan_initial_open(snapshot)
    elif action in PLANNED_ACTIONS:
        plan = plan_rebalance(snapshot)

    routing, recipient = _reward_routing(action, snapshot)
    return ActionRequest(
        entity_id=snapshot.entity_id,
        kind=snapshot.kind,
        action=action,
        steps=build_steps(action, snapshot, plan),
        snapshot=snapshot,
        idempotency_key=idempotency_key(action, snapshot),
        created_at_ms=now_ms,
        plan=plan,
        reward_routing=routing,
        reward_recipient=recipient,
    )
