"""
clmm-keeper Core: Position State Machine

Per-entity lifecycle tracking with transition validation.

States: IDLE → AWAITING_INITIAL_OPEN → IN_RANGE ↔ OUT_OF_RANGE_PENDING_DELAY
        → REBALANCE_DUE → PROCESSING → (IN_RANGE | OUT_OF_RANGE_PENDING_DELAY | COMPLETED | FAILED)

A due timer cycle is not a state. It surfaces as a CYCLE / FINAL_CYCLE action
and wins over a due rebalance, since a cycle also reopens the position.

Provides:
- Pure decision function (evaluate_snapshot)
- Transition validation
- One-shot out-of-range marking
- Summary for status reporting
"""

from enum import Enum
from dataclasses import dataclass
from typing import Optional, Dict, Any, List
import logging

from core.actions import ActionResult, ActionType
from core.snapshot import (
    EntityKind,
    PositionSnapshot,
    has_expired_timer,
    has_idle_balance,
    is_final_cycle,
    is_in_range,
    is_rebalance_due_now,
    rebalance_eligible_at,
)

logger = logging.getLogger(__name__)


class PositionStatus(Enum):
    """Position lifecycle states"""
    IDLE = "idle"                                        # No position, nothing to deploy
    AWAITING_INITIAL_OPEN = "awaiting_initial_open"      # Vault holds balance, no position
    IN_RANGE = "in_range"
    OUT_OF_RANGE_PENDING_DELAY = "out_of_range_pending_delay"
    REBALANCE_DUE = "rebalance_due"
    PROCESSING = "processing"                            # Action in flight
    FAILED = "failed"                                    # Last action failed, retried next tick
    COMPLETED = "completed"                              # Cycle cap reached, position handed back


@dataclass(frozen=True)
class Evaluation:
    """
    Outcome of evaluating one snapshot.

    `status` is None when the entity is paused or held: those are a global
    override, so the tracked status is left as it was.
    """
    status: Optional[PositionStatus]
    action: Optional[ActionType] = None
    reason: str = ""
    next_eligible_at: Optional[int] = None

    @property
    def has_action(self) -> bool:
        return self.action is not None


def _range_status(snapshot: PositionSnapshot) -> PositionStatus:
    if is_in_range(snapshot):
        return PositionStatus.IN_RANGE
    return PositionStatus.OUT_OF_RANGE_PENDING_DELAY


def _timer_next(snapshot: PositionSnapshot) -> Optional[int]:
    if snapshot.is_vault and snapshot.settings.timer_duration_ms > 0:
        return snapshot.next_execution_at
    return None


def evaluate_snapshot(snapshot: PositionSnapshot, now_ms: int) -> Evaluation:
    """
    Decide the status and the next due action for a snapshot.

    Pure: same snapshot and clock always give the same answer.
    """
    if snapshot.is_paused:
        return Evaluation(status=None, reason="paused")
    if snapshot.is_position_held:
        return Evaluation(status=None, reason="position held")

    settings = snapshot.settings

    if not snapshot.has_position:
        if (
            snapshot.is_vault
            and settings.max_cycles > 0
            and snapshot.cycles_completed >= settings.max_cycles
        ):
            return Evaluation(status=PositionStatus.COMPLETED, reason="cycle cap reached")
        if snapshot.is_vault and snapshot.is_active and has_idle_balance(snapshot):
            return Evaluation(
                status=PositionStatus.AWAITING_INITIAL_OPEN,
                action=ActionType.OPEN_INITIAL,
                reason="idle balance without position",
            )
        return Evaluation(status=PositionStatus.IDLE, reason="no position")

    if snapshot.is_vault and not snapshot.is_active:
        return Evaluation(status=_range_status(snapshot), reason="vault inactive")

    in_range = is_in_range(snapshot)

    # Cycle takes precedence over any rebalance decision
    if has_expired_timer(snapshot, now_ms):
        action = ActionType.FINAL_CYCLE if is_final_cycle(snapshot) else ActionType.CYCLE
        return Evaluation(
            status=_range_status(snapshot),
            action=action,
            reason=f"timer expired at {snapshot.next_execution_at}",
        )

    if not settings.auto_rebalance:
        return Evaluation(
            status=_range_status(snapshot),
            reason="auto-rebalance disabled",
            next_eligible_at=_timer_next(snapshot),
        )

    if snapshot.rebalance_pending:
        if snapshot.is_vault and in_range:
            return Evaluation(
                status=PositionStatus.IN_RANGE,
                action=ActionType.CLEAR_OUT_OF_RANGE,
                reason="price back in range",
            )
        if is_rebalance_due_now(snapshot, now_ms):
            return Evaluation(
                status=PositionStatus.REBALANCE_DUE,
                action=ActionType.REBALANCE,
                reason="rebalance delay elapsed",
            )
        return Evaluation(
            status=PositionStatus.OUT_OF_RANGE_PENDING_DELAY,
            reason="waiting for rebalance delay",
            next_eligible_at=rebalance_eligible_at(snapshot),
        )

    if not in_range:
        return Evaluation(
            status=PositionStatus.OUT_OF_RANGE_PENDING_DELAY,
            action=ActionType.MARK_OUT_OF_RANGE,
            reason=f"tick {snapshot.current_tick} outside [{snapshot.tick_lower}, {snapshot.tick_upper}]",
            next_eligible_at=now_ms + settings.rebalance_delay_ms,
        )

    return Evaluation(
        status=PositionStatus.IN_RANGE,
        reason="in range",
        next_eligible_at=_timer_next(snapshot),
    )


SUCCESS_STATUS = {
    ActionType.OPEN_INITIAL: PositionStatus.IN_RANGE,
    ActionType.MARK_OUT_OF_RANGE: PositionStatus.OUT_OF_RANGE_PENDING_DELAY,
    ActionType.CLEAR_OUT_OF_RANGE: PositionStatus.IN_RANGE,
    ActionType.REBALANCE: PositionStatus.IN_RANGE,
    ActionType.CYCLE: PositionStatus.IN_RANGE,
    ActionType.FINAL_CYCLE: PositionStatus.COMPLETED,
}


@dataclass
class PositionState:
    """Tracked lifecycle of one entity, as seen by this keeper."""
    entity_id: str
    kind: EntityKind
    status: PositionStatus = PositionStatus.IDLE
    status_before_processing: Optional[PositionStatus] = None
    out_of_range_since: int = 0
    next_eligible_at: Optional[int] = None
    last_action: Optional[ActionType] = None
    last_result: Optional[ActionResult] = None
    last_reason: str = ""
    updated_at_ms: int = 0
    consecutive_failures: int = 0

    @property
    def is_processing(self) -> bool:
        return self.status == PositionStatus.PROCESSING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "out_of_range_since": self.out_of_range_since,
            "next_eligible_at": self.next_eligible_at,
            "last_action": self.last_action.value if self.last_action else None,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "last_reason": self.last_reason,
            "updated_at_ms": self.updated_at_ms,
            "consecutive_failures": self.consecutive_failures,
        }


class PositionStateMachine:
    """
    Position state machine with transition validation.

    Chain observations are authoritative: observe() may move an entity to any
    evaluated status unless an action is in flight. Transitions out of
    PROCESSING only happen through complete().
    """

    _OBSERVABLE = {
        PositionStatus.IDLE,
        PositionStatus.AWAITING_INITIAL_OPEN,
        PositionStatus.IN_RANGE,
        PositionStatus.OUT_OF_RANGE_PENDING_DELAY,
        PositionStatus.REBALANCE_DUE,
        PositionStatus.COMPLETED,
    }

    VALID_TRANSITIONS = {
        PositionStatus.IDLE: _OBSERVABLE | {PositionStatus.PROCESSING},
        PositionStatus.AWAITING_INITIAL_OPEN: _OBSERVABLE | {PositionStatus.PROCESSING},
        PositionStatus.IN_RANGE: _OBSERVABLE | {PositionStatus.PROCESSING},
        PositionStatus.OUT_OF_RANGE_PENDING_DELAY: _OBSERVABLE | {PositionStatus.PROCESSING},
        PositionStatus.REBALANCE_DUE: _OBSERVABLE | {PositionStatus.PROCESSING},
        # Any observable status: a skipped action returns to where it started
        PositionStatus.PROCESSING: _OBSERVABLE | {PositionStatus.FAILED},
        PositionStatus.FAILED: _OBSERVABLE | {PositionStatus.PROCESSING},
        # Terminal unless the chain shows the entity back in play
        PositionStatus.COMPLETED: set(),
    }

    def __init__(self):
        self.states: Dict[str, PositionState] = {}
        logger.info("PositionStateMachine initialized")

    def _ensure(self, entity_id: str, kind: EntityKind) -> PositionState:
        state = self.states.get(entity_id)
        if state is None:
            state = PositionState(entity_id=entity_id, kind=kind)
            self.states[entity_id] = state
        return state

    def transition(
        self,
        entity_id: str,
        new_status: PositionStatus,
        now_ms: int = 0,
        allow_override: bool = False,
    ) -> bool:
        """
        Move an entity to a new status.

        Returns:
            True if transition succeeded, False otherwise
        """
        state = self.states.get(entity_id)
        if state is None:
            logger.error(f"Entity {entity_id} not tracked")
            return False

        current = state.status
        if current == new_status:
            return True

        if new_status not in self.VALID_TRANSITIONS.get(current, set()):
            if not allow_override:
                logger.warning(
                    f"Invalid transition for {entity_id}: {current.value} → {new_status.value}"
                )
                return False
            logger.info("Override transition for %s: %s → %s", entity_id, current.value, new_status.value)

        state.status = new_status
        state.updated_at_ms = now_ms
        logger.debug(f"Entity {entity_id} transitioned: {current.value} → {new_status.value}")
        return True

    def observe(self, snapshot: PositionSnapshot, evaluation: Evaluation, now_ms: int) -> PositionState:
        """Fold a fresh chain observation into the tracked state."""
        state = self._ensure(snapshot.entity_id, snapshot.kind)

        if snapshot.rebalance_pending:
            state.out_of_range_since = snapshot.out_of_range_since
        elif is_in_range(snapshot):
            state.out_of_range_since = 0

        if state.is_processing:
            return state

        state.last_reason = evaluation.reason
        state.next_eligible_at = evaluation.next_eligible_at
        if evaluation.status is not None:
            self.transition(snapshot.entity_id, evaluation.status, now_ms, allow_override=True)
        return state

    def mark_out_of_range(self, entity_id: str, kind: EntityKind, now_ms: int) -> bool:
        """
        Record that price left the range.

        One-shot: returns False and leaves out_of_range_since untouched when
        the entity is already marked.
        """
        state = self._ensure(entity_id, kind)
        if state.out_of_range_since > 0:
            logger.debug(f"{entity_id} already out of range since {state.out_of_range_since}")
            return False
        state.out_of_range_since = now_ms
        self.transition(entity_id, PositionStatus.OUT_OF_RANGE_PENDING_DELAY, now_ms, allow_override=True)
        return True

    def begin_processing(self, entity_id: str, kind: EntityKind, action: ActionType, now_ms: int) -> bool:
        state = self._ensure(entity_id, kind)
        if state.is_processing:
            logger.debug(f"{entity_id} already processing {state.last_action}")
            return False
        previous = state.status
        if not self.transition(entity_id, PositionStatus.PROCESSING, now_ms):
            return False
        state.status_before_processing = previous
        state.last_action = action
        return True

    def complete(self, result: ActionResult, now_ms: int) -> bool:
        """Resolve an in-flight action from its result."""
        state = self.states.get(result.entity_id)
        if state is None:
            logger.error(f"Entity {result.entity_id} not tracked")
            return False

        state.last_result = result
        if result.success:
            state.consecutive_failures = 0
            if result.action != ActionType.MARK_OUT_OF_RANGE:
                state.out_of_range_since = 0
            target = SUCCESS_STATUS[result.action]
        elif not result.counts_as_failure:
            if result.action == ActionType.MARK_OUT_OF_RANGE:
                state.out_of_range_since = 0
            target = state.status_before_processing or PositionStatus.IDLE
        else:
            state.consecutive_failures += 1
            # A failed mark never reached the chain; allow the next tick to retry it
            if result.action == ActionType.MARK_OUT_OF_RANGE:
                state.out_of_range_since = 0
            target = PositionStatus.FAILED

        return self.transition(result.entity_id, target, now_ms)

    def get_state(self, entity_id: str) -> Optional[PositionState]:
        return self.states.get(entity_id)

    def status_of(self, entity_id: str) -> Optional[PositionStatus]:
        state = self.states.get(entity_id)
        return state.status if state else None

    def get_states_by_status(self, status: PositionStatus) -> List[PositionState]:
        return [state for state in self.states.values() if state.status == status]

    def forget(self, entity_ids) -> None:
        """Drop entities that are no longer tracked on-chain."""
        for entity_id in entity_ids:
            state = self.states.get(entity_id)
            if state is not None and not state.is_processing:
                del self.states[entity_id]

    def get_summary(self) -> Dict[str, Any]:
        """Get summary statistics"""
        status_counts = {}
        for status in PositionStatus:
            status_counts[status.value] = len(self.get_states_by_status(status))

        return {
            "total_entities": len(self.states),
            "processing": status_counts[PositionStatus.PROCESSING.value],
            "failed": status_counts[PositionStatus.FAILED.value],
            "status_breakdown": status_counts,
        }
