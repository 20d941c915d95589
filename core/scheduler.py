"""
clmm-keeper Core: Scheduler

One logical tick over every tracked entity:

1. list entity ids per tracked collection, fetch snapshots concurrently
2. evaluate each snapshot that is not in flight and not paused/held
3. build and dispatch the due action through the single-flight executor
4. rebuild the read-only status feed

The tick is a plain coroutine with no timing of its own; the runner drives
it. A tick never raises: per-entity errors are skipped and anything
unexpected is reported as a failed TickReport.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.actions import ActionType, build_action_request
from core.exceptions import KeeperError, SnapshotValidationError, TransientChainError
from core.executor import ActionExecutor, now_ms as wall_clock_ms
from core.position_state import PositionStateMachine, evaluate_snapshot
from core.snapshot import EntityKind, PositionSnapshot
from infra.metrics import TickStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackedCollection:
    """A set of on-chain entities discovered from one package's events."""
    name: str
    kind: EntityKind
    package_id: str
    object_id: Optional[str] = None   # global config / registry object


@dataclass(frozen=True)
class StatusRow:
    entity_id: str
    kind: str
    state: str
    last_action_result: Optional[Dict[str, Any]]
    next_eligible_action_at: Optional[int]
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "kind": self.kind,
            "state": self.state,
            "last_action_result": self.last_action_result,
            "next_eligible_action_at": self.next_eligible_action_at,
            "reason": self.reason,
        }


@dataclass
class TickReport:
    """Outcome of one scheduler tick."""
    started_at_ms: int
    finished_at_ms: int = 0
    status: str = "ok"    # ok | partial | failed
    entities: int = 0
    evaluated: int = 0
    dispatched: List[str] = field(default_factory=list)
    skipped_in_flight: List[str] = field(default_factory=list)
    skipped_paused: List[str] = field(default_factory=list)
    skipped_already_marked: List[str] = field(default_factory=list)
    fetch_errors: Dict[str, str] = field(default_factory=dict)
    evaluation_errors: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def duration_ms(self) -> int:
        return max(0, self.finished_at_ms - self.started_at_ms)

    @property
    def success(self) -> bool:
        return self.status != "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at_ms": self.started_at_ms,
            "finished_at_ms": self.finished_at_ms,
            "duration_ms": self.duration_ms,
            "status": self.status,
            "entities": self.entities,
            "evaluated": self.evaluated,
            "dispatched": list(self.dispatched),
            "skipped_in_flight": list(self.skipped_in_flight),
            "skipped_paused": list(self.skipped_paused),
            "skipped_already_marked": list(self.skipped_already_marked),
            "fetch_errors": dict(self.fetch_errors),
            "evaluation_errors": dict(self.evaluation_errors),
            "error": self.error,
        }


@dataclass
class KeeperContext:
    """Everything a tick needs, built once at startup and injected."""
    gateway: Any
    state_machine: PositionStateMachine
    executor: ActionExecutor
    collections: Tuple[TrackedCollection, ...]
    mode: str = "DRY_RUN"
    metrics: Any = None
    alerts: Any = None
    audit: Any = None
    clock: Callable[[], int] = wall_clock_ms


class Scheduler:
    """Drives evaluation and dispatch for every tracked entity."""

    def __init__(self, context: KeeperContext):
        self.ctx = context
        self._feed: Tuple[StatusRow, ...] = ()
        self.last_report: Optional[TickReport] = None
        self.tick_count = 0

    async def tick(self, now_ms: Optional[int] = None) -> TickReport:
        now = now_ms if now_ms is not None else self.ctx.clock()
        report = TickReport(started_at_ms=now)
        try:
            await self._tick(now, report)
        except Exception as exc:
            logger.exception("Scheduler tick failed")
            report.status = "failed"
            report.error = f"{type(exc).__name__}: {exc}"

        report.finished_at_ms = self.ctx.clock()
        self.tick_count += 1
        self.last_report = report
        self._rebuild_feed()
        self._record(report)
        return report

    async def drain(self) -> None:
        """Await actions dispatched by previous ticks."""
        await self.ctx.executor.drain()

    def status_feed(self) -> Tuple[StatusRow, ...]:
        return self._feed

    async def _tick(self, now: int, report: TickReport) -> None:
        entity_ids, listing_complete = await self._list_entities(report)
        report.entities = len(entity_ids)

        if listing_complete:
            gone = set(self.ctx.state_machine.states) - set(entity_ids)
            if gone:
                logger.info(f"Forgetting {len(gone)} entities no longer tracked")
                self.ctx.state_machine.forget(gone)

        to_fetch = []
        for entity_id in entity_ids:
            if self.ctx.executor.is_in_flight(entity_id):
                report.skipped_in_flight.append(entity_id)
            else:
                to_fetch.append(entity_id)

        snapshots = await self._fetch_snapshots(to_fetch, report)

        for snapshot in snapshots:
            try:
                self._evaluate_and_dispatch(snapshot, now, report)
            except Exception as exc:
                logger.exception(f"Evaluation failed for {snapshot.entity_id}")
                report.evaluation_errors[snapshot.entity_id] = f"{type(exc).__name__}: {exc}"

        if (report.fetch_errors or report.evaluation_errors) and report.status == "ok":
            report.status = "partial"

        logger.info(
            "Tick: %d entities, %d evaluated, %d dispatched, %d busy, %d fetch errors",
            report.entities,
            report.evaluated,
            len(report.dispatched),
            len(report.skipped_in_flight),
            len(report.fetch_errors),
        )

    async def _list_entities(self, report: TickReport) -> Tuple[List[str], bool]:
        entity_ids: List[str] = []
        seen = set()
        complete = True
        failures = 0

        for collection in self.ctx.collections:
            try:
                ids = await self.ctx.gateway.fetch_all_tracked_entity_ids(collection)
            except KeeperError as exc:
                failures += 1
                complete = False
                logger.warning(f"Failed to list {collection.name}: {exc}")
                report.fetch_errors[f"collection:{collection.name}"] = str(exc)
                continue
            for entity_id in ids:
                if entity_id not in seen:
                    seen.add(entity_id)
                    entity_ids.append(entity_id)

        if self.ctx.collections and failures == len(self.ctx.collections):
            report.status = "failed"
            report.error = "no collection could be listed"
        return entity_ids, complete

    async def _fetch_snapshots(self, entity_ids: List[str], report: TickReport) -> List[PositionSnapshot]:
        results = await asyncio.gather(
            *(self.ctx.gateway.fetch_snapshot(entity_id) for entity_id in entity_ids),
            return_exceptions=True,
        )

        snapshots = []
        for entity_id, result in zip(entity_ids, results):
            if isinstance(result, PositionSnapshot):
                snapshots.append(result)
                continue
            if isinstance(result, SnapshotValidationError):
                logger.warning(f"Rejected snapshot for {entity_id}: {result.reason}")
            elif isinstance(result, TransientChainError):
                logger.warning(f"Transient error fetching {entity_id}: {result}")
            elif isinstance(result, BaseException):
                logger.error(f"Failed to fetch {entity_id}: {type(result).__name__}: {result}")
            else:
                logger.error(f"Gateway returned {type(result).__name__} for {entity_id}")
            report.fetch_errors[entity_id] = f"{type(result).__name__}: {result}"
            if self.ctx.metrics:
                self.ctx.metrics.record_fetch_error(type(result).__name__)
        return snapshots

    def _evaluate_and_dispatch(self, snapshot: PositionSnapshot, now: int, report: TickReport) -> None:
        entity_id = snapshot.entity_id
        state_machine = self.ctx.state_machine

        evaluation = evaluate_snapshot(snapshot, now)
        state_machine.observe(snapshot, evaluation, now)
        report.evaluated += 1

        if evaluation.status is None:
            report.skipped_paused.append(entity_id)
            logger.debug(f"{snapshot.short_id}: {evaluation.reason}, skipping")
            return

        if not evaluation.has_action:
            return

        request = build_action_request(evaluation.action, snapshot, now)

        if evaluation.action == ActionType.MARK_OUT_OF_RANGE:
            if not state_machine.mark_out_of_range(entity_id, snapshot.kind, now):
                report.skipped_already_marked.append(entity_id)
                return

        logger.info(f"{snapshot.short_id}: {evaluation.action.value} ({evaluation.reason})")

        if self.ctx.executor.dispatch(request):
            report.dispatched.append(entity_id)
        else:
            report.skipped_in_flight.append(entity_id)

    def _rebuild_feed(self) -> None:
        rows = []
        for entity_id, state in sorted(self.ctx.state_machine.states.items()):
            rows.append(
                StatusRow(
                    entity_id=entity_id,
                    kind=state.kind.value,
                    state=state.status.value,
                    last_action_result=state.last_result.to_dict() if state.last_result else None,
                    next_eligible_action_at=state.next_eligible_at,
                    reason=state.last_reason,
                )
            )
        self._feed = tuple(rows)

    def _record(self, report: TickReport) -> None:
        if self.ctx.metrics:
            self.ctx.metrics.observe_tick(
                TickStats(
                    status=report.status,
                    entities=report.entities,
                    actions_dispatched=len(report.dispatched),
                    fetch_errors=len(report.fetch_errors),
                    duration_seconds=report.duration_ms / 1000.0,
                )
            )
            self.ctx.metrics.record_entity_states(
                self.ctx.state_machine.get_summary()["status_breakdown"]
            )
        if self.ctx.audit:
            self.ctx.audit.log_tick(
                mode=self.ctx.mode,
                status=report.status,
                entities=report.entities,
                dispatched=report.dispatched,
                skipped_in_flight=report.skipped_in_flight,
                fetch_errors=report.fetch_errors,
                duration_ms=report.duration_ms,
                error=report.error,
                evaluation_errors=report.evaluation_errors,
            )
