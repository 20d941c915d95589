"""
clmm-keeper Core: Action Executor

Runs ActionRequests against the chain gateway with single-flight per entity.

The in-flight set is the lock: an entity id is added immediately before
submission and removed when the attempt resolves, whatever the outcome.
Every exception from the gateway is converted to an ActionResult here, so
nothing past this boundary sees per-entity errors as exceptions.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, FrozenSet, Optional, Set

from core.actions import (
    ERROR_CANCELLED,
    ERROR_FAILURE,
    ERROR_PRECONDITION,
    ERROR_TIMEOUT,
    ERROR_TRANSIENT,
    ERROR_UNEXPECTED,
    ActionRequest,
    ActionResult,
    ActionType,
)
from core.exceptions import ActionFailure, PreconditionError, TransientChainError
from core.position_state import PositionStateMachine
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)

DEFAULT_ACTION_TIMEOUTS = {
    ActionType.MARK_OUT_OF_RANGE: 30.0,
    ActionType.CLEAR_OUT_OF_RANGE: 30.0,
    ActionType.OPEN_INITIAL: 120.0,
    ActionType.REBALANCE: 120.0,
    ActionType.CYCLE: 120.0,
    ActionType.FINAL_CYCLE: 120.0,
}


def now_ms() -> int:
    return int(time.time() * 1000)


class ActionExecutor:
    """
    Single-flight action runner.

    dispatch() schedules an action as a task on the running loop and returns
    immediately, so unrelated entities never wait on each other. execute()
    runs one action to completion in the caller's task.
    """

    def __init__(
        self,
        gateway,
        state_machine: PositionStateMachine,
        timeouts: Optional[Dict[ActionType, float]] = None,
        metrics=None,
        alerts=None,
        audit=None,
        mode: str = "DRY_RUN",
        clock: Callable[[], int] = now_ms,
    ):
        self.gateway = gateway
        self.state_machine = state_machine
        self.timeouts = dict(DEFAULT_ACTION_TIMEOUTS)
        if timeouts:
            self.timeouts.update(timeouts)
        self.metrics = metrics
        self.alerts = alerts
        self.audit = audit
        self.mode = mode
        self.clock = clock

        self._in_flight: Set[str] = set()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._requests: Dict[str, ActionRequest] = {}
        self.last_results: Dict[str, ActionResult] = {}

    @property
    def in_flight(self) -> FrozenSet[str]:
        return frozenset(self._in_flight)

    def is_in_flight(self, entity_id: str) -> bool:
        return entity_id in self._in_flight

    def _acquire(self, request: ActionRequest) -> bool:
        if request.entity_id in self._in_flight:
            logger.debug(f"{request.entity_id} busy, skipping {request.action.value}")
            return False
        if not self.state_machine.begin_processing(
            request.entity_id, request.kind, request.action, self.clock()
        ):
            return False
        self._in_flight.add(request.entity_id)
        self._report_in_flight()
        return True

    def dispatch(self, request: ActionRequest) -> bool:
        """
        Start an action in the background.

        Returns:
            True if the action was started, False if the entity is busy
        """
        if not self._acquire(request):
            return False
        task = asyncio.get_running_loop().create_task(
            self._run(request), name=f"action:{request.idempotency_key}"
        )
        self._tasks[request.entity_id] = task
        self._requests[request.entity_id] = request
        return True

    async def execute(self, request: ActionRequest) -> Optional[ActionResult]:
        """Run an action to completion. Returns None if the entity is busy."""
        if not self._acquire(request):
            return None
        return await self._run(request)

    async def drain(self) -> None:
        """Wait for every outstanding action."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
            # Tasks cancelled before they started never reach _finish
            for entity_id, task in list(self._tasks.items()):
                if task.done():
                    request = self._requests[entity_id]
                    cancelled = self._failed(request, self.clock(), ERROR_CANCELLED, "cancelled before start")
                    self._finish(request, cancelled)

    def cancel_all(self) -> int:
        """Cancel every outstanding action task. Returns how many were cancelled."""
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        return len(pending)

    async def _run(self, request: ActionRequest) -> ActionResult:
        started = self.clock()
        result = None
        try:
            result = await self._submit(request, started)
        finally:
            if result is None:
                result = self._failed(request, started, ERROR_CANCELLED, "cancelled")
            self._finish(request, result)
        return result

    async def _submit(self, request: ActionRequest, started: int) -> ActionResult:
        timeout = self.timeouts.get(request.action, 120.0)
        logger.info(
            "Submitting %s for %s (%d steps, key=%s)",
            request.action.value,
            request.snapshot.short_id,
            len(request.steps),
            request.idempotency_key,
        )
        try:
            result = await asyncio.wait_for(self.gateway.submit_action(request), timeout=timeout)
        except asyncio.TimeoutError:
            # The submitting thread is not interrupted: the transaction can still land.
            # The next tick re-reads the entity from chain before acting again.
            logger.warning(
                "%s for %s timed out after %ss (key=%s); it may still land on chain",
                request.action.value,
                request.entity_id,
                timeout,
                request.idempotency_key,
            )
            result = self._failed(request, started, ERROR_TIMEOUT, f"timed out after {timeout}s")
            result.details = {"idempotency_key": request.idempotency_key}
            return result
        except TransientChainError as exc:
            logger.warning(f"{request.action.value} for {request.entity_id} hit transient error: {exc}")
            return self._failed(request, started, ERROR_TRANSIENT, str(exc))
        except PreconditionError as exc:
            logger.info(f"Skipping {request.action.value} for {request.entity_id}: {exc.reason}")
            return self._failed(request, started, ERROR_PRECONDITION, exc.reason)
        except ActionFailure as exc:
            logger.error(f"{request.action.value} for {request.entity_id} failed: {exc.reason}")
            result = self._failed(request, started, ERROR_FAILURE, exc.reason)
            result.transaction_id = exc.transaction_id
            return result
        except Exception as exc:
            logger.exception(f"Unexpected error running {request.action.value} for {request.entity_id}")
            return self._failed(request, started, ERROR_UNEXPECTED, f"{type(exc).__name__}: {exc}")

        result.started_at_ms = result.started_at_ms or started
        result.finished_at_ms = result.finished_at_ms or self.clock()
        return result

    def _failed(self, request: ActionRequest, started: int, kind: str, error: str) -> ActionResult:
        return ActionResult(
            entity_id=request.entity_id,
            action=request.action,
            success=False,
            error=error,
            error_kind=kind,
            started_at_ms=started,
            finished_at_ms=self.clock(),
        )

    def _finish(self, request: ActionRequest, result: ActionResult) -> None:
        self._in_flight.discard(request.entity_id)
        self._tasks.pop(request.entity_id, None)
        self._requests.pop(request.entity_id, None)
        self.last_results[request.entity_id] = result
        self.state_machine.complete(result, self.clock())
        self._report_in_flight()

        if result.success:
            outcome = "success"
            logger.info(
                "%s for %s succeeded (tx=%s, %dms)",
                request.action.value,
                request.snapshot.short_id,
                result.transaction_id,
                result.duration_ms,
            )
        elif result.counts_as_failure:
            outcome = result.error_kind or "failure"
            self._alert_failure(request, result)
        else:
            outcome = "skipped"

        if self.metrics:
            self.metrics.record_action(request.action.value, outcome, result.duration_ms / 1000.0)
        if self.audit:
            self.audit.log_action(request, result, self.mode)

    def _alert_failure(self, request: ActionRequest, result: ActionResult) -> None:
        if not self.alerts:
            return
        state = self.state_machine.get_state(request.entity_id)
        failures = state.consecutive_failures if state else 1
        severity = AlertSeverity.CRITICAL if failures >= 3 else AlertSeverity.WARNING
        self.alerts.notify(
            severity,
            f"{request.action.value} failed",
            f"{request.entity_id}: {result.error}",
            {
                "kind": request.kind.value,
                "error_kind": result.error_kind,
                "consecutive_failures": failures,
                "transaction_id": result.transaction_id,
            },
        )

    def _report_in_flight(self) -> None:
        if self.metrics:
            self.metrics.set_in_flight(len(self._in_flight))
