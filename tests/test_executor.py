"""
Tests for the single-flight action executor.

Async paths are driven with asyncio.run so no event-loop plugin is needed.
"""

import asyncio
from unittest.mock import Mock

from core.actions import (
    ERROR_CANCELLED,
    ERROR_FAILURE,
    ERROR_PRECONDITION,
    ERROR_TIMEOUT,
    ERROR_TRANSIENT,
    ERROR_UNEXPECTED,
    ActionType,
    build_action_request,
)
from core.exceptions import ActionFailure, PreconditionError, TransientChainError
from core.executor import ActionExecutor
from core.position_state import PositionStateMachine, PositionStatus, evaluate_snapshot
from infra.alerting import AlertSeverity
from infra.metrics import MetricsRecorder
from tests.helpers import START_MS, FakeChainGateway, FakeClock, make_snapshot

AUTO = {"auto_rebalance": True, "rebalance_delay_ms": 60_000}


def due_snapshot(entity_id="0xvault0001"):
    return make_snapshot(
        entity_id,
        current_tick=1200,
        settings=AUTO,
        rebalance_pending=True,
        out_of_range_since=START_MS - 60_000,
    )


class TestActionExecutor:
    def setup_method(self):
        self.clock = FakeClock()
        self.gateway = FakeChainGateway()
        self.state_machine = PositionStateMachine()
        self.metrics = MetricsRecorder(enabled=False)
        self.alerts = Mock()
        self.audit = Mock()
        self.executor = ActionExecutor(
            gateway=self.gateway,
            state_machine=self.state_machine,
            metrics=self.metrics,
            alerts=self.alerts,
            audit=self.audit,
            clock=self.clock,
        )

    def _request(self, entity_id="0xvault0001"):
        snapshot = due_snapshot(entity_id)
        self.state_machine.observe(snapshot, evaluate_snapshot(snapshot, START_MS), START_MS)
        return build_action_request(ActionType.REBALANCE, snapshot, START_MS)

    def test_success(self):
        request = self._request()
        result = asyncio.run(self.executor.execute(request))

        assert result.success
        assert result.transaction_id == "digest-1"
        assert (result.new_tick_lower, result.new_tick_upper) == (700, 1700)
        assert self.state_machine.status_of(request.entity_id) == PositionStatus.IN_RANGE
        assert not self.executor.in_flight
        assert self.metrics.action_counts() == {"rebalance:success": 1}
        self.audit.log_action.assert_called_once()
        self.alerts.notify.assert_not_called()

    def test_single_flight(self):
        request = self._request()

        async def scenario():
            self.gateway.hold(request.entity_id)
            assert self.executor.dispatch(request)
            assert self.executor.is_in_flight(request.entity_id)
            assert not self.executor.dispatch(request)
            assert await self.executor.execute(request) is None
            assert self.state_machine.status_of(request.entity_id) == PositionStatus.PROCESSING

            self.gateway.release_all()
            await self.executor.drain()

        asyncio.run(scenario())

        assert len(self.gateway.submitted) == 1
        assert not self.executor.in_flight
        assert self.executor.last_results[request.entity_id].success

    def test_unrelated_entities_run_concurrently(self):
        first = self._request("0xvault0001")
        second = self._request("0xvault0002")

        async def scenario():
            self.gateway.hold(first.entity_id)
            assert self.executor.dispatch(first)
            assert self.executor.dispatch(second)
            await asyncio.sleep(0.05)
            # second finished while first is still parked
            assert self.executor.in_flight == frozenset({first.entity_id})
            self.gateway.release_all()
            await self.executor.drain()

        asyncio.run(scenario())
        assert self.executor.last_results[second.entity_id].success

    def test_timeout(self, caplog):
        self.executor.timeouts[ActionType.REBALANCE] = 0.01
        self.gateway.submit_delay = 1.0
        request = self._request()

        result = asyncio.run(self.executor.execute(request))

        assert not result.success
        assert result.error_kind == ERROR_TIMEOUT
        assert self.state_machine.status_of(request.entity_id) == PositionStatus.FAILED
        assert not self.executor.in_flight
        assert result.details == {"idempotency_key": request.idempotency_key}
        assert request.idempotency_key in caplog.text

    def test_transient_error(self):
        request = self._request()
        self.gateway.outcomes[request.entity_id] = TransientChainError("rpc", ConnectionError("refused"))
        result = asyncio.run(self.executor.execute(request))
        assert result.error_kind == ERROR_TRANSIENT
        assert result.counts_as_failure

    def test_precondition_is_not_a_failure(self):
        request = self._request()
        self.gateway.outcomes[request.entity_id] = PreconditionError(request.entity_id, "already rebalanced")
        result = asyncio.run(self.executor.execute(request))

        assert result.error_kind == ERROR_PRECONDITION
        assert result.error == "already rebalanced"
        assert self.state_machine.status_of(request.entity_id) == PositionStatus.REBALANCE_DUE
        assert self.state_machine.get_state(request.entity_id).consecutive_failures == 0
        assert self.metrics.action_counts() == {"rebalance:skipped": 1}
        self.alerts.notify.assert_not_called()

    def test_action_failure_keeps_digest(self):
        request = self._request()
        self.gateway.outcomes[request.entity_id] = ActionFailure(request.entity_id, "MoveAbort 3", "0xdigest")
        result = asyncio.run(self.executor.execute(request))

        assert result.error_kind == ERROR_FAILURE
        assert result.transaction_id == "0xdigest"
        self.alerts.notify.assert_called_once()
        assert self.alerts.notify.call_args[0][0] == AlertSeverity.WARNING

    def test_unexpected_exception_is_contained(self):
        request = self._request()
        self.gateway.outcomes[request.entity_id] = KeyError("boom")
        result = asyncio.run(self.executor.execute(request))
        assert result.error_kind == ERROR_UNEXPECTED
        assert "KeyError" in result.error

    def test_repeated_failures_escalate(self):
        request = self._request()
        self.gateway.outcomes[request.entity_id] = ActionFailure(request.entity_id, "abort")

        for _ in range(3):
            asyncio.run(self.executor.execute(request))

        assert self.state_machine.get_state(request.entity_id).consecutive_failures == 3
        assert self.alerts.notify.call_args[0][0] == AlertSeverity.CRITICAL

    def test_cancel_all_releases_entity(self):
        request = self._request()

        async def scenario():
            self.gateway.hold(request.entity_id)
            self.executor.dispatch(request)
            await asyncio.sleep(0)
            assert self.executor.cancel_all() == 1
            await self.executor.drain()

        asyncio.run(scenario())

        result = self.executor.last_results[request.entity_id]
        assert result.error_kind == ERROR_CANCELLED
        assert not self.executor.in_flight
        assert self.state_machine.status_of(request.entity_id) == PositionStatus.FAILED

    def test_cancel_before_start_still_resolves(self):
        request = self._request()

        async def scenario():
            self.executor.dispatch(request)
            self.executor.cancel_all()
            await self.executor.drain()

        asyncio.run(scenario())

        assert not self.executor.in_flight
        assert self.state_machine.status_of(request.entity_id) != PositionStatus.PROCESSING
