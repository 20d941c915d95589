"""
Tests for the scheduler tick: isolation of per-entity errors, single-flight
skipping, mark idempotence and the status feed.
"""

import asyncio
from unittest.mock import patch

from core.actions import build_action_request
from core.audit_log import AuditLogger
from core.exceptions import SnapshotValidationError, TransientChainError
from core.executor import ActionExecutor
from core.position_state import PositionStateMachine, PositionStatus
from core.scheduler import KeeperContext, Scheduler, TrackedCollection
from core.snapshot import EntityKind
from infra.metrics import MetricsRecorder
from tests.helpers import (
    REGISTRY_PACKAGE,
    START_MS,
    VAULT_PACKAGE,
    FakeChainGateway,
    FakeClock,
    make_snapshot,
)

AUTO = {"auto_rebalance": True, "rebalance_delay_ms": 60_000}

VAULTS = TrackedCollection("vaults", EntityKind.VAULT, VAULT_PACKAGE, "0xconfig")
REGISTRY = TrackedCollection("lp_registry", EntityKind.REGISTERED_POSITION, REGISTRY_PACKAGE, "0xregistry")


def rebalance_due(entity_id):
    return make_snapshot(
        entity_id,
        current_tick=1200,
        settings=AUTO,
        rebalance_pending=True,
        out_of_range_since=START_MS - 60_000,
    )


class TestScheduler:
    def setup_method(self):
        self.clock = FakeClock()
        self.gateway = FakeChainGateway()
        self.state_machine = PositionStateMachine()
        self.metrics = MetricsRecorder(enabled=False)
        self.executor = ActionExecutor(self.gateway, self.state_machine, metrics=self.metrics, clock=self.clock)
        self.scheduler = Scheduler(
            KeeperContext(
                gateway=self.gateway,
                state_machine=self.state_machine,
                executor=self.executor,
                collections=(VAULTS, REGISTRY),
                metrics=self.metrics,
                clock=self.clock,
            )
        )

    def run_tick(self, drain=True):
        async def scenario():
            report = await self.scheduler.tick()
            if drain:
                await self.scheduler.drain()
            return report

        return asyncio.run(scenario())

    def test_dispatches_due_action(self):
        self.gateway.add("vaults", rebalance_due("0xvault0001"))
        report = self.run_tick()

        assert report.status == "ok"
        assert report.dispatched == ["0xvault0001"]
        assert self.gateway.submitted_actions() == ["rebalance"]
        assert self.state_machine.status_of("0xvault0001") == PositionStatus.IN_RANGE

    def test_fetch_errors_are_isolated(self):
        self.gateway.add("vaults", rebalance_due("0xvault0001"))
        self.gateway.entity_ids["vaults"].append("0xbroken")
        self.gateway.snapshots["0xbroken"] = TransientChainError("sui_getObject failed after 3 attempts")
        self.gateway.entity_ids["lp_registry"] = ["0xmissing"]

        report = self.run_tick()

        assert report.status == "partial"
        assert report.success
        assert set(report.fetch_errors) == {"0xbroken", "0xmissing"}
        assert "SnapshotValidationError" in report.fetch_errors["0xmissing"]
        assert report.dispatched == ["0xvault0001"]

    def test_evaluation_errors_are_isolated(self):
        self.gateway.add("vaults", make_snapshot("0xbad", current_tick=1200, settings=AUTO))
        self.gateway.add("vaults", rebalance_due("0xvault0001"))

        def build(action, snapshot, now):
            if snapshot.entity_id == "0xbad":
                raise ZeroDivisionError("degenerate pool")
            return build_action_request(action, snapshot, now)

        with patch("core.scheduler.build_action_request", side_effect=build):
            report = self.run_tick()

        assert report.status == "partial"
        assert report.dispatched == ["0xvault0001"]
        assert report.evaluation_errors == {"0xbad": "ZeroDivisionError: degenerate pool"}
        assert self.gateway.submitted_actions() == ["rebalance"]
        # not marked locally, so the next tick tries again
        assert self.state_machine.get_state("0xbad").out_of_range_since == 0

    def test_in_flight_entity_is_not_refetched(self):
        self.gateway.add("vaults", rebalance_due("0xvault0001"))

        async def scenario():
            self.gateway.hold("0xvault0001")
            first = await self.scheduler.tick()
            second = await self.scheduler.tick()
            self.gateway.release_all()
            await self.scheduler.drain()
            return first, second

        first, second = asyncio.run(scenario())

        assert first.dispatched == ["0xvault0001"]
        assert second.skipped_in_flight == ["0xvault0001"]
        assert self.gateway.fetch_calls == ["0xvault0001"]
        assert len(self.gateway.submitted) == 1

    def test_mark_sent_once(self):
        self.gateway.add("vaults", make_snapshot("0xvault0001", current_tick=1200, settings=AUTO))

        first = self.run_tick()
        self.clock.advance(5_000)
        second = self.run_tick()

        assert first.dispatched == ["0xvault0001"]
        assert second.skipped_already_marked == ["0xvault0001"]
        assert self.gateway.submitted_actions() == ["mark_out_of_range"]

    def test_failed_mark_is_retried(self):
        from core.exceptions import ActionFailure

        self.gateway.add("vaults", make_snapshot("0xvault0001", current_tick=1200, settings=AUTO))
        self.gateway.outcomes["0xvault0001"] = ActionFailure("0xvault0001", "abort")
        self.run_tick()

        del self.gateway.outcomes["0xvault0001"]
        second = self.run_tick()

        assert second.dispatched == ["0xvault0001"]
        assert self.gateway.submitted_actions() == ["mark_out_of_range", "mark_out_of_range"]

    def test_paused_entities_are_skipped(self):
        self.gateway.add("vaults", make_snapshot("0xvault0001", current_tick=1200, settings=AUTO, is_paused=True))
        report = self.run_tick()
        assert report.skipped_paused == ["0xvault0001"]
        assert not self.gateway.submitted

    def test_partial_listing_keeps_other_collection(self):
        self.gateway.add("vaults", rebalance_due("0xvault0001"))
        self.gateway.list_errors["lp_registry"] = TransientChainError("suix_queryEvents failed")

        report = self.run_tick()

        assert report.status == "partial"
        assert "collection:lp_registry" in report.fetch_errors
        assert report.dispatched == ["0xvault0001"]

    def test_all_listings_failing_fails_tick(self):
        self.gateway.list_errors["vaults"] = TransientChainError("down")
        self.gateway.list_errors["lp_registry"] = TransientChainError("down")

        report = self.run_tick()

        assert report.status == "failed"
        assert not report.success
        assert report.error == "no collection could be listed"

    def test_tick_never_raises(self):
        async def explode(collection):
            raise RuntimeError("unexpected")

        self.gateway.fetch_all_tracked_entity_ids = explode
        report = self.run_tick()

        assert report.status == "failed"
        assert "RuntimeError" in report.error
        assert self.scheduler.tick_count == 1

    def test_untracked_entities_are_forgotten(self):
        self.gateway.add("vaults", make_snapshot("0xvault0001", settings=AUTO))
        self.gateway.add("vaults", make_snapshot("0xvault0002", settings=AUTO))
        self.run_tick()
        assert len(self.state_machine.states) == 2

        self.gateway.entity_ids["vaults"].remove("0xvault0002")
        self.run_tick()
        assert set(self.state_machine.states) == {"0xvault0001"}

    def test_status_feed(self):
        self.gateway.add("vaults", rebalance_due("0xvault0002"))
        self.gateway.add("lp_registry", make_snapshot("0xreg0001", EntityKind.REGISTERED_POSITION, settings=AUTO))

        self.run_tick()
        self.gateway.snapshots["0xvault0002"] = make_snapshot("0xvault0002", settings=AUTO, rebalance_count=1)
        self.run_tick()

        rows = {row.entity_id: row for row in self.scheduler.status_feed()}
        assert [row.entity_id for row in self.scheduler.status_feed()] == ["0xreg0001", "0xvault0002"]
        assert rows["0xreg0001"].kind == "registered_position"
        assert rows["0xreg0001"].state == "in_range"
        assert rows["0xreg0001"].last_action_result is None
        assert rows["0xvault0002"].last_action_result["action"] == "rebalance"
        assert rows["0xvault0002"].last_action_result["success"] is True
        assert rows["0xvault0002"].to_dict()["state"] == "in_range"

    def test_final_cycle_completes_vault(self):
        timer = {"timer_duration_ms": 3_600_000, "max_cycles": 3}
        self.gateway.add(
            "vaults",
            make_snapshot("0xvault0001", settings=timer, cycles_completed=2, next_execution_at=START_MS - 1),
        )

        first = self.run_tick()
        assert self.gateway.submitted_actions() == ["final_cycle"]
        assert self.state_machine.status_of("0xvault0001") == PositionStatus.COMPLETED

        self.gateway.snapshots["0xvault0001"] = make_snapshot(
            "0xvault0001", settings=timer, has_position=False, cycles_completed=3
        )
        second = self.run_tick()

        assert first.dispatched == ["0xvault0001"]
        assert second.dispatched == []
        assert self.state_machine.status_of("0xvault0001") == PositionStatus.COMPLETED
        assert self.gateway.submitted_actions() == ["final_cycle"]

    def test_records_metrics_and_audit(self, tmp_path):
        audit = AuditLogger(audit_file=str(tmp_path / "audit.jsonl"))
        self.scheduler.ctx.audit = audit
        self.executor.audit = audit
        self.gateway.add("vaults", rebalance_due("0xvault0001"))
        self.gateway.entity_ids["vaults"].append("0xbad")
        self.gateway.snapshots["0xbad"] = SnapshotValidationError("0xbad", "invalid pool fields")

        self.run_tick()

        stats = self.metrics.last_tick()
        assert stats.status == "partial"
        assert stats.actions_dispatched == 1
        assert stats.fetch_errors == 1
        assert audit.get_recent(1, "tick")[0]["dispatched"] == ["0xvault0001"]
        assert audit.get_recent(1, "action")[0]["result"]["success"] is True
