"""
Tests for the keeper runner: wiring, one-shot runs, health reporting and
clean shutdown.
"""

import asyncio
from unittest.mock import patch

import pytest

from core.config import KeeperConfig
from core.exceptions import TransientChainError
from runner.main_loop import KeeperLoop, main
from tests.helpers import VAULT_PACKAGE, FakeChainGateway, make_snapshot

AUTO = {"auto_rebalance": True, "rebalance_delay_ms": 60_000}


def make_config(tmp_path, **overrides):
    raw = {
        "mode": "DRY_RUN",
        "vaults": {"package_id": VAULT_PACKAGE, "config_id": "0xconfig"},
        "loop": {"poll_interval_seconds": 5, "jitter_pct": 0.0, "shutdown_grace_seconds": 1},
        "logging": {"file": str(tmp_path / "logs" / "keeper.log")},
        "monitoring": {
            "healthcheck_enabled": False,
            "metrics_enabled": False,
            "audit_file": str(tmp_path / "logs" / "audit.jsonl"),
            "lock_dir": str(tmp_path / "data"),
        },
    }
    raw.update(overrides)
    return KeeperConfig.model_validate(raw)


class TestKeeperLoop:
    def setup_method(self):
        self.gateway = FakeChainGateway()
        self.keeper = None

    def teardown_method(self):
        if self.keeper is not None:
            self.keeper.instance_lock.release()

    def build(self, tmp_path, **overrides):
        self.keeper = KeeperLoop(config=make_config(tmp_path, **overrides), gateway=self.gateway)
        return self.keeper

    def test_run_once_dispatches_and_drains(self, tmp_path):
        self.gateway.add("vaults", make_snapshot("0xvault0001", current_tick=1200, settings=AUTO))
        keeper = self.build(tmp_path)

        report = asyncio.run(keeper.run_once())

        assert report.success
        assert report.dispatched == ["0xvault0001"]
        assert self.gateway.submitted_actions() == ["mark_out_of_range"]
        assert keeper.executor.in_flight == frozenset()
        actions = keeper.audit.get_recent(5, entry_type="action")
        assert actions[0]["action"] == "mark_out_of_range"

    def test_health_after_tick(self, tmp_path):
        self.gateway.add("vaults", make_snapshot("0xvault0001"))
        keeper = self.build(tmp_path)
        asyncio.run(keeper.run_once())

        health = keeper.health_status()
        assert health["ok"] is True
        assert health["tick_count"] == 1
        assert health["last_tick_status"] == "ok"
        assert health["entities"] == 1
        assert health["in_flight"] == 0

    def test_health_stale_tick(self, tmp_path):
        keeper = self.build(tmp_path)
        asyncio.run(keeper.run_once())
        keeper._last_tick_monotonic -= 60
        assert keeper.health_status()["ok"] is False

    def test_second_instance_refused(self, tmp_path):
        self.build(tmp_path)
        with patch("infra.instance_lock.SingleInstanceLock._is_process_running", return_value=True), \
                patch("infra.instance_lock.os.getpid", return_value=-1):
            with pytest.raises(RuntimeError):
                KeeperLoop(config=make_config(tmp_path), gateway=FakeChainGateway())

    def test_failed_listing_alerts(self, tmp_path):
        self.gateway.list_errors["vaults"] = TransientChainError("rpc unavailable")
        keeper = self.build(tmp_path)
        with patch.object(keeper.alerts, "notify") as notify:
            report = asyncio.run(keeper.run_once())

        assert report.status == "failed"
        titles = [call.args[1] for call in notify.call_args_list]
        assert "Keeper tick failed" in titles

    def test_run_forever_stops_and_releases_lock(self, tmp_path):
        keeper = self.build(tmp_path)

        async def scenario():
            task = asyncio.get_running_loop().create_task(keeper.run_forever())
            while keeper.scheduler.tick_count == 0:
                await asyncio.sleep(0.01)
            keeper.stop()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())
        assert keeper.scheduler.tick_count >= 1
        assert not keeper.instance_lock.lock_file.exists()

    def test_shutdown_cancels_stuck_actions(self, tmp_path):
        self.gateway.add("vaults", make_snapshot("0xvault0001", current_tick=1200, settings=AUTO))
        self.gateway.hold("0xvault0001")
        keeper = self.build(tmp_path)

        async def scenario():
            await keeper.startup()
            await keeper.run_tick()
            assert keeper.executor.is_in_flight("0xvault0001")
            await keeper.shutdown()

        asyncio.run(scenario())
        assert keeper.executor.in_flight == frozenset()
        assert keeper.executor.last_results["0xvault0001"].error_kind == "cancelled"


class TestMain:
    def test_config_error_exit_code(self, tmp_path):
        assert main(["--once", "--config-dir", str(tmp_path)]) == 1
