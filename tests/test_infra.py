"""
Tests for the operational infrastructure: alerts, instance lock, audit
trail, metrics and the health server.
"""

import json
import os
import urllib.error
import urllib.request
from unittest.mock import patch

from core.audit_log import AuditLogger
from infra.alerting import AlertConfig, AlertService, AlertSeverity
from infra.healthcheck import HealthServer
from infra.instance_lock import SingleInstanceLock
from infra.metrics import MetricsRecorder, TickStats


def make_alerts(**overrides):
    config = {
        "enabled": True,
        "webhook_url": None,
        "min_severity": AlertSeverity.WARNING,
        "dry_run": True,
        "dedupe_seconds": 300.0,
    }
    config.update(overrides)
    return AlertService(AlertConfig(**config))


class TestAlertService:
    def test_disabled_without_webhook(self):
        alerts = make_alerts(dry_run=False)
        assert not alerts.is_enabled()
        assert alerts.notify(AlertSeverity.CRITICAL, "title", "message") is False

    def test_below_min_severity_dropped(self):
        alerts = make_alerts()
        assert alerts.notify(AlertSeverity.INFO, "Keeper started", "mode=DRY_RUN") is False
        assert alerts.notify(AlertSeverity.WARNING, "rebalance failed", "0xvault") is True

    def test_identical_alerts_deduped(self):
        alerts = make_alerts()
        assert alerts.notify(AlertSeverity.WARNING, "cycle failed", "0xvault: boom") is True
        assert alerts.notify(AlertSeverity.WARNING, "cycle failed", "0xvault: boom") is False
        assert alerts.notify(AlertSeverity.WARNING, "cycle failed", "0xother: boom") is True

    def test_repeat_after_window_reports_suppressed(self):
        alerts = make_alerts(dedupe_seconds=0.0)
        with patch("infra.alerting.time.monotonic", side_effect=[100.0, 100.0, 200.0]), \
                patch.object(alerts, "_send_alert") as send:
            alerts.notify(AlertSeverity.WARNING, "t", "m")
            alerts.notify(AlertSeverity.WARNING, "t", "m")
            alerts.notify(AlertSeverity.WARNING, "t", "m")

        assert send.call_count == 2
        assert send.call_args_list[1][0][3] == {"suppressed_repeats": 1}

    def test_webhook_post(self):
        alerts = make_alerts(dry_run=False, webhook_url="https://hooks.example/abc")
        with patch("infra.alerting.urllib.request.urlopen") as urlopen:
            urlopen.return_value.__enter__.return_value.status = 200
            assert alerts.notify(AlertSeverity.CRITICAL, "final_cycle failed", "0xvault", {"tx": None})

        request = urlopen.call_args[0][0]
        body = json.loads(request.data.decode("utf-8"))
        assert body["text"].startswith("[CRITICAL] final_cycle failed | 0xvault")

    def test_from_config_reads_webhook_env(self, monkeypatch):
        monkeypatch.setenv("KEEPER_HOOK", "https://hooks.example/env")
        alerts = AlertService.from_config({"enabled": True, "webhook_env": "KEEPER_HOOK", "min_severity": "critical"})
        assert alerts.is_enabled()
        assert alerts.notify(AlertSeverity.WARNING, "t", "m") is False


class TestSingleInstanceLock:
    def test_acquire_and_release(self, tmp_path):
        lock = SingleInstanceLock("keeper-test", lock_dir=str(tmp_path))
        assert lock.acquire()
        assert lock.lock_file.read_text() == str(os.getpid())
        lock.release()
        assert not lock.lock_file.exists()

    def test_live_owner_blocks(self, tmp_path):
        (tmp_path / "keeper-test.pid").write_text("12345")
        lock = SingleInstanceLock("keeper-test", lock_dir=str(tmp_path))
        with patch.object(SingleInstanceLock, "_is_process_running", return_value=True):
            assert lock.acquire() is False
        assert (tmp_path / "keeper-test.pid").read_text() == "12345"

    def test_stale_lock_reclaimed(self, tmp_path):
        (tmp_path / "keeper-test.pid").write_text("999999999")
        lock = SingleInstanceLock("keeper-test", lock_dir=str(tmp_path))
        with patch.object(SingleInstanceLock, "_is_process_running", return_value=False):
            assert lock.acquire()
        lock.release()

    def test_garbage_lock_file_reclaimed(self, tmp_path):
        (tmp_path / "keeper-test.pid").write_text("not-a-pid")
        with SingleInstanceLock("keeper-test", lock_dir=str(tmp_path)) as lock:
            assert lock.acquired


class TestAuditLogger:
    def test_recent_entries_filtered_by_type(self, tmp_path):
        audit = AuditLogger(audit_file=str(tmp_path / "audit.jsonl"))
        audit.log_tick("DRY_RUN", "ok", 3, ["0xa"], [], {}, 12)
        audit.log_tick("DRY_RUN", "partial", 3, [], ["0xa"], {"0xb": "decode"}, 15)

        recent = audit.get_recent(5, entry_type="tick")
        assert [entry["status"] for entry in recent] == ["partial", "ok"]
        assert recent[0]["fetch_errors"] == {"0xb": "decode"}
        assert audit.get_recent(5, entry_type="action") == []

    def test_missing_file(self, tmp_path):
        audit = AuditLogger(audit_file=str(tmp_path / "nested" / "audit.jsonl"))
        assert audit.get_recent() == []


class TestMetricsRecorder:
    def test_counts_without_exporter(self):
        metrics = MetricsRecorder(enabled=False)
        metrics.record_action("rebalance", "success", 1.5)
        metrics.record_action("rebalance", "success", 0.5)
        metrics.record_action("cycle", "timeout")
        metrics.record_failover("backup")

        assert metrics.action_counts() == {"rebalance:success": 2, "cycle:timeout": 1}
        assert metrics.failover_count() == 1

    def test_enabled_recorders_do_not_collide(self):
        first = MetricsRecorder(enabled=True)
        second = MetricsRecorder(enabled=True)
        first.observe_tick(TickStats("ok", 2, 1, 0, 0.2))
        second.observe_tick(TickStats("failed", 0, 0, 0, 0.1))

        assert first.registry.get_sample_value("keeper_tick_total", {"status": "ok"}) == 1.0
        assert second.registry.get_sample_value("keeper_tick_total", {"status": "ok"}) is None
        assert first.last_tick().actions_dispatched == 1

    def test_fetch_error_labels_bounded(self):
        metrics = MetricsRecorder(enabled=True)
        metrics.record_fetch_error("SnapshotValidationError")
        metrics.record_fetch_error("read timeout")
        sample = metrics.registry.get_sample_value
        assert sample("keeper_snapshot_fetch_errors_total", {"error_type": "decode_error"}) == 1.0
        assert sample("keeper_snapshot_fetch_errors_total", {"error_type": "timeout"}) == 1.0


def _get(url):
    try:
        with urllib.request.urlopen(url, timeout=5) as response:
            return response.status, json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        return exc.code, json.loads(exc.read().decode("utf-8"))


class TestHealthServer:
    def setup_method(self):
        self.status = {"ok": True, "tick_count": 4}
        self.server = HealthServer(
            port=0,
            host="127.0.0.1",
            status_provider=lambda: self.status,
            feed_provider=lambda: [{"entity_id": "0xa", "status": "IN_RANGE"}],
        )
        self.server.start()
        self.base = f"http://127.0.0.1:{self.server.port}"

    def teardown_method(self):
        self.server.stop()

    def test_health_ok(self):
        code, body = _get(self.base + "/health")
        assert code == 200
        assert body["tick_count"] == 4

    def test_health_stale(self):
        self.status = {"ok": False, "tick_count": 4}
        code, body = _get(self.base + "/health")
        assert code == 503
        assert body["ok"] is False

    def test_status_feed(self):
        code, body = _get(self.base + "/status")
        assert code == 200
        assert body == {"entities": [{"entity_id": "0xa", "status": "IN_RANGE"}]}
