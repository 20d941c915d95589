"""
clmm-keeper Runner: Main Loop

Builds every component once from config and drives the scheduler.

Flow per tick:
1. List tracked entities and fetch fresh snapshots
2. Evaluate each snapshot against its tracked state
3. Dispatch due actions through the single-flight executor
4. Publish the status feed, metrics and audit entries

Actions run in the background; the loop only waits for them on --once and
at shutdown.
"""

import argparse
import asyncio
import logging
import random
import signal
import sys
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from core.audit_log import AuditLogger
from core.chain_gateway import ChainGateway, SuiChainGateway
from core.config import KeeperConfig, load_config
from core.exceptions import ConfigurationError
from core.executor import ActionExecutor
from core.position_state import PositionStateMachine
from core.scheduler import KeeperContext, Scheduler, TickReport
from infra.alerting import AlertService, AlertSeverity
from infra.healthcheck import HealthServer
from infra.instance_lock import SingleInstanceLock
from infra.metrics import MetricsRecorder
from infra.rpc_client import SuiRpcClient
from infra.signer import OperatorSigner

logger = logging.getLogger(__name__)


def _log_banner(title: str, lines) -> None:
    logger.error("=" * 80)
    logger.error(title)
    logger.error("=" * 80)
    for idx, line in enumerate(lines, start=1):
        logger.error(f"{idx:>2}. {line}")
    logger.error("=" * 80)


class KeeperLoop:
    """
    Keeper orchestrator.

    Responsibilities:
    - Load and validate config
    - Own the single-instance lock
    - Wire gateway, state machine, executor and scheduler
    - Run ticks on a jittered interval until signalled
    - Serve health and status endpoints
    """

    def __init__(
        self,
        config_dir: str = "config",
        config: Optional[KeeperConfig] = None,
        gateway: Optional[ChainGateway] = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        if config is None:
            try:
                config = load_config(config_dir, env=env)
            except ConfigurationError as exc:
                _log_banner("CONFIGURATION VALIDATION FAILED", str(exc).splitlines())
                raise
        self.config = config
        self.mode = config.mode

        log_path = Path(config.logging.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, config.logging.level),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
        )
        logger.info(f"Starting clmm-keeper in mode={self.mode}, network={config.sui.network}")

        monitoring = config.monitoring
        self.instance_lock = SingleInstanceLock("clmm-keeper", lock_dir=monitoring.lock_dir)
        if not self.instance_lock.acquire():
            _log_banner(
                "ANOTHER KEEPER INSTANCE IS ALREADY RUNNING",
                [
                    "Two keepers would submit duplicate actions for the same entities",
                    f"If no other instance is running, remove {self.instance_lock.lock_file}",
                ],
            )
            raise RuntimeError("Another keeper instance is already running")

        self.metrics = MetricsRecorder(enabled=monitoring.metrics_enabled, port=monitoring.metrics_port)
        self.alerts = AlertService.from_config(config.alerts)
        self.audit = AuditLogger(audit_file=monitoring.audit_file)

        self.signer: Optional[OperatorSigner] = None
        if gateway is None:
            try:
                gateway = self._build_gateway()
            except ConfigurationError as exc:
                _log_banner("OPERATOR SETUP FAILED", str(exc).splitlines())
                self.instance_lock.release()
                raise
        self.gateway = gateway

        self.state_machine = PositionStateMachine()
        self.executor = ActionExecutor(
            gateway=self.gateway,
            state_machine=self.state_machine,
            timeouts=config.action_timeouts(),
            metrics=self.metrics,
            alerts=self.alerts,
            audit=self.audit,
            mode=self.mode,
        )
        self.scheduler = Scheduler(
            KeeperContext(
                gateway=self.gateway,
                state_machine=self.state_machine,
                executor=self.executor,
                collections=config.collections(),
                mode=self.mode,
                metrics=self.metrics,
                alerts=self.alerts,
                audit=self.audit,
            )
        )

        self.loop_interval_seconds = config.loop.poll_interval_seconds
        self.loop_jitter_pct = config.loop.jitter_pct
        self.health_server: Optional[HealthServer] = None
        if monitoring.healthcheck_enabled:
            self.health_server = HealthServer(
                port=monitoring.healthcheck_port,
                status_provider=self.health_status,
                feed_provider=lambda: [row.to_dict() for row in self.scheduler.status_feed()],
            )

        self._started = False
        self._stop_event: Optional[asyncio.Event] = None
        self._boot_monotonic = time.monotonic()
        self._last_tick_monotonic: Optional[float] = None
        self.last_report: Optional[TickReport] = None

    def _build_gateway(self) -> SuiChainGateway:
        sui = self.config.sui
        rpc = SuiRpcClient(
            primary_url=sui.primary_url,
            backup_url=sui.backup_rpc_url,
            timeout=sui.request_timeout_seconds,
            max_retries=sui.max_retries,
            failover_after_failures=sui.failover_after_failures,
            on_failover=self.metrics.record_failover,
        )
        if self.mode == "LIVE":
            self.signer = OperatorSigner.from_env(self.config.signer_env)
        return SuiChainGateway(
            rpc=rpc,
            collections=self.config.collections(),
            mode=self.mode,
            signer=self.signer,
            tx_builder_url=self.config.execution.tx_builder_url,
            tx_builder_timeout=self.config.execution.tx_builder_timeout_seconds,
        )

    async def startup(self) -> None:
        """Verify the operator and start the monitoring endpoints. Idempotent."""
        if self._started:
            return
        if self.mode == "LIVE" and self.signer is not None:
            await self.gateway.verify_operator_authorization(self.signer.address)
        self.metrics.start()
        if self.health_server:
            self.health_server.start()
        self._started = True
        self.alerts.notify(
            AlertSeverity.INFO,
            "Keeper started",
            f"mode={self.mode} collections={[c.name for c in self.config.collections()]}",
        )

    def health_status(self) -> Dict[str, Any]:
        max_age = self.config.monitoring.max_tick_age_multiplier * self.loop_interval_seconds
        now = time.monotonic()
        if self._last_tick_monotonic is None:
            age = None
            ok = (now - self._boot_monotonic) <= max_age
        else:
            age = now - self._last_tick_monotonic
            ok = age <= max_age

        summary = self.state_machine.get_summary()
        return {
            "ok": ok,
            "mode": self.mode,
            "tick_count": self.scheduler.tick_count,
            "last_tick_age_seconds": round(age, 3) if age is not None else None,
            "last_tick_status": self.last_report.status if self.last_report else None,
            "in_flight": len(self.executor.in_flight),
            "entities": summary["total_entities"],
            "status_breakdown": summary["status_breakdown"],
        }

    async def run_tick(self) -> TickReport:
        report = await self.scheduler.tick()
        self._last_tick_monotonic = time.monotonic()
        self.last_report = report
        if report.status == "failed":
            self.alerts.notify(
                AlertSeverity.WARNING,
                "Keeper tick failed",
                report.error or "unknown error",
                {"fetch_errors": len(report.fetch_errors)},
            )
        return report

    async def run_once(self) -> TickReport:
        """One tick, then wait for the actions it dispatched."""
        await self.startup()
        report = await self.run_tick()
        await self.scheduler.drain()
        return report

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_stop, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handler for {sig!r} unavailable on this platform")

    def _handle_stop(self, sig=None) -> None:
        logger.info(f"Received {sig!r}, stopping after the current tick")
        self.stop()

    def _next_sleep(self, interval: float, elapsed: float) -> float:
        jitter = random.uniform(0, self.loop_jitter_pct) * interval
        utilization = elapsed / interval
        if utilization > 0.7:
            logger.warning(f"High tick utilization ({utilization:.1%}) for interval {interval}s")
        return max(1.0, interval - elapsed + jitter)

    async def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        """Tick until SIGINT/SIGTERM, then drain in-flight actions."""
        interval = max(float(interval_seconds or self.loop_interval_seconds), 1.0)
        self.loop_interval_seconds = interval
        self._stop_event = asyncio.Event()
        self._install_signal_handlers()

        await self.startup()
        logger.info(f"Starting continuous loop (interval={interval}s, jitter={self.loop_jitter_pct:.0%})")

        try:
            while not self._stop_event.is_set():
                start = time.monotonic()
                await self.run_tick()
                elapsed = time.monotonic() - start

                sleep_for = self._next_sleep(interval, elapsed)
                logger.debug(f"Tick took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        grace = self.config.loop.shutdown_grace_seconds
        outstanding = len(self.executor.in_flight)
        if outstanding:
            logger.info(f"Waiting up to {grace}s for {outstanding} in-flight action(s)")
            try:
                await asyncio.wait_for(self.scheduler.drain(), timeout=grace)
            except asyncio.TimeoutError:
                cancelled = self.executor.cancel_all()
                logger.warning(f"Cancelled {cancelled} action(s) still running after {grace}s")
                await self.executor.drain()

        if self.health_server:
            self.health_server.stop()
        self.instance_lock.release()
        logger.info("Keeper stopped cleanly.")


def main(argv=None) -> int:
    """Entry point"""
    parser = argparse.ArgumentParser(description="clmm-keeper: CLMM position automation keeper")
    parser.add_argument("--once", action="store_true", help="Run one tick, wait for its actions and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between ticks (default: from config)")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args(argv)

    try:
        keeper = KeeperLoop(config_dir=args.config_dir)
    except (ConfigurationError, RuntimeError):
        return 1

    try:
        if args.once:
            report = asyncio.run(keeper.run_once())
            keeper.instance_lock.release()
            return 0 if report.success else 2
        asyncio.run(keeper.run_forever(interval_seconds=args.interval))
    except ConfigurationError as exc:
        _log_banner("STARTUP CHECK FAILED", str(exc).splitlines())
        keeper.instance_lock.release()
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
