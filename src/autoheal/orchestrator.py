"""
Orchestrator.

Owns all shared state of the control loop (queue, cooldowns, reporter) and runs
the four periodic tasks against it:

    scan      collectors -> diagnoser -> intake
    health    health monitor -> intake
    dispatch  queue -> dispatcher -> handlers -> restart controller
    flush     reporter -> report.json + reporting sink

A graceful stop lets the loops finish their current iteration (at most one
in-flight handler), refuses new Issues and performs a final flush.
"""

import asyncio
import logging
import signal
from typing import Awaitable, Callable, Iterable, Optional

from autoheal.collectors import CIRunCollector, Collector, LocalLogCollector, LokiCollector
from autoheal.config import AutohealConfig
from autoheal.cooldown import CooldownTracker
from autoheal.diagnoser import Diagnoser
from autoheal.dispatch_queue import DispatchQueue
from autoheal.dispatcher import Dispatcher
from autoheal.errors import CollectorUnavailable, InitializationError
from autoheal.handlers import FixContext, HandlerRegistry, build_default_handlers
from autoheal.health import HealthMonitor
from autoheal.logging_config import new_cycle_id
from autoheal.models import FixResult, Issue, IssueState, QueueEntry, Severity
from autoheal.providers import Collaborators, build_collaborators
from autoheal.reporter import Reporter
from autoheal.restart import RestartController
from autoheal.signatures import SignatureRegistry, build_registry

logger = logging.getLogger(__name__)


def _severity_windows(config: AutohealConfig) -> dict[Severity, float]:
    windows = {}
    for key, seconds in config.cooldown_by_severity.items():
        try:
            windows[Severity(key)] = float(seconds)
        except ValueError:
            raise InitializationError(f"Invalid cooldown_by_severity entry: {key}={seconds!r}")
    return windows


class Orchestrator:
    """The control loop and the state it owns."""

    def __init__(
        self,
        config: AutohealConfig,
        collaborators: Collaborators,
        signatures: SignatureRegistry,
        handlers: HandlerRegistry,
        collectors: Optional[list[Collector]] = None,
    ):
        self.config = config
        self.collaborators = collaborators
        self.signatures = signatures
        self.handlers = handlers
        self.collectors = collectors if collectors is not None else self._default_collectors()

        self.diagnoser = Diagnoser(signatures, config.scan_max_lines, config.scan_max_bytes)
        self.cooldown = CooldownTracker(
            default_window=config.cooldown_seconds,
            window_by_severity=_severity_windows(config),
            severity_of=self._severity_of,
            ttl_seconds=config.cooldown_ttl_seconds,
            state_file=config.data_path / "cooldowns.json",
        )
        self.queue = DispatchQueue()
        self.reporter = Reporter(
            history_size=config.fix_history_size,
            state_file=config.data_path / "report.json",
            sink=collaborators.sink,
            sink_timeout=config.sink_timeout,
        )
        self.restart = RestartController(collaborators.ci, timeout=config.rerun_timeout)
        self.health = HealthMonitor(
            collaborators.process,
            {sid: config.service_severity(sid) for sid in config.services},
            probe_timeout=config.probe_timeout,
        )
        self.dispatcher = Dispatcher(
            queue=self.queue,
            signatures=signatures,
            handlers=handlers,
            cooldown=self.cooldown,
            reporter=self.reporter,
            restart=self.restart,
            artifacts=collaborators.artifacts,
            handler_timeout=config.handler_timeout,
        )

        self._stopping = asyncio.Event()

    @classmethod
    def from_config(
        cls,
        config: AutohealConfig,
        collaborators: Optional[Collaborators] = None,
        collectors: Optional[list[Collector]] = None,
    ) -> "Orchestrator":
        """Build and validate everything. Raises InitializationError on misconfiguration."""
        collaborators = collaborators or build_collaborators(config)
        signatures = build_registry(
            {sid: config.service_severity(sid) for sid in config.services}
        )
        ctx = FixContext(
            config=config,
            artifacts=collaborators.artifacts,
            process=collaborators.process,
            ci=collaborators.ci,
        )
        handlers = build_default_handlers(ctx)

        signatures.validate(handlers.ids())
        signatures.freeze()
        handlers.freeze()

        return cls(config, collaborators, signatures, handlers, collectors)

    def _default_collectors(self) -> list[Collector]:
        config = self.config
        collectors: list[Collector] = []
        if config.enable_ci_collector:
            collectors.append(CIRunCollector(self.collaborators.ci))
        if config.enable_loki_collector and self.collaborators.log_query is not None:
            collectors.append(
                LokiCollector(
                    self.collaborators.log_query,
                    config.loki_query,
                    config.loki_lookback_seconds,
                )
            )
        if config.enable_local_collector:
            collectors.append(
                LocalLogCollector(
                    self.collaborators.local_logs,
                    config.local_log_paths,
                    config.local_tail_lines,
                )
            )
        return collectors

    def _severity_of(self, signature_id: str) -> Optional[Severity]:
        signature = self.signatures.lookup(signature_id)
        return signature.severity if signature else None

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self) -> None:
        """Begin graceful shutdown."""
        if not self._stopping.is_set():
            logger.info("Shutdown requested, no new issues will be accepted")
            self._stopping.set()

    # =========================================================================
    # Intake
    # =========================================================================

    def intake(self, issues: Iterable[Issue]) -> list[QueueEntry]:
        """
        Filter one batch of Issues and enqueue the survivors.

        Order of checks: within-batch duplicate, cooldown, in flight,
        already queued.
        """
        issues = list(issues)
        if not issues:
            return []
        if self.stopping:
            logger.info(f"Dropping {len(issues)} issue(s): shutting down")
            return []

        self.reporter.record_diagnosed(len(issues))
        seen: set[str] = set()
        accepted = []

        for issue in issues:
            sid = issue.signature_id
            logger.info(
                f"[{issue.id}] {sid}: {IssueState.DETECTED.value} from {issue.source}"
            )

            if sid in seen:
                logger.info(f"[{issue.id}] {sid}: duplicate within cycle, dropped")
                self.reporter.record_duplicate(sid)
                continue
            seen.add(sid)

            if self.cooldown.should_suppress(sid):
                self.reporter.record_suppressed(sid)
                continue

            in_flight = self.dispatcher.in_flight
            if in_flight is not None and in_flight.issue.signature_id == sid:
                logger.info(f"[{issue.id}] {sid}: fix already in flight, dropped")
                self.reporter.record_duplicate(sid)
                continue

            if self.queue.contains(sid):
                logger.info(f"[{issue.id}] {sid}: already queued, dropped")
                self.reporter.record_duplicate(sid)
                continue

            entry = self.queue.put(issue)
            logger.info(
                f"[{issue.id}] {sid}: {IssueState.DETECTED.value} -> "
                f"{IssueState.QUEUED.value} ({entry.band.value} band)"
            )
            accepted.append(entry)

        self.reporter.set_queue_depth(len(self.queue))
        return accepted

    # =========================================================================
    # Single iterations
    # =========================================================================

    async def collect_issues(self) -> list[Issue]:
        """Run every collector concurrently and diagnose what they return."""
        results = await asyncio.gather(
            *(c.gather(self.config.collector_timeout) for c in self.collectors),
            return_exceptions=True,
        )

        issues: list[Issue] = []
        for collector, result in zip(self.collectors, results):
            if isinstance(result, CollectorUnavailable):
                logger.warning(f"{result}; skipping this cycle")
                self.reporter.record_collector_failure(collector.name)
                continue
            if isinstance(result, BaseException):
                raise result
            for blob in result:
                issues.extend(self.diagnoser.diagnose(blob.text, blob.source, blob.run))
        return issues

    async def scan_once(self) -> list[QueueEntry]:
        """One collector + diagnose cycle."""
        new_cycle_id()
        if self.stopping:
            return []
        issues = await self.collect_issues()
        return self.intake(issues)

    async def health_once(self) -> list[QueueEntry]:
        """One round of health probes."""
        new_cycle_id()
        if self.stopping:
            return []
        results, issues = await self.health.run_once()
        self.reporter.record_health(results)
        return self.intake(issues)

    async def dispatch_once(self) -> Optional[FixResult]:
        return await self.dispatcher.dispatch_one()

    async def drain(self) -> list[FixResult]:
        """Dispatch until the queue is empty or shutdown begins."""
        results = []
        while not self.stopping:
            result = await self.dispatcher.dispatch_one()
            if result is None:
                break
            results.append(result)
        return results

    # =========================================================================
    # Loops
    # =========================================================================

    async def _sleep(self, seconds: float) -> None:
        """Sleep that wakes up early when shutdown begins."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _periodic(self, name: str, interval: float, step: Callable[[], Awaitable]) -> None:
        logger.info(f"{name} loop started (every {interval}s)")
        while not self.stopping:
            try:
                await step()
            except Exception:
                logger.exception(f"{name} loop iteration failed")
            await self._sleep(interval)
        logger.info(f"{name} loop stopped")

    async def _dispatch_loop(self) -> None:
        """One entry per tick; the next tick follows immediately while work is pending."""
        interval = self.config.dispatch_interval
        logger.info(f"dispatch loop started (every {interval}s when idle)")
        while not self.stopping:
            try:
                result = await self.dispatcher.dispatch_one()
            except Exception:
                logger.exception("dispatch loop iteration failed")
                result = None
            if result is None:
                await self._sleep(interval)
        logger.info("dispatch loop stopped")

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                pass

    async def run(self, install_signal_handlers: bool = True) -> None:
        """Run all loops until stop() is called."""
        if install_signal_handlers:
            self._install_signal_handlers()

        logger.info(
            f"Autoheal starting: {len(self.signatures)} signatures, "
            f"{len(self.collectors)} collectors, {len(self.health.services)} services"
        )
        tasks = [
            asyncio.create_task(self._periodic("scan", self.config.scan_interval, self.scan_once)),
            asyncio.create_task(self._periodic("health", self.config.health_interval, self.health_once)),
            asyncio.create_task(self._dispatch_loop()),
            asyncio.create_task(self._periodic("flush", self.config.flush_interval, self.reporter.flush)),
        ]

        try:
            await self._stopping.wait()
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

            dropped = self.queue.clear()
            if dropped:
                logger.info(f"Discarded {dropped} queued issue(s) at shutdown")
            self.reporter.set_queue_depth(0)
            await self.reporter.flush()
            await self.collaborators.close()
            logger.info("Autoheal stopped")
