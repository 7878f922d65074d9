"""
Reporter.

Aggregates every outcome of the control loop into running counters, keeps a
bounded fix history and the last health snapshot, and flushes a ReportDocument
to <data_dir>/report.json and to the configured ReportingSink.
"""

import asyncio
import json
import logging
import threading
from collections import deque
from pathlib import Path
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from autoheal.models import FixResult, HealthCheckResult, ReportDocument, utcnow
from autoheal.providers.base import ReportingSink

logger = logging.getLogger(__name__)

TOTAL_KEYS = ("diagnosed", "suppressed", "duplicates", "fixed", "failed", "collector_failures")
SIGNATURE_KEYS = ("fixed", "failed", "suppressed", "duplicates")


class Reporter:
    """Running totals of the control loop. Safe to call from any task or thread."""

    def __init__(
        self,
        history_size: int = 100,
        state_file: Optional[str | Path] = None,
        sink: Optional[ReportingSink] = None,
        sink_timeout: float = 10.0,
    ):
        self.state_file = Path(state_file) if state_file else None
        self.sink = sink
        self.sink_timeout = sink_timeout
        self.started_at = utcnow()

        self._lock = threading.Lock()
        self._totals: dict[str, int] = {k: 0 for k in TOTAL_KEYS}
        self._per_signature: dict[str, dict[str, int]] = {}
        self._restarts: dict[str, int] = {"triggered": 0, "failed": 0}
        self._history: deque[FixResult] = deque(maxlen=history_size)
        self._last_health: list[HealthCheckResult] = []
        self._queue_depth = 0

        # Prometheus metrics
        self.registry = CollectorRegistry()
        self.issues_total = Counter(
            "autoheal_issues_total",
            "Issues by outcome before dispatch",
            ["outcome"],
            registry=self.registry,
        )
        self.fixes_total = Counter(
            "autoheal_fixes_total",
            "Fix handler invocations by signature and result",
            ["signature", "result"],
            registry=self.registry,
        )
        self.restarts_total = Counter(
            "autoheal_restarts_total",
            "Pipeline rerun triggers by result",
            ["result"],
            registry=self.registry,
        )
        self.collector_failures_total = Counter(
            "autoheal_collector_failures_total",
            "Collector calls that failed or timed out",
            ["collector"],
            registry=self.registry,
        )
        self.service_healthy = Gauge(
            "autoheal_service_healthy",
            "Last probe result per service (1=healthy, 0=unhealthy)",
            ["service"],
            registry=self.registry,
        )
        self.queue_depth_gauge = Gauge(
            "autoheal_queue_depth",
            "Issues waiting for dispatch",
            registry=self.registry,
        )

        self._load()

    def _signature_counts(self, signature_id: str) -> dict[str, int]:
        counts = self._per_signature.get(signature_id)
        if counts is None:
            counts = {k: 0 for k in SIGNATURE_KEYS}
            self._per_signature[signature_id] = counts
        return counts

    def record_diagnosed(self, count: int = 1) -> None:
        if count <= 0:
            return
        with self._lock:
            self._totals["diagnosed"] += count
        self.issues_total.labels(outcome="diagnosed").inc(count)

    def record_suppressed(self, signature_id: str) -> None:
        """Issue throttled by cooldown."""
        with self._lock:
            self._totals["suppressed"] += 1
            self._signature_counts(signature_id)["suppressed"] += 1
        self.issues_total.labels(outcome="suppressed").inc()

    def record_duplicate(self, signature_id: str) -> None:
        """Issue dropped as a within-cycle or already-queued duplicate."""
        with self._lock:
            self._totals["duplicates"] += 1
            self._signature_counts(signature_id)["duplicates"] += 1
        self.issues_total.labels(outcome="duplicate").inc()

    def record_fix(self, result: FixResult) -> None:
        key = "fixed" if result.success else "failed"
        with self._lock:
            self._totals[key] += 1
            self._signature_counts(result.signature_id)[key] += 1
            self._history.append(result)
        self.fixes_total.labels(signature=result.signature_id, result=key).inc()

    def record_restart(self, triggered: bool) -> None:
        key = "triggered" if triggered else "failed"
        with self._lock:
            self._restarts[key] += 1
        self.restarts_total.labels(result=key).inc()

    def record_collector_failure(self, collector: str) -> None:
        with self._lock:
            self._totals["collector_failures"] += 1
        self.collector_failures_total.labels(collector=collector).inc()

    def record_health(self, results: list[HealthCheckResult]) -> None:
        with self._lock:
            self._last_health = list(results)
        for result in results:
            self.service_healthy.labels(service=result.service_id).set(1 if result.healthy else 0)

    def set_queue_depth(self, depth: int) -> None:
        with self._lock:
            self._queue_depth = depth
        self.queue_depth_gauge.set(depth)

    def history(self) -> list[FixResult]:
        with self._lock:
            return list(self._history)

    def snapshot(self) -> ReportDocument:
        """Copy of the current state."""
        with self._lock:
            return ReportDocument(
                generated_at=utcnow().isoformat(),
                started_at=self.started_at.isoformat(),
                totals=dict(self._totals),
                per_signature={k: dict(v) for k, v in self._per_signature.items()},
                restarts=dict(self._restarts),
                last_health=[r.to_dict() for r in self._last_health],
                recent_fixes=[r.to_dict() for r in self._history],
                queue_depth=self._queue_depth,
            )

    def render_metrics(self) -> bytes:
        """Prometheus text exposition of this reporter's registry."""
        return generate_latest(self.registry)

    async def flush(self) -> ReportDocument:
        """Persist the snapshot locally and push it to the sink. Never raises."""
        document = self.snapshot()
        data = document.to_dict()
        self._save(data)

        if self.sink is not None:
            try:
                pushed = await asyncio.wait_for(self.sink.push(data), timeout=self.sink_timeout)
                if not pushed:
                    logger.warning(f"Reporting sink {self.sink.name} rejected the report")
            except asyncio.TimeoutError:
                logger.warning(f"Reporting sink {self.sink.name} timed out after {self.sink_timeout}s")
            except Exception as e:
                logger.error(f"Reporting sink {self.sink.name} failed: {e}")

        logger.debug(
            f"Report flushed: fixed={document.total_fixed} failed={document.total_failed} "
            f"suppressed={document.totals.get('suppressed', 0)}"
        )
        return document

    def _load(self) -> None:
        """Restore counters from a previous run."""
        if self.state_file is None or not self.state_file.exists():
            return
        try:
            with open(self.state_file) as f:
                data = json.load(f)
            totals = {k: int(v) for k, v in data.get("totals", {}).items()}
            per_signature = {
                sid: {k: int(v) for k, v in counts.items()}
                for sid, counts in data.get("per_signature", {}).items()
            }
            restarts = {k: int(v) for k, v in data.get("restarts", {}).items()}
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable report state {self.state_file}: {e}")
            return

        with self._lock:
            self._totals.update(totals)
            for sid, counts in per_signature.items():
                self._signature_counts(sid).update(counts)
            self._restarts.update(restarts)
        logger.info(f"Restored report counters from {self.state_file}")

    def _save(self, data: dict) -> None:
        if self.state_file is None:
            return
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.state_file.with_suffix(".tmp")
            with open(tmp, "w") as f:
                json.dump(data, f, indent=2)
            tmp.replace(self.state_file)
        except OSError as e:
            logger.error(f"Failed to persist report: {e}")
