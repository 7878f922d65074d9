"""
Health Monitor.

Probes the dependent services on its own interval. Every unhealthy result
becomes an Issue with signature health:<service> and goes through the same
dedup/queue/dispatch pipeline as log-derived Issues.
"""

import asyncio
import logging
import time
from typing import Optional

from autoheal.models import HealthCheckResult, Issue, Severity
from autoheal.providers.base import ProcessController
from autoheal.signatures import health_signature_id

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Runs the static list of service probes."""

    def __init__(
        self,
        process: ProcessController,
        services: dict[str, Severity],
        probe_timeout: float = 5.0,
    ):
        self.process = process
        self.services = dict(services)
        self.probe_timeout = probe_timeout
        self._open_incidents: set[str] = set()
        self._last_results: list[HealthCheckResult] = []

    @property
    def open_incidents(self) -> set[str]:
        return set(self._open_incidents)

    @property
    def last_results(self) -> list[HealthCheckResult]:
        return list(self._last_results)

    async def probe(self, service_id: str) -> HealthCheckResult:
        """One probe. Timeouts and errors count as unhealthy."""
        start = time.time()
        try:
            healthy = await asyncio.wait_for(
                self.process.is_healthy(service_id), timeout=self.probe_timeout
            )
            detail = "healthy" if healthy else "unhealthy"
        except asyncio.TimeoutError:
            healthy, detail = False, f"Probe timed out after {self.probe_timeout}s"
        except Exception as e:
            healthy, detail = False, f"Probe error: {e}"

        return HealthCheckResult(
            service_id=service_id,
            healthy=healthy,
            detail=detail,
            latency_ms=(time.time() - start) * 1000,
        )

    async def run_once(self) -> tuple[list[HealthCheckResult], list[Issue]]:
        """Probe every service concurrently. Returns the results and the synthesized Issues."""
        results = list(await asyncio.gather(*(self.probe(sid) for sid in self.services)))
        self._last_results = results

        issues = []
        for result in results:
            issue = self._track(result)
            if issue is not None:
                issues.append(issue)
        return results, issues

    def _track(self, result: HealthCheckResult) -> Optional[Issue]:
        service_id = result.service_id

        if result.healthy:
            if service_id in self._open_incidents:
                self._open_incidents.discard(service_id)
                logger.info(f"{service_id} recovered, incident closed")
            return None

        if service_id not in self._open_incidents:
            self._open_incidents.add(service_id)
            logger.warning(f"{service_id} unhealthy: {result.detail}")

        return Issue(
            signature_id=health_signature_id(service_id),
            source="health",
            raw_excerpt=result.detail,
            severity=self.services.get(service_id, Severity.HIGH),
        )
