"""
Process control for the pipeline's dependent services.

Services are restarted through docker compose and considered healthy when their
configured HTTP endpoint answers below 400.
"""

import asyncio
import logging
import shlex
import time
from typing import Any, Optional

import httpx

from autoheal.models import HealthCheckResult
from autoheal.providers.base import ProcessController

logger = logging.getLogger(__name__)


async def check_http(
    service_id: str, url: str, client: httpx.AsyncClient, timeout: float = 5.0
) -> HealthCheckResult:
    """Perform HTTP health check."""
    start = time.time()

    try:
        response = await client.get(url, timeout=timeout, follow_redirects=True)
        latency = (time.time() - start) * 1000

        if response.status_code < 400:
            return HealthCheckResult(
                service_id=service_id,
                healthy=True,
                detail=f"HTTP {response.status_code}",
                latency_ms=latency,
            )
        return HealthCheckResult(
            service_id=service_id,
            healthy=False,
            detail=f"HTTP {response.status_code}",
            latency_ms=latency,
        )

    except httpx.TimeoutException:
        return HealthCheckResult(
            service_id=service_id,
            healthy=False,
            detail="Timeout",
            latency_ms=timeout * 1000,
        )
    except httpx.ConnectError:
        return HealthCheckResult(service_id=service_id, healthy=False, detail="Connection refused")
    except httpx.HTTPError as e:
        return HealthCheckResult(service_id=service_id, healthy=False, detail=str(e))


class DockerComposeController(ProcessController):
    """Restarts compose services and probes their health URLs."""

    def __init__(
        self,
        services: dict[str, dict[str, Any]],
        project_dir: str = ".",
        compose_command: str = "docker compose",
        probe_timeout: float = 5.0,
        restart_timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.services = services
        self.project_dir = project_dir
        self.compose_command = shlex.split(compose_command)
        self.probe_timeout = probe_timeout
        self.restart_timeout = restart_timeout
        self._client = client or httpx.AsyncClient(timeout=probe_timeout)

    async def close(self) -> None:
        await self._client.aclose()

    def _compose_service(self, service_id: str) -> str:
        return self.services.get(service_id, {}).get("compose_service", service_id)

    async def restart(self, service_id: str) -> bool:
        """docker compose restart <service>. True when the command exits 0."""
        cmd = [*self.compose_command, "restart", self._compose_service(service_id)]
        logger.info(f"Restarting {service_id}: {' '.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self.project_dir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            logger.error(f"Cannot run {cmd[0]}: {e}")
            return False

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.restart_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error(f"Restart of {service_id} timed out after {self.restart_timeout}s")
            return False

        if proc.returncode != 0:
            logger.error(f"Restart of {service_id} failed: {stdout.decode(errors='replace').strip()}")
            return False
        return True

    async def probe(self, service_id: str) -> HealthCheckResult:
        url = self.services.get(service_id, {}).get("health_url")
        if not url:
            return HealthCheckResult(
                service_id=service_id, healthy=False, detail="No health_url configured"
            )
        return await check_http(service_id, url, self._client, self.probe_timeout)

    async def is_healthy(self, service_id: str) -> bool:
        result = await self.probe(service_id)
        return result.healthy


class NullProcessController(ProcessController):
    """Used when process control is disabled. Every service looks healthy."""

    async def restart(self, service_id: str) -> bool:
        logger.info(f"Restart of {service_id} requested but process control is disabled")
        return False

    async def is_healthy(self, service_id: str) -> bool:
        return True
