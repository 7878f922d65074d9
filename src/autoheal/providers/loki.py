"""
Loki client.

Queries recent log lines with /loki/api/v1/query_range and pushes report
snapshots with /loki/api/v1/push.
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from autoheal.providers.base import LogQuerySource, ReportingSink

logger = logging.getLogger(__name__)


def _to_ns(value: datetime) -> int:
    return int(value.timestamp() * 1e9)


class LokiQuerySource(LogQuerySource):
    """Log query source backed by Loki."""

    name = "loki"

    def __init__(
        self,
        url: str = "http://localhost:3100",
        limit: int = 500,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url.rstrip("/")
        self.limit = limit
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def query_range(
        self, match_expression: str, start: datetime, end: datetime
    ) -> list[tuple[datetime, str]]:
        """Run a LogQL range query. Raises on transport or HTTP errors."""
        response = await self._client.get(
            f"{self.url}/loki/api/v1/query_range",
            params={
                "query": match_expression,
                "start": _to_ns(start),
                "end": _to_ns(end),
                "limit": self.limit,
                "direction": "forward",
            },
        )
        response.raise_for_status()
        data = response.json()

        lines: list[tuple[datetime, str]] = []
        for stream in data.get("data", {}).get("result", []):
            for ts_ns, line in stream.get("values", []):
                timestamp = datetime.fromtimestamp(int(ts_ns) / 1e9, tz=timezone.utc)
                lines.append((timestamp, line))

        lines.sort(key=lambda item: item[0])
        return lines


class LokiReportingSink(ReportingSink):
    """Pushes each report snapshot to Loki as one JSON log line."""

    name = "loki"

    def __init__(
        self,
        url: str = "http://localhost:3100",
        labels: Optional[dict[str, str]] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url.rstrip("/")
        self.labels = labels or {"job": "autoheal", "kind": "report"}
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def push(self, document: dict[str, Any]) -> bool:
        payload = {
            "streams": [
                {
                    "stream": self.labels,
                    "values": [[str(time.time_ns()), json.dumps(document, default=str)]],
                }
            ]
        }
        try:
            response = await self._client.post(f"{self.url}/loki/api/v1/push", json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Failed to push report to Loki: {e}")
            return False

        if response.status_code >= 400:
            logger.warning(f"Loki rejected report push: HTTP {response.status_code}")
            return False
        return True
