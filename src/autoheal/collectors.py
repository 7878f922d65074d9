"""
Collectors.

Adapters that pull raw text from the CI system, Loki and local log files. Every
call runs under a timeout; a failure or timeout surfaces as CollectorUnavailable
so the scan loop can skip the collector for this cycle.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from autoheal.errors import CollectorUnavailable
from autoheal.models import RunRef, utcnow
from autoheal.providers.base import CIProvider, LogQuerySource
from autoheal.providers.local import LocalLogSource

logger = logging.getLogger(__name__)


@dataclass
class CollectedText:
    """One blob of text handed to the Diagnoser."""

    source: str
    text: str
    run: Optional[RunRef] = None


class Collector(ABC):
    """Base class for log/event source adapters."""

    name: str = "collector"

    @abstractmethod
    async def collect(self) -> list[CollectedText]:
        pass

    async def gather(self, timeout: float) -> list[CollectedText]:
        """collect() bounded by timeout. Any failure raises CollectorUnavailable."""
        try:
            return await asyncio.wait_for(self.collect(), timeout=timeout)
        except asyncio.TimeoutError:
            raise CollectorUnavailable(self.name, f"timed out after {timeout}s")
        except CollectorUnavailable:
            raise
        except Exception as e:
            raise CollectorUnavailable(self.name, str(e) or type(e).__name__) from e


class CIRunCollector(Collector):
    """
    Logs of failed CI runs. Each attempt of a run is collected once.

    Runs are only remembered once a whole batch has been fetched, so a cycle
    cut short by an error or timeout fetches the same runs again next time.
    """

    name = "ci"

    def __init__(self, ci: CIProvider, max_remembered: int = 200):
        self.ci = ci
        self.max_remembered = max_remembered
        self._seen: OrderedDict[tuple[str, int], None] = OrderedDict()

    @staticmethod
    def _key(run: RunRef) -> tuple[str, int]:
        return str(run.id), run.attempt

    def _remember(self, runs: list[RunRef]) -> None:
        for run in runs:
            self._seen[self._key(run)] = None
        while len(self._seen) > self.max_remembered:
            self._seen.popitem(last=False)

    async def collect(self) -> list[CollectedText]:
        blobs = []
        for run in await self.ci.list_failed_runs():
            if self._key(run) in self._seen:
                continue
            text = await self.ci.fetch_run_log(run)
            logger.debug(f"Fetched log of run {run.id} attempt {run.attempt} ({len(text)} chars)")
            blobs.append(CollectedText(source=self.name, text=text, run=run))

        self._remember([blob.run for blob in blobs])
        return blobs


class LokiCollector(Collector):
    """Recent log lines matching a LogQL expression."""

    name = "loki"

    def __init__(self, source: LogQuerySource, expression: str, lookback_seconds: float = 300):
        self.source = source
        self.expression = expression
        self.lookback = timedelta(seconds=lookback_seconds)

    async def collect(self) -> list[CollectedText]:
        end = utcnow()
        lines = await self.source.query_range(self.expression, end - self.lookback, end)
        if not lines:
            return []
        return [CollectedText(source=self.name, text="\n".join(line for _, line in lines))]


class LocalLogCollector(Collector):
    """Tails of local log files."""

    name = "local"

    def __init__(self, source: LocalLogSource, paths: list[str], tail_lines: int = 50):
        self.source = source
        self.paths = paths
        self.tail_lines = tail_lines

    async def collect(self) -> list[CollectedText]:
        blobs = []
        for path in self.paths:
            text = await self.source.tail(path, self.tail_lines)
            if text:
                blobs.append(CollectedText(source=self.name, text=text))
        return blobs
