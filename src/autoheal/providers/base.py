"""
Collaborator contracts consumed by the control loop.

The core depends only on these behaviours. Concrete implementations (real or
null) are picked once at startup by build_collaborators().
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from autoheal.errors import ArtifactError
from autoheal.models import RunRef


class CIProvider(ABC):
    """CI system that runs the pipelines being healed."""

    name = "ci"

    @abstractmethod
    async def list_failed_runs(self) -> list[RunRef]:
        """Most recent failed pipeline runs."""
        pass

    @abstractmethod
    async def fetch_run_log(self, run: RunRef) -> str:
        """Full log text of a run."""
        pass

    @abstractmethod
    async def rerun(self, run: Optional[RunRef]) -> bool:
        """Re-run a run, or the default pipeline when run is None."""
        pass

    async def close(self) -> None:
        pass


class LogQuerySource(ABC):
    """Metrics/log backend that can be queried over a time range."""

    name = "logs"

    @abstractmethod
    async def query_range(
        self, match_expression: str, start: datetime, end: datetime
    ) -> list[tuple[datetime, str]]:
        """Log lines matching the expression between start and end, oldest first."""
        pass

    async def close(self) -> None:
        pass


class ArtifactStore(ABC):
    """Declared configuration/workflow artifacts that fix handlers may patch."""

    @abstractmethod
    async def read(self, path: str) -> str:
        pass

    @abstractmethod
    async def write(self, path: str, text: str) -> None:
        pass

    async def exists(self, path: str) -> bool:
        try:
            await self.read(path)
            return True
        except ArtifactError:
            return False

    async def commit(self, paths: list[str], message: str) -> bool:
        """Record changed artifacts in version control. Stores without VCS return False."""
        return False


class ProcessController(ABC):
    """Controls the dependent services of the pipeline (Loki, Grafana, ...)."""

    @abstractmethod
    async def restart(self, service_id: str) -> bool:
        pass

    @abstractmethod
    async def is_healthy(self, service_id: str) -> bool:
        pass

    async def close(self) -> None:
        pass


class ReportingSink(ABC):
    """External destination for report snapshots."""

    name = "sink"

    @abstractmethod
    async def push(self, document: dict[str, Any]) -> bool:
        pass

    async def close(self) -> None:
        pass
