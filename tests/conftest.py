"""
Pytest configuration and fixtures for autoheal tests
"""

import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import pytest

# Add src to path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from autoheal.config import AutohealConfig  # noqa: E402
from autoheal.errors import ArtifactError  # noqa: E402
from autoheal.models import RunRef  # noqa: E402
from autoheal.providers import Collaborators  # noqa: E402
from autoheal.providers.base import (  # noqa: E402
    ArtifactStore,
    CIProvider,
    LogQuerySource,
    ProcessController,
    ReportingSink,
)

ESM_LOG_LINE = (
    "Error [ERR_REQUIRE_ESM]: require() of ES Module "
    "/app/node_modules/@octokit/rest/dist-src/index.js from /app/pipeline-troubleshooter.js not supported."
)

ESM_SCRIPT = """#!/usr/bin/env node
const { Octokit } = require('@octokit/rest');
const axios = require('axios');

async function main() {
    const octokit = new Octokit();
}
"""


class FakeCIProvider(CIProvider):
    """In-memory CI provider."""

    name = "fake-ci"

    def __init__(self, runs: Optional[list[RunRef]] = None, logs: Optional[dict] = None):
        self.runs = runs or []
        self.logs = logs or {}
        self.rerun_result = True
        self.rerun_error: Optional[Exception] = None
        self.reruns: list[Optional[RunRef]] = []
        self.fetched: list[Any] = []
        self.closed = False

    async def list_failed_runs(self) -> list[RunRef]:
        return list(self.runs)

    async def fetch_run_log(self, run: RunRef) -> str:
        self.fetched.append(run.id)
        return self.logs.get(run.id, "")

    async def rerun(self, run: Optional[RunRef]) -> bool:
        self.reruns.append(run)
        if self.rerun_error is not None:
            raise self.rerun_error
        return self.rerun_result

    async def close(self) -> None:
        self.closed = True


class FakeLogQuery(LogQuerySource):
    """In-memory Loki stand-in."""

    name = "fake-loki"

    def __init__(self, lines: Optional[list[str]] = None):
        self.lines = lines or []
        self.queries: list[tuple[str, datetime, datetime]] = []

    async def query_range(self, match_expression, start, end):
        self.queries.append((match_expression, start, end))
        return [(end, line) for line in self.lines]


class MemoryArtifactStore(ArtifactStore):
    """Dict-backed artifact store that counts writes."""

    def __init__(self, files: Optional[dict[str, str]] = None):
        self.files = dict(files or {})
        self.writes: list[str] = []
        self.commits: list[tuple[list[str], str]] = []
        self.commit_result = True

    async def read(self, path: str) -> str:
        if path not in self.files:
            raise ArtifactError(f"No such artifact: {path}")
        return self.files[path]

    async def write(self, path: str, text: str) -> None:
        self.files[path] = text
        self.writes.append(path)

    async def commit(self, paths: list[str], message: str) -> bool:
        self.commits.append((list(paths), message))
        return self.commit_result


class FakeProcessController(ProcessController):
    """Services with scripted health. restart() marks the service healthy."""

    def __init__(self, healthy: Optional[dict[str, bool]] = None):
        self.healthy = dict(healthy or {})
        self.restarts: list[str] = []
        self.restart_result = True

    async def restart(self, service_id: str) -> bool:
        self.restarts.append(service_id)
        if self.restart_result:
            self.healthy[service_id] = True
        return self.restart_result

    async def is_healthy(self, service_id: str) -> bool:
        return self.healthy.get(service_id, True)


class MemorySink(ReportingSink):
    """Keeps every pushed document."""

    name = "memory"

    def __init__(self):
        self.documents: list[dict] = []
        self.result = True

    async def push(self, document: dict) -> bool:
        self.documents.append(document)
        return self.result


class FakeLocalLogs:
    """LocalLogSource stand-in keyed by path."""

    name = "local"

    def __init__(self, texts: Optional[dict[str, str]] = None):
        self.texts = dict(texts or {})

    async def tail(self, path: str, max_lines: int) -> str:
        return self.texts.get(path, "")


@pytest.fixture
def clean_env():
    """Remove AUTOHEAL_* and GitHub variables for the duration of a test."""
    original_env = os.environ.copy()
    for key in list(os.environ):
        if key.startswith("AUTOHEAL_") or key.startswith("GITHUB_"):
            del os.environ[key]

    yield os.environ

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def config(tmp_path, clean_env):
    """Config with state under tmp_path and every capability faked."""
    return AutohealConfig(
        data_dir=str(tmp_path / "state"),
        artifact_root=str(tmp_path),
        local_log_paths=["logs/regression-tests.log"],
    )


@pytest.fixture
def ci():
    return FakeCIProvider()


@pytest.fixture
def artifacts():
    return MemoryArtifactStore()


@pytest.fixture
def process():
    return FakeProcessController()


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def local_logs():
    return FakeLocalLogs()


@pytest.fixture
def log_query():
    return FakeLogQuery()


@pytest.fixture
def collaborators(ci, artifacts, process, sink, local_logs, log_query):
    return Collaborators(
        ci=ci,
        artifacts=artifacts,
        process=process,
        sink=sink,
        local_logs=local_logs,
        log_query=log_query,
    )


@pytest.fixture
def fix_context(config, artifacts, process, ci):
    from autoheal.handlers import FixContext

    return FixContext(config=config, artifacts=artifacts, process=process, ci=ci)


@pytest.fixture
def orchestrator(config, collaborators):
    """Orchestrator wired to the fakes, with no collectors."""
    from autoheal.orchestrator import Orchestrator

    return Orchestrator.from_config(config, collaborators=collaborators, collectors=[])


def make_issue(signature_id: str = "workflow-failure", severity=None, source: str = "ci", excerpt: str = "", run=None):
    """Build an Issue with the signature's default severity."""
    from autoheal.models import Issue, Severity
    from autoheal.signatures import BUILTIN_SIGNATURES

    if severity is None:
        by_id = {s.id: s.severity for s in BUILTIN_SIGNATURES}
        severity = by_id.get(signature_id, Severity.HIGH)
    return Issue(
        signature_id=signature_id,
        source=source,
        raw_excerpt=excerpt,
        severity=severity,
        run=run,
    )


# Markers
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (deselect with '-m \"not integration\"')"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
