"""
External collaborators of the control loop.

build_collaborators() picks the real or null implementation of every capability
once, from configuration.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from autoheal.config import AutohealConfig
from autoheal.providers.base import (
    ArtifactStore,
    CIProvider,
    LogQuerySource,
    ProcessController,
    ReportingSink,
)
from autoheal.providers.github import GitHubActionsProvider, NullCIProvider
from autoheal.providers.local import (
    FileReportingSink,
    GitArtifactStore,
    LocalArtifactStore,
    LocalLogSource,
    NullReportingSink,
)
from autoheal.providers.loki import LokiQuerySource, LokiReportingSink
from autoheal.providers.process import DockerComposeController, NullProcessController

logger = logging.getLogger(__name__)

__all__ = [
    "ArtifactStore",
    "CIProvider",
    "Collaborators",
    "DockerComposeController",
    "FileReportingSink",
    "GitArtifactStore",
    "GitHubActionsProvider",
    "LocalArtifactStore",
    "LocalLogSource",
    "LogQuerySource",
    "LokiQuerySource",
    "LokiReportingSink",
    "NullCIProvider",
    "NullProcessController",
    "NullReportingSink",
    "ProcessController",
    "ReportingSink",
    "build_collaborators",
]


@dataclass
class Collaborators:
    """The resolved set of external capabilities."""

    ci: CIProvider
    artifacts: ArtifactStore
    process: ProcessController
    sink: ReportingSink
    local_logs: LocalLogSource
    log_query: Optional[LogQuerySource] = None

    async def close(self) -> None:
        for closable in (self.ci, self.process, self.sink, self.log_query):
            if closable is not None:
                await closable.close()


def build_collaborators(config: AutohealConfig) -> Collaborators:
    """Resolve every capability from configuration."""
    if config.ci_provider == "github" and config.github_owner and config.github_repo:
        ci: CIProvider = GitHubActionsProvider(
            owner=config.github_owner,
            repo=config.github_repo,
            token=config.github_token,
            api_url=config.github_api_url,
            default_workflow=config.default_workflow,
            default_ref=config.default_ref,
            max_runs=config.ci_max_runs,
            timeout=config.collector_timeout,
        )
    else:
        if config.ci_provider == "github":
            logger.warning("GitHub owner/repo not configured, CI provider disabled")
        ci = NullCIProvider()

    if config.artifact_store == "git":
        artifacts: ArtifactStore = GitArtifactStore(config.artifact_root)
    else:
        artifacts = LocalArtifactStore(config.artifact_root)

    if config.process_controller == "compose":
        process: ProcessController = DockerComposeController(
            services=config.services,
            project_dir=config.compose_project_dir,
            compose_command=config.compose_command,
            probe_timeout=config.probe_timeout,
            restart_timeout=config.restart_timeout,
        )
    else:
        process = NullProcessController()

    if config.reporting_sink == "loki":
        sink: ReportingSink = LokiReportingSink(config.loki_url, timeout=config.sink_timeout)
    elif config.reporting_sink == "file":
        sink = FileReportingSink(Path(config.data_dir) / "reports.jsonl")
    else:
        sink = NullReportingSink()

    log_query = None
    if config.enable_loki_collector:
        log_query = LokiQuerySource(
            config.loki_url, limit=config.loki_limit, timeout=config.collector_timeout
        )

    collaborators = Collaborators(
        ci=ci,
        artifacts=artifacts,
        process=process,
        sink=sink,
        local_logs=LocalLogSource(),
        log_query=log_query,
    )
    logger.info(
        f"Collaborators: ci={ci.name} artifacts={type(artifacts).__name__} "
        f"process={type(process).__name__} sink={sink.name}"
    )
    return collaborators
