"""
GitHub Actions CI provider.

Talks to the GitHub REST API with httpx: lists failed workflow runs, downloads
their log archives, and re-runs failed jobs.
"""

import io
import logging
import zipfile
from typing import Optional

import httpx

from autoheal.models import RunRef
from autoheal.providers.base import CIProvider

logger = logging.getLogger(__name__)


class GitHubActionsProvider(CIProvider):
    """CI provider backed by the GitHub Actions REST API."""

    name = "github"

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str = "",
        api_url: str = "https://api.github.com",
        default_workflow: str = "regression-tests.yml",
        default_ref: str = "main",
        max_runs: int = 5,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.owner = owner
        self.repo = repo
        self.default_workflow = default_workflow
        self.default_ref = default_ref
        self.max_runs = max_runs

        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.AsyncClient(
            base_url=api_url,
            headers=headers,
            timeout=timeout,
            follow_redirects=True,
        )

    @property
    def repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    async def close(self) -> None:
        await self._client.aclose()

    async def list_failed_runs(self) -> list[RunRef]:
        """Most recent completed runs that concluded with failure."""
        response = await self._client.get(
            f"{self.repo_path}/actions/runs",
            params={"status": "failure", "per_page": self.max_runs},
        )
        response.raise_for_status()

        runs = []
        for run in response.json().get("workflow_runs", []):
            if run.get("conclusion") != "failure":
                continue
            runs.append(
                RunRef(
                    id=run["id"],
                    name=run.get("name", ""),
                    workflow=(run.get("path") or "").rsplit("/", 1)[-1],
                    head_sha=run.get("head_sha", ""),
                    url=run.get("html_url", ""),
                    attempt=run.get("run_attempt", 1),
                )
            )
        return runs

    async def fetch_run_log(self, run: RunRef) -> str:
        """Download the run's log archive and concatenate every job log in it."""
        response = await self._client.get(f"{self.repo_path}/actions/runs/{run.id}/logs")
        response.raise_for_status()
        return extract_log_archive(response.content)

    async def rerun(self, run: Optional[RunRef]) -> bool:
        """Re-run the failed jobs of a run, or dispatch the default workflow."""
        if run is not None:
            url = f"{self.repo_path}/actions/runs/{run.id}/rerun-failed-jobs"
            response = await self._client.post(url)
        else:
            url = f"{self.repo_path}/actions/workflows/{self.default_workflow}/dispatches"
            response = await self._client.post(url, json={"ref": self.default_ref})

        if response.status_code in (201, 204):
            logger.info(f"Rerun accepted by GitHub: {url}")
            return True

        logger.warning(f"GitHub refused rerun ({response.status_code}): {response.text[:200]}")
        return False


def extract_log_archive(content: bytes) -> str:
    """Flatten a GitHub Actions log zip into one text blob, ordered by file name."""
    try:
        archive = zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile:
        # Some proxies hand back the plain text log
        return content.decode("utf-8", errors="replace")

    parts = []
    with archive:
        for name in sorted(archive.namelist()):
            if name.endswith("/"):
                continue
            parts.append(archive.read(name).decode("utf-8", errors="replace"))
    return "\n".join(parts)


class NullCIProvider(CIProvider):
    """CI provider used when no CI credentials are configured."""

    name = "null"

    async def list_failed_runs(self) -> list[RunRef]:
        return []

    async def fetch_run_log(self, run: RunRef) -> str:
        return ""

    async def rerun(self, run: Optional[RunRef]) -> bool:
        logger.info("Rerun requested but no CI provider is configured")
        return False
