"""
Restart Controller.

Asks the CI provider to re-run the affected pipeline after a successful fix
that requires it. Best effort: a failed trigger never changes the fix outcome.
"""

import asyncio
import logging

from autoheal.errors import RestartTriggerFailure
from autoheal.models import FixResult, Issue
from autoheal.providers.base import CIProvider

logger = logging.getLogger(__name__)


class RestartController:
    def __init__(self, ci: CIProvider, timeout: float = 10.0):
        self.ci = ci
        self.timeout = timeout

    @staticmethod
    def wants_restart(result: FixResult) -> bool:
        return result.success and result.requires_restart

    async def trigger(self, issue: Issue) -> bool:
        """Request a rerun. Raises RestartTriggerFailure when it was refused or failed."""
        target = issue.run.id if issue.run else "default workflow"
        try:
            accepted = await asyncio.wait_for(self.ci.rerun(issue.run), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise RestartTriggerFailure(f"Rerun of {target} timed out after {self.timeout}s")
        except Exception as e:
            raise RestartTriggerFailure(f"Rerun of {target} failed: {e}") from e

        if not accepted:
            raise RestartTriggerFailure(f"Rerun of {target} was refused by {self.ci.name}")

        logger.info(f"Rerun of {target} triggered for {issue.signature_id}")
        return True

    async def maybe_restart(self, issue: Issue, result: FixResult) -> bool | None:
        """
        Trigger a rerun if the result calls for one.

        Returns None when no rerun was needed, otherwise whether it was triggered.
        """
        if not self.wants_restart(result):
            return None
        try:
            return await self.trigger(issue)
        except RestartTriggerFailure as e:
            logger.warning(str(e))
            return False
