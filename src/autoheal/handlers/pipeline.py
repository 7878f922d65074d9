"""Built-in handlers that act on processes and pipelines rather than artifacts."""

import logging
from typing import Optional

from autoheal.handlers.base import FixContext, FixHandler
from autoheal.models import FixResult, Issue
from autoheal.signatures import service_from_signature

logger = logging.getLogger(__name__)


class RerunPipelineHandler(FixHandler):
    """Transient pipeline failures: nothing to patch, just run it again."""

    handler_id = "rerun-pipeline"

    async def handle(self, issue: Issue) -> FixResult:
        target = f"run {issue.run.id}" if issue.run else "the default workflow"
        return self.ok(issue, f"Rerun of {target} requested", requires_restart=True)


class RestartServiceHandler(FixHandler):
    """
    Restarts a dependent service through the ProcessController.

    With a fixed service_id the handler serves a log-derived signature and
    skips the restart when the service already reports healthy. Without one it
    serves health:<service> signatures and restarts the service named by the
    signature.
    """

    def __init__(
        self,
        ctx: FixContext,
        handler_id: str = "restart-service",
        service_id: Optional[str] = None,
    ):
        super().__init__(ctx)
        self.handler_id = handler_id
        self.service_id = service_id
        self.timeout = ctx.config.restart_timeout + ctx.config.probe_timeout

    async def handle(self, issue: Issue) -> FixResult:
        service_id = self.service_id or service_from_signature(issue.signature_id)
        if not service_id:
            return self.fail(issue, f"Cannot derive a service from '{issue.signature_id}'")

        process = self.ctx.process
        if self.service_id is not None and await process.is_healthy(service_id):
            return self.ok(issue, f"{service_id} is healthy, restart skipped")

        if await process.restart(service_id):
            return self.ok(issue, f"Restarted {service_id}")
        return self.fail(issue, f"Restart of {service_id} failed")
