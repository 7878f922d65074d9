"""
Dispatcher.

Pulls one QueueEntry at a time and runs its handler to completion before
pulling the next, so handlers never run concurrently. Every terminal outcome
writes a cooldown entry and a Reporter update; nothing a handler does escapes
this module.
"""

import asyncio
import logging
import time
from typing import Optional

from autoheal.cooldown import CooldownTracker
from autoheal.dispatch_queue import DispatchQueue
from autoheal.handlers.base import FixHandler, HandlerRegistry
from autoheal.models import FixResult, IssueState, QueueEntry
from autoheal.providers.base import ArtifactStore
from autoheal.reporter import Reporter
from autoheal.restart import RestartController
from autoheal.signatures import SignatureRegistry

logger = logging.getLogger(__name__)


class Dispatcher:
    """Drains the dispatch queue through the fix handlers."""

    def __init__(
        self,
        queue: DispatchQueue,
        signatures: SignatureRegistry,
        handlers: HandlerRegistry,
        cooldown: CooldownTracker,
        reporter: Reporter,
        restart: RestartController,
        artifacts: Optional[ArtifactStore] = None,
        handler_timeout: float = 15.0,
    ):
        self.queue = queue
        self.signatures = signatures
        self.handlers = handlers
        self.cooldown = cooldown
        self.reporter = reporter
        self.restart = restart
        self.artifacts = artifacts
        self.handler_timeout = handler_timeout
        self._in_flight: Optional[QueueEntry] = None

    @property
    def in_flight(self) -> Optional[QueueEntry]:
        return self._in_flight

    def handler_for(self, signature_id: str) -> Optional[FixHandler]:
        signature = self.signatures.lookup(signature_id)
        if signature is None:
            return None
        return self.handlers.get(signature.handler_id)

    async def dispatch_one(self) -> Optional[FixResult]:
        """
        Dispatch the next entry, if any.

        Entries whose signature went into cooldown while they waited are
        dropped as suppressed; None means the queue is empty.
        """
        while True:
            entry = self.queue.dequeue_next()
            self.reporter.set_queue_depth(len(self.queue))
            if entry is None:
                return None
            sid = entry.issue.signature_id
            if self.cooldown.should_suppress(sid):
                logger.info(f"[{entry.issue.id}] {sid}: cooling down since it was queued, dropped")
                self.reporter.record_suppressed(sid)
                continue
            return await self.dispatch(entry)

    async def dispatch(self, entry: QueueEntry) -> FixResult:
        issue = entry.issue
        handler = self.handler_for(issue.signature_id)
        self._in_flight = entry
        logger.info(
            f"[{issue.id}] {issue.signature_id}: {IssueState.QUEUED.value} -> "
            f"{IssueState.DISPATCHED.value} ({entry.band.value} band)"
        )

        try:
            result = await self._invoke(handler, entry)
        finally:
            self._in_flight = None

        # Cooldown is written for failures too so a broken handler is not hot-looped
        self.cooldown.record(issue.signature_id, result.state)
        self.reporter.record_fix(result)

        if result.success:
            logger.info(f"[{issue.id}] {issue.signature_id}: {result.state.value}: {result.message}")
        else:
            logger.warning(f"[{issue.id}] {issue.signature_id}: {result.state.value}: {result.message}")

        if handler is not None and handler.commit_changes and result.success and result.changed_paths:
            await self._commit(result)

        restarted = await self.restart.maybe_restart(issue, result)
        if restarted is not None:
            self.reporter.record_restart(restarted)

        return result

    async def _invoke(self, handler: Optional[FixHandler], entry: QueueEntry) -> FixResult:
        issue = entry.issue
        if handler is None:
            return FixResult.fail(issue, f"No handler bound to '{issue.signature_id}'")

        timeout = handler.timeout or self.handler_timeout
        start = time.time()
        try:
            result = await asyncio.wait_for(handler.handle(issue), timeout=timeout)
        except asyncio.TimeoutError:
            return FixResult.fail(
                issue, f"Handler timed out after {timeout}s", handler_id=handler.handler_id
            )
        except Exception as e:
            logger.exception(f"[{issue.id}] Handler {handler.handler_id} raised")
            return FixResult.fail(
                issue, f"Handler raised {type(e).__name__}: {e}", handler_id=handler.handler_id
            )

        logger.debug(f"[{issue.id}] {handler.handler_id} finished in {time.time() - start:.2f}s")
        return result

    async def _commit(self, result: FixResult) -> None:
        if self.artifacts is None:
            return
        message = f"autoheal: {result.signature_id}: {result.message}"
        try:
            committed = await self.artifacts.commit(list(result.changed_paths), message)
        except Exception as e:
            logger.error(f"Commit of {', '.join(result.changed_paths)} failed: {e}")
            return
        if committed:
            logger.info(f"Committed fix for {result.signature_id}")
