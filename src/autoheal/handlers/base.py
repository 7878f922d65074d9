"""
Fix handler framework.

A FixHandler is bound to exactly one handler id and is only ever invoked by the
Dispatcher. Handlers are idempotent: they inspect the current state of what
they would change before changing it.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from autoheal.config import AutohealConfig
from autoheal.errors import HandlerFailure, InitializationError, RegistryFrozenError
from autoheal.models import FixResult, Issue
from autoheal.providers.base import ArtifactStore, CIProvider, ProcessController

logger = logging.getLogger(__name__)


@dataclass
class FixContext:
    """Collaborators a handler may act through."""

    config: AutohealConfig
    artifacts: ArtifactStore
    process: ProcessController
    ci: CIProvider


class FixHandler(ABC):
    """Base class for remediation actions."""

    handler_id: str = ""
    # Ask the Dispatcher to commit changed artifacts after a successful fix
    commit_changes: bool = False
    # Per-handler override of config.handler_timeout
    timeout: Optional[float] = None

    def __init__(self, ctx: FixContext):
        self.ctx = ctx

    @abstractmethod
    async def handle(self, issue: Issue) -> FixResult:
        """Remediate the issue and describe what happened."""
        pass

    def ok(self, issue: Issue, message: str, **kwargs: Any) -> FixResult:
        return FixResult.ok(issue, message, handler_id=self.handler_id, **kwargs)

    def fail(self, issue: Issue, message: str, **kwargs: Any) -> FixResult:
        return FixResult.fail(issue, message, handler_id=self.handler_id, **kwargs)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.handler_id}>"


class ArtifactFixHandler(FixHandler):
    """
    Handler that patches text artifacts through the ArtifactStore.

    For every target path the handler classifies the current content:
    broken (patch it), already fixed (leave it alone) or unrecognised. The
    fix succeeds when at least one artifact was patched or is already fixed
    and none was patched incorrectly; if nothing is recognisable it fails
    rather than guessing.
    """

    requires_restart: bool = True

    @abstractmethod
    def target_paths(self, issue: Issue) -> list[str]:
        pass

    @abstractmethod
    def apply(self, issue: Issue, path: str, text: str) -> Optional[str]:
        """Patched text, or None when the broken pattern is not present."""
        pass

    @abstractmethod
    def is_fixed(self, issue: Issue, path: str, text: str) -> bool:
        pass

    async def handle(self, issue: Issue) -> FixResult:
        store = self.ctx.artifacts
        changed: list[str] = []
        already: list[str] = []
        unknown: list[str] = []

        for path in self.target_paths(issue):
            if not await store.exists(path):
                logger.debug(f"{self.handler_id}: artifact {path} does not exist")
                continue

            text = await store.read(path)
            patched = self.apply(issue, path, text)
            if patched is not None and patched != text:
                if not self.is_fixed(issue, path, patched):
                    raise HandlerFailure(f"{self.handler_id}: patch of {path} did not verify")
                await store.write(path, patched)
                changed.append(path)
            elif self.is_fixed(issue, path, text):
                already.append(path)
            else:
                unknown.append(path)

        if changed:
            return self.ok(
                issue,
                f"Patched {', '.join(changed)}",
                requires_restart=self.requires_restart,
                changed_paths=tuple(changed),
            )
        if already:
            return self.ok(issue, f"Already fixed: {', '.join(already)}")
        if unknown:
            return self.fail(
                issue, f"Neither broken nor fixed pattern found in {', '.join(unknown)}"
            )
        return self.fail(issue, "No target artifact exists")


class HandlerRegistry:
    """Handlers by handler id. Frozen after startup like the signature registry."""

    def __init__(self, handlers: Optional[Iterable[FixHandler]] = None):
        self._handlers: dict[str, FixHandler] = {}
        self._frozen = False
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: FixHandler) -> None:
        if self._frozen:
            raise RegistryFrozenError(
                f"Cannot register handler '{handler.handler_id}': registry is frozen"
            )
        if not handler.handler_id:
            raise InitializationError(f"{type(handler).__name__} has no handler_id")
        if handler.handler_id in self._handlers:
            raise InitializationError(f"Duplicate handler id: {handler.handler_id}")
        self._handlers[handler.handler_id] = handler

    def get(self, handler_id: str) -> Optional[FixHandler]:
        return self._handlers.get(handler_id)

    def ids(self) -> list[str]:
        return list(self._handlers)

    def freeze(self) -> None:
        self._frozen = True

    def __contains__(self, handler_id: object) -> bool:
        return handler_id in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
