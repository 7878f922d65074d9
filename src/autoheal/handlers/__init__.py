"""Fix handlers and the registry that binds them to handler ids."""

from autoheal.handlers.artifacts import (
    ChromedriverSymlinkHandler,
    EnsureDependencyHandler,
    EsmDynamicImportHandler,
    NodeVersionBumpHandler,
    cucumber_handler,
    module_from_excerpt,
    webdriver_handler,
)
from autoheal.handlers.base import ArtifactFixHandler, FixContext, FixHandler, HandlerRegistry
from autoheal.handlers.pipeline import RerunPipelineHandler, RestartServiceHandler

__all__ = [
    "ArtifactFixHandler",
    "ChromedriverSymlinkHandler",
    "EnsureDependencyHandler",
    "EsmDynamicImportHandler",
    "FixContext",
    "FixHandler",
    "HandlerRegistry",
    "NodeVersionBumpHandler",
    "RerunPipelineHandler",
    "RestartServiceHandler",
    "build_default_handlers",
    "module_from_excerpt",
]


def build_default_handlers(ctx: FixContext) -> HandlerRegistry:
    """Registry with every built-in handler."""
    return HandlerRegistry(
        [
            EsmDynamicImportHandler(ctx),
            ChromedriverSymlinkHandler(ctx),
            NodeVersionBumpHandler(ctx),
            cucumber_handler(ctx),
            webdriver_handler(ctx),
            RerunPipelineHandler(ctx),
            RestartServiceHandler(ctx, handler_id="restart-service"),
            RestartServiceHandler(ctx, handler_id="restart-loki", service_id="loki"),
        ]
    )
