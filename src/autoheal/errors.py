"""
Error taxonomy for the autoheal control loop.

Only InitializationError (and its subclasses) is allowed to escape to the
process entry point. Everything else is caught inside the loop that raised it,
logged, and counted by the Reporter.
"""


class AutohealError(Exception):
    """Base class for all autoheal errors."""
    pass


class InitializationError(AutohealError):
    """Fatal misconfiguration detected at startup. The process refuses to start."""
    pass


class DuplicateSignatureError(InitializationError):
    """Two signatures were registered under the same id."""

    def __init__(self, signature_id: str):
        super().__init__(f"Duplicate signature id: {signature_id}")
        self.signature_id = signature_id


class MissingHandlerError(InitializationError):
    """A signature references a handler id that has no registered handler."""

    def __init__(self, signature_id: str, handler_id: str):
        super().__init__(
            f"Signature '{signature_id}' references unknown handler '{handler_id}'"
        )
        self.signature_id = signature_id
        self.handler_id = handler_id


class RegistryFrozenError(InitializationError):
    """A registry was mutated after startup."""
    pass


class CollectorUnavailable(AutohealError):
    """A collector call failed or timed out. Skipped this cycle, retried next."""

    def __init__(self, collector: str, reason: str):
        super().__init__(f"Collector '{collector}' unavailable: {reason}")
        self.collector = collector
        self.reason = reason


class HandlerFailure(AutohealError):
    """A fix handler raised or could not verify that its fix is safe."""
    pass


class RestartTriggerFailure(AutohealError):
    """The CI provider refused or failed a rerun request. Best effort only."""
    pass


class ArtifactError(AutohealError):
    """An artifact could not be read or written."""
    pass
