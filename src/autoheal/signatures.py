"""
Signature Registry.

Static table of known CI failure signatures and the handler bound to each.
Loaded once at startup, validated against the handler registry, then frozen.
"""

import logging
import re
from typing import Iterable, Optional

from autoheal.errors import DuplicateSignatureError, MissingHandlerError, RegistryFrozenError
from autoheal.models import Severity, Signature

logger = logging.getLogger(__name__)

HEALTH_PREFIX = "health:"


# Built-in failure signatures seen in the regression pipeline
BUILTIN_SIGNATURES: list[Signature] = [
    Signature(
        id="esm-import-error",
        display_name="ESM Import Error",
        category="pipeline",
        severity=Severity.CRITICAL,
        handler_id="esm-dynamic-import",
        pattern=re.compile(r"Error \[ERR_REQUIRE_ESM\].*require\(\) of ES Module.*@octokit/rest"),
        description="CommonJS require() of an ES-only module such as @octokit/rest",
    ),
    Signature(
        id="chromedriver-symlink",
        display_name="ChromeDriver Symbolic Link",
        category="docker",
        severity=Severity.CRITICAL,
        handler_id="chromedriver-symlink",
        pattern=re.compile(r"ln: failed to create symbolic link.*chromedriver.*File exists"),
        description="Docker build fails because the chromedriver symlink already exists",
    ),
    Signature(
        id="node-version-mismatch",
        display_name="Node.js Version Compatibility",
        category="environment",
        severity=Severity.HIGH,
        handler_id="node-version-bump",
        pattern=re.compile(r"npm warn EBADENGINE.*required:.*node.*>= ?20.*current:.*v18"),
        description="Packages require Node 20 while the pipeline runs Node 18",
    ),
    Signature(
        id="cucumber-execution",
        display_name="Cucumber Execution",
        category="regression",
        severity=Severity.HIGH,
        handler_id="ensure-cucumber",
        pattern=re.compile(r"Cannot find module.*cucumber|npx: installed.*but not found"),
        description="Cucumber.js cannot be resolved by the test runner",
    ),
    Signature(
        id="webdriver-session",
        display_name="WebDriver Session",
        category="regression",
        severity=Severity.HIGH,
        handler_id="ensure-webdriver",
        pattern=re.compile(
            r"WebDriver session.*failed to start|chrome.*not found|chromedriver.*not found"
        ),
        description="Browser session cannot start because Chrome or chromedriver is missing",
    ),
    Signature(
        id="package-install",
        display_name="Package Installation",
        category="dependencies",
        severity=Severity.MEDIUM,
        handler_id="rerun-pipeline",
        pattern=re.compile(r"npm ERR!.*ENOENT|npm ERR!.*EACCES|npm install.*failed"),
        description="npm install failed on the runner",
    ),
    Signature(
        id="loki-connection",
        display_name="Loki Connection",
        category="monitoring",
        severity=Severity.MEDIUM,
        handler_id="restart-loki",
        pattern=re.compile(
            r"Failed to push logs to Loki|Connection refused.*3100|ECONNREFUSED.*localhost:3100"
        ),
        description="Test logs cannot be shipped to Loki",
    ),
    Signature(
        id="workflow-failure",
        display_name="GitHub Actions Workflow",
        category="pipeline",
        severity=Severity.HIGH,
        handler_id="rerun-pipeline",
        pattern=re.compile(r"workflow.*failed|action.*failed|step.*failed"),
        description="Generic workflow step failure",
    ),
]


def health_signature_id(service_id: str) -> str:
    return f"{HEALTH_PREFIX}{service_id}"


def service_from_signature(signature_id: str) -> Optional[str]:
    """Return the service id of a health signature, or None for log signatures."""
    if signature_id.startswith(HEALTH_PREFIX):
        return signature_id[len(HEALTH_PREFIX):] or None
    return None


def health_signature(service_id: str, severity: Severity = Severity.HIGH) -> Signature:
    """Signature for an unhealthy service. Never matches log text."""
    return Signature(
        id=health_signature_id(service_id),
        display_name=f"{service_id} unhealthy",
        category="health",
        severity=severity,
        handler_id="restart-service",
        description=f"Health probe for '{service_id}' reported unhealthy",
    )


class SignatureRegistry:
    """
    Registry of failure signatures.

    Registration happens only during startup; freeze() locks the table and any
    later register() raises RegistryFrozenError.
    """

    def __init__(self, signatures: Optional[Iterable[Signature]] = None):
        self._signatures: dict[str, Signature] = {}
        self._frozen = False
        for signature in signatures or []:
            self.register(signature)

    def register(self, signature: Signature) -> None:
        """Add a signature. Duplicate ids are fatal."""
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register '{signature.id}': registry is frozen")
        if signature.id in self._signatures:
            raise DuplicateSignatureError(signature.id)
        self._signatures[signature.id] = signature

    def all(self) -> list[Signature]:
        """All signatures in registration order."""
        return list(self._signatures.values())

    def lookup(self, signature_id: str) -> Optional[Signature]:
        return self._signatures.get(signature_id)

    def validate(self, handler_ids: Iterable[str]) -> None:
        """Fail fast if any signature points at a handler that does not exist."""
        known = set(handler_ids)
        for signature in self._signatures.values():
            if signature.handler_id not in known:
                raise MissingHandlerError(signature.id, signature.handler_id)

    def freeze(self) -> None:
        self._frozen = True
        logger.info(f"Signature registry loaded with {len(self._signatures)} signatures")

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __len__(self) -> int:
        return len(self._signatures)

    def __contains__(self, signature_id: object) -> bool:
        return signature_id in self._signatures


def build_registry(
    service_severities: Optional[dict[str, Severity]] = None,
    extra: Optional[Iterable[Signature]] = None,
) -> SignatureRegistry:
    """Built-in signatures plus one health signature per monitored service."""
    registry = SignatureRegistry(BUILTIN_SIGNATURES)
    for service_id, severity in (service_severities or {}).items():
        registry.register(health_signature(service_id, severity))
    for signature in extra or []:
        registry.register(signature)
    return registry
