"""Data model shared by every stage of the remediation pipeline."""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Severity(str, Enum):
    """Signature severity."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def is_urgent(self) -> bool:
        """Critical and high severities go to the high dispatch band."""
        return self in (Severity.CRITICAL, Severity.HIGH)


class Band(str, Enum):
    """Dispatch queue band."""

    HIGH = "high"
    NORMAL = "normal"

    @classmethod
    def for_severity(cls, severity: Severity) -> "Band":
        return cls.HIGH if severity.is_urgent else cls.NORMAL


class IssueState(str, Enum):
    """Lifecycle of a single Issue. fixed and fix_failed are terminal."""

    DETECTED = "detected"
    QUEUED = "queued"
    DISPATCHED = "dispatched"
    FIXED = "fixed"
    FIX_FAILED = "fix_failed"


@dataclass(frozen=True)
class Signature:
    """A known failure pattern and the handler that remediates it."""

    id: str
    display_name: str
    category: str
    severity: Severity
    handler_id: str
    pattern: re.Pattern | None = None
    description: str = ""

    def search(self, text: str) -> re.Match | None:
        """Return the first match in text, or None."""
        if self.pattern is None or not text:
            return None
        return self.pattern.search(text)

    def matches(self, text: str) -> bool:
        return self.search(text) is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "display_name": self.display_name,
            "category": self.category,
            "severity": self.severity.value,
            "handler_id": self.handler_id,
            "pattern": self.pattern.pattern if self.pattern is not None else None,
            "description": self.description,
        }


@dataclass(frozen=True)
class RunRef:
    """Reference to a CI pipeline run."""

    id: int | str
    name: str = ""
    workflow: str = ""
    head_sha: str = ""
    url: str = ""
    attempt: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "workflow": self.workflow,
            "head_sha": self.head_sha,
            "url": self.url,
            "attempt": self.attempt,
        }


@dataclass(frozen=True)
class Issue:
    """One detected occurrence of a signature, pending remediation."""

    signature_id: str
    source: str
    raw_excerpt: str
    severity: Severity = Severity.MEDIUM
    detected_at: datetime = field(default_factory=utcnow)
    run: RunRef | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "signature_id": self.signature_id,
            "source": self.source,
            "raw_excerpt": self.raw_excerpt,
            "severity": self.severity.value,
            "detected_at": self.detected_at.isoformat(),
            "run": self.run.to_dict() if self.run else None,
        }


@dataclass(frozen=True)
class QueueEntry:
    """An Issue waiting in one of the two dispatch bands."""

    issue: Issue
    band: Band
    sequence: int = 0
    enqueued_at: datetime = field(default_factory=utcnow)

    @classmethod
    def for_issue(cls, issue: Issue, sequence: int = 0) -> "QueueEntry":
        return cls(issue=issue, band=Band.for_severity(issue.severity), sequence=sequence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue": self.issue.to_dict(),
            "band": self.band.value,
            "sequence": self.sequence,
            "enqueued_at": self.enqueued_at.isoformat(),
        }


@dataclass
class CooldownEntry:
    """Last remediation attempt for a signature. One live entry per signature."""

    signature_id: str
    last_applied_at: float  # epoch seconds, survives restarts
    outcome: IssueState

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature_id": self.signature_id,
            "last_applied_at": self.last_applied_at,
            "outcome": self.outcome.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CooldownEntry":
        return cls(
            signature_id=data["signature_id"],
            last_applied_at=float(data["last_applied_at"]),
            outcome=IssueState(data.get("outcome", IssueState.FIX_FAILED.value)),
        )


@dataclass(frozen=True)
class FixResult:
    """Structured outcome of one fix handler invocation."""

    signature_id: str
    success: bool
    message: str
    requires_restart: bool = False
    applied_at: datetime = field(default_factory=utcnow)
    changed_paths: tuple[str, ...] = ()
    handler_id: str = ""

    @classmethod
    def ok(cls, issue: Issue, message: str, **kwargs: Any) -> "FixResult":
        return cls(signature_id=issue.signature_id, success=True, message=message, **kwargs)

    @classmethod
    def fail(cls, issue: Issue, message: str, **kwargs: Any) -> "FixResult":
        return cls(signature_id=issue.signature_id, success=False, message=message, **kwargs)

    @property
    def state(self) -> IssueState:
        return IssueState.FIXED if self.success else IssueState.FIX_FAILED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "signature_id": self.signature_id,
            "success": self.success,
            "message": self.message,
            "requires_restart": self.requires_restart,
            "applied_at": self.applied_at.isoformat(),
            "changed_paths": list(self.changed_paths),
            "handler_id": self.handler_id,
        }


@dataclass(frozen=True)
class HealthCheckResult:
    """Result of one health probe. Only unhealthy results become Issues."""

    service_id: str
    healthy: bool
    checked_at: datetime = field(default_factory=utcnow)
    detail: str = ""
    latency_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "healthy": self.healthy,
            "checked_at": self.checked_at.isoformat(),
            "detail": self.detail,
            "latency_ms": round(self.latency_ms, 2),
        }


@dataclass
class ReportDocument:
    """Point-in-time status of the control loop."""

    generated_at: str
    started_at: str
    totals: dict[str, int] = field(default_factory=dict)
    per_signature: dict[str, dict[str, int]] = field(default_factory=dict)
    restarts: dict[str, int] = field(default_factory=dict)
    last_health: list[dict[str, Any]] = field(default_factory=list)
    recent_fixes: list[dict[str, Any]] = field(default_factory=list)
    queue_depth: int = 0

    @property
    def total_fixed(self) -> int:
        return self.totals.get("fixed", 0)

    @property
    def total_failed(self) -> int:
        return self.totals.get("failed", 0)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "generated_at": self.generated_at,
            "started_at": self.started_at,
            "totals": dict(self.totals),
            "per_signature": {k: dict(v) for k, v in self.per_signature.items()},
            "restarts": dict(self.restarts),
            "last_health": list(self.last_health),
            "recent_fixes": list(self.recent_fixes),
            "queue_depth": self.queue_depth,
        }
