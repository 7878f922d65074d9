"""
Autoheal Status API

Read-only FastAPI surface over a running Orchestrator: liveness, the current
report snapshot, pending queue entries and Prometheus metrics.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel

from autoheal import __version__
from autoheal.models import utcnow
from autoheal.orchestrator import Orchestrator


# API Models
class LivenessResponse(BaseModel):
    """Liveness of the control loop."""
    status: str
    version: str
    started_at: datetime
    uptime_seconds: float
    queue_depth: int
    open_incidents: List[str]


class HealthSnapshot(BaseModel):
    service_id: str
    healthy: bool
    checked_at: datetime
    detail: str = ""
    latency_ms: float = 0.0


class FixRecord(BaseModel):
    signature_id: str
    success: bool
    message: str
    requires_restart: bool
    applied_at: datetime
    changed_paths: List[str] = []
    handler_id: str = ""


class StatusResponse(BaseModel):
    """Report snapshot."""
    generated_at: datetime
    started_at: datetime
    totals: Dict[str, int]
    per_signature: Dict[str, Dict[str, int]]
    restarts: Dict[str, int]
    last_health: List[HealthSnapshot]
    recent_fixes: List[FixRecord]
    queue_depth: int


class QueueItem(BaseModel):
    issue_id: str
    signature_id: str
    severity: str
    source: str
    band: str
    sequence: int
    enqueued_at: datetime
    excerpt: str
    run_id: Optional[Any] = None


class SignatureInfo(BaseModel):
    id: str
    display_name: str
    category: str
    severity: str
    handler_id: str
    cooldown_remaining: float


def create_app(orchestrator: Orchestrator) -> FastAPI:
    """Build the status app around an orchestrator."""
    app = FastAPI(
        title="Autoheal",
        description="Status API for the self-healing CI control loop",
        version=__version__,
    )

    @app.get("/")
    async def root():
        return {"message": "Autoheal", "docs": "/docs", "status": "/status"}

    @app.get("/health", response_model=LivenessResponse)
    async def health():
        """Liveness of the control loop itself."""
        started = orchestrator.reporter.started_at
        return LivenessResponse(
            status="stopping" if orchestrator.stopping else "ok",
            version=__version__,
            started_at=started,
            uptime_seconds=(utcnow() - started).total_seconds(),
            queue_depth=len(orchestrator.queue),
            open_incidents=sorted(orchestrator.health.open_incidents),
        )

    @app.get("/status", response_model=StatusResponse)
    async def status():
        """Current report snapshot."""
        return orchestrator.reporter.snapshot().to_dict()

    @app.get("/queue", response_model=List[QueueItem])
    async def queue(
        band: Optional[str] = Query(None, description="Filter by band (high, normal)"),
    ):
        """Pending issues in dispatch order."""
        items = []
        for entry in orchestrator.queue.pending():
            if band and entry.band.value != band:
                continue
            issue = entry.issue
            items.append(
                QueueItem(
                    issue_id=issue.id,
                    signature_id=issue.signature_id,
                    severity=issue.severity.value,
                    source=issue.source,
                    band=entry.band.value,
                    sequence=entry.sequence,
                    enqueued_at=entry.enqueued_at,
                    excerpt=issue.raw_excerpt,
                    run_id=issue.run.id if issue.run else None,
                )
            )
        return items

    @app.get("/signatures", response_model=List[SignatureInfo])
    async def signatures():
        """Registered signatures and their cooldown state."""
        return [
            SignatureInfo(
                id=sig.id,
                display_name=sig.display_name,
                category=sig.category,
                severity=sig.severity.value,
                handler_id=sig.handler_id,
                cooldown_remaining=orchestrator.cooldown.remaining(sig.id),
            )
            for sig in orchestrator.signatures.all()
        ]

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(
            content=orchestrator.reporter.render_metrics(),
            media_type=CONTENT_TYPE_LATEST,
        )

    return app
