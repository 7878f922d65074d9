"""
Autoheal

Self-healing control loop for a CI pipeline: watches CI logs, Loki and local
log files for known failure signatures, probes dependent services, and
dispatches idempotent fixes.
"""

__version__ = "1.0.0"

from autoheal.config import AutohealConfig, get_config
from autoheal.errors import AutohealError, InitializationError
from autoheal.models import FixResult, Issue, Severity, Signature

__all__ = [
    "AutohealConfig",
    "AutohealError",
    "FixResult",
    "InitializationError",
    "Issue",
    "Severity",
    "Signature",
    "get_config",
    "__version__",
]
