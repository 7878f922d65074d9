"""
Autoheal Configuration

Central configuration for the control loop, its collaborators and their
endpoints. Defaults live on the dataclass, a YAML file may replace them, and
AUTOHEAL_* environment variables win over both.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from autoheal.models import Severity

logger = logging.getLogger(__name__)

ENV_PREFIX = "AUTOHEAL_"

# Services probed by the health monitor and restartable by the process controller
DEFAULT_SERVICES: Dict[str, Dict[str, Any]] = {
    "loki": {
        "health_url": "http://localhost:3100/ready",
        "compose_service": "loki",
        "severity": "high",
    },
    "grafana": {
        "health_url": "http://localhost:3004/api/health",
        "compose_service": "grafana",
        "severity": "high",
    },
}


def _coerce(raw: str, current: Any) -> Any:
    """Convert an environment string to the type of the current value."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


@dataclass
class AutohealConfig:
    """Configuration for the autoheal control loop."""

    # Persisted state (cooldowns, report)
    data_dir: str = ".autoheal"

    # Loop intervals (seconds)
    scan_interval: float = 30.0
    health_interval: float = 60.0
    dispatch_interval: float = 5.0
    flush_interval: float = 60.0

    # Cooldown
    cooldown_seconds: float = 300.0
    cooldown_by_severity: Dict[str, float] = field(default_factory=dict)
    cooldown_ttl_seconds: float = 86400.0

    # Diagnoser scan window
    scan_max_lines: int = 500
    scan_max_bytes: int = 256 * 1024

    # Call timeouts (seconds)
    collector_timeout: float = 15.0
    probe_timeout: float = 5.0
    handler_timeout: float = 15.0
    # docker compose restart; restart handlers get this plus probe_timeout
    restart_timeout: float = 60.0
    rerun_timeout: float = 10.0
    sink_timeout: float = 10.0

    fix_history_size: int = 100

    # Capability selection, resolved once at startup
    ci_provider: str = "github"  # github | null
    process_controller: str = "compose"  # compose | null
    reporting_sink: str = "loki"  # loki | file | null
    artifact_store: str = "local"  # local | git

    # Collectors
    enable_ci_collector: bool = True
    enable_loki_collector: bool = True
    enable_local_collector: bool = True

    # GitHub Actions
    github_api_url: str = "https://api.github.com"
    github_owner: str = ""
    github_repo: str = ""
    github_token: str = ""
    default_workflow: str = "regression-tests.yml"
    default_ref: str = "main"
    ci_max_runs: int = 5

    # Loki
    loki_url: str = "http://localhost:3100"
    loki_query: str = '{job="regression-tests"} |~ "(?i)(error|failed)"'
    loki_lookback_seconds: int = 300
    loki_limit: int = 500

    # Local logs
    local_log_paths: List[str] = field(
        default_factory=lambda: ["logs/regression-tests.log", "logs/error.log"]
    )
    local_tail_lines: int = 50

    # Artifacts patched by fix handlers (relative to artifact_root)
    artifact_root: str = "."
    esm_script_paths: List[str] = field(
        default_factory=lambda: ["pipeline-troubleshooter.js"]
    )
    dockerfile_path: str = "Dockerfile"
    workflow_path: str = ".github/workflows/regression-tests.yml"
    package_json_path: str = "package.json"
    node_target_version: str = "20"
    commit_fixes: bool = False

    # Process control
    compose_project_dir: str = "."
    compose_command: str = "docker compose"
    services: Dict[str, Dict[str, Any]] = field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_SERVICES.items()}
    )

    # Status API
    server_host: str = "0.0.0.0"
    server_port: int = 8610

    def __post_init__(self):
        # Environment overrides
        for f in fields(self):
            raw = os.getenv(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None or isinstance(getattr(self, f.name), dict):
                continue
            try:
                setattr(self, f.name, _coerce(raw, getattr(self, f.name)))
            except ValueError:
                logger.warning(f"Ignoring invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}")

        # Conventional CI variables used when nothing more specific is set
        self.github_token = self.github_token or os.getenv("GITHUB_TOKEN", "")
        self.github_owner = self.github_owner or os.getenv("GITHUB_OWNER", "")
        self.github_repo = self.github_repo or os.getenv("GITHUB_REPO", "")
        if not self.github_owner and "/" in os.getenv("GITHUB_REPOSITORY", ""):
            self.github_owner, self.github_repo = os.environ["GITHUB_REPOSITORY"].split("/", 1)

    @classmethod
    def from_yaml(cls, path: str) -> "AutohealConfig":
        """Load configuration from a YAML file. Environment variables still win."""
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys in {path}: {', '.join(unknown)}")

        return cls(**{k: v for k, v in data.items() if k in known})

    @property
    def data_path(self) -> Path:
        path = Path(self.data_dir)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def cooldown_for(self, severity: Severity) -> float:
        """Cooldown window for a severity, falling back to the global window."""
        return float(self.cooldown_by_severity.get(severity.value, self.cooldown_seconds))

    def service_severity(self, service_id: str) -> Severity:
        """Severity of health issues for a service. Defaults to high."""
        svc = self.services.get(service_id, {})
        try:
            return Severity(svc.get("severity", Severity.HIGH.value))
        except ValueError:
            return Severity.HIGH


_config: Optional[AutohealConfig] = None


def get_config() -> AutohealConfig:
    """Get the process-wide configuration instance."""
    global _config
    if _config is None:
        _config = AutohealConfig()
    return _config


def set_config(config: Optional[AutohealConfig]) -> None:
    global _config
    _config = config
