"""
Dedup & Cooldown Tracker.

Keeps one CooldownEntry per signature and suppresses new Issues for a signature
whose last remediation attempt is younger than its cooldown window. Entries are
persisted to a JSON file so cooldowns survive a process restart.
"""

import json
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from autoheal.models import CooldownEntry, IssueState, Severity

logger = logging.getLogger(__name__)


class CooldownTracker:
    """Suppresses re-remediation of a signature inside its cooldown window."""

    def __init__(
        self,
        default_window: float = 300.0,
        window_by_severity: Optional[dict[Severity, float]] = None,
        severity_of: Optional[Callable[[str], Optional[Severity]]] = None,
        ttl_seconds: float = 86400.0,
        state_file: Optional[str | Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.default_window = default_window
        self.window_by_severity = dict(window_by_severity or {})
        self._severity_of = severity_of or (lambda _sid: None)
        self.ttl_seconds = ttl_seconds
        self.state_file = Path(state_file) if state_file else None
        self._clock = clock
        self._entries: dict[str, CooldownEntry] = {}
        self._lock = threading.Lock()

        self._load()

    def window_for(self, signature_id: str) -> float:
        """Cooldown window of a signature, per its severity when configured."""
        severity = self._severity_of(signature_id)
        if severity is not None and severity in self.window_by_severity:
            return self.window_by_severity[severity]
        return self.default_window

    def should_suppress(self, signature_id: str) -> bool:
        """True when the signature was remediated less than one window ago."""
        with self._lock:
            entry = self._entries.get(signature_id)
        if entry is None:
            return False

        elapsed = self._clock() - entry.last_applied_at
        window = self.window_for(signature_id)
        if elapsed < window:
            logger.info(
                f"Suppressing {signature_id}: last attempt {elapsed:.0f}s ago "
                f"({entry.outcome.value}), cooldown {window:.0f}s"
            )
            return True
        return False

    def remaining(self, signature_id: str) -> float:
        """Seconds left in the cooldown window, 0 when not cooling down."""
        with self._lock:
            entry = self._entries.get(signature_id)
        if entry is None:
            return 0.0
        left = self.window_for(signature_id) - (self._clock() - entry.last_applied_at)
        return max(0.0, left)

    def record(self, signature_id: str, outcome: IssueState) -> CooldownEntry:
        """Overwrite the signature's entry with a new attempt and persist."""
        entry = CooldownEntry(
            signature_id=signature_id,
            last_applied_at=self._clock(),
            outcome=outcome,
        )
        with self._lock:
            self._entries[signature_id] = entry
            self._prune_locked()
            snapshot = [e.to_dict() for e in self._entries.values()]
        self._save(snapshot)
        return entry

    def get(self, signature_id: str) -> Optional[CooldownEntry]:
        with self._lock:
            return self._entries.get(signature_id)

    def entries(self) -> list[CooldownEntry]:
        """Snapshot copy of all live entries."""
        with self._lock:
            return list(self._entries.values())

    def _prune_locked(self) -> None:
        if self.ttl_seconds <= 0:
            return
        cutoff = self._clock() - self.ttl_seconds
        expired = [sid for sid, e in self._entries.items() if e.last_applied_at < cutoff]
        for sid in expired:
            del self._entries[sid]

    def _load(self) -> None:
        """Load persisted entries, dropping the ones past their TTL."""
        if self.state_file is None or not self.state_file.exists():
            return
        try:
            with open(self.state_file) as f:
                data = json.load(f)
            entries = [CooldownEntry.from_dict(item) for item in data]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable cooldown state {self.state_file}: {e}")
            return

        with self._lock:
            self._entries = {e.signature_id: e for e in entries}
            self._prune_locked()
            count = len(self._entries)
        logger.info(f"Restored {count} cooldown entries from {self.state_file}")

    def _save(self, snapshot: list[dict]) -> None:
        if self.state_file is None:
            return
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.state_file.with_suffix(".tmp")
            with open(tmp, "w") as f:
                json.dump(snapshot, f, indent=2)
            tmp.replace(self.state_file)
        except OSError as e:
            logger.error(f"Failed to persist cooldown state: {e}")
