"""
Priority Dispatch Queue.

Two FIFO bands. Critical and high severity Issues go to the high band, which is
always drained to empty before the normal band is touched.
"""

import itertools
import threading
from collections import deque
from dataclasses import replace
from typing import Optional

from autoheal.models import Band, Issue, QueueEntry


class DispatchQueue:
    """Two-band FIFO of pending Issues."""

    def __init__(self):
        self._bands: dict[Band, deque[QueueEntry]] = {
            Band.HIGH: deque(),
            Band.NORMAL: deque(),
        }
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def enqueue(self, entry: QueueEntry) -> QueueEntry:
        """Append an entry to the tail of its band, stamped with the next arrival sequence."""
        with self._lock:
            entry = replace(entry, sequence=next(self._sequence))
            self._bands[entry.band].append(entry)
        return entry

    def put(self, issue: Issue) -> QueueEntry:
        """Wrap an Issue in a QueueEntry and enqueue it."""
        return self.enqueue(QueueEntry.for_issue(issue))

    def dequeue_next(self) -> Optional[QueueEntry]:
        """Pop the oldest high-band entry, else the oldest normal-band entry."""
        with self._lock:
            for band in (Band.HIGH, Band.NORMAL):
                if self._bands[band]:
                    return self._bands[band].popleft()
        return None

    def contains(self, signature_id: str) -> bool:
        """True when an Issue for the signature is already waiting."""
        with self._lock:
            return any(
                entry.issue.signature_id == signature_id
                for band in self._bands.values()
                for entry in band
            )

    def pending(self) -> list[QueueEntry]:
        """Snapshot in dispatch order."""
        with self._lock:
            return list(self._bands[Band.HIGH]) + list(self._bands[Band.NORMAL])

    def depth(self, band: Optional[Band] = None) -> int:
        with self._lock:
            if band is not None:
                return len(self._bands[band])
            return sum(len(q) for q in self._bands.values())

    def __len__(self) -> int:
        return self.depth()

    def clear(self) -> int:
        """Drop all pending entries. Returns how many were dropped."""
        with self._lock:
            dropped = sum(len(q) for q in self._bands.values())
            for q in self._bands.values():
                q.clear()
        return dropped
