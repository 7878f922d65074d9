"""
Tests for the two-band dispatch queue
"""

from conftest import make_issue


class TestBands:
    """Tests for band assignment."""

    def test_severity_to_band(self):
        from autoheal.models import Band, Severity

        assert Band.for_severity(Severity.CRITICAL) == Band.HIGH
        assert Band.for_severity(Severity.HIGH) == Band.HIGH
        assert Band.for_severity(Severity.MEDIUM) == Band.NORMAL
        assert Band.for_severity(Severity.LOW) == Band.NORMAL


class TestDispatchQueue:
    """Tests for DispatchQueue ordering."""

    def test_empty_queue(self):
        from autoheal.dispatch_queue import DispatchQueue

        queue = DispatchQueue()
        assert queue.dequeue_next() is None
        assert len(queue) == 0

    def test_critical_after_normal_is_dispatched_first(self):
        from autoheal.dispatch_queue import DispatchQueue

        queue = DispatchQueue()
        queue.put(make_issue("package-install"))
        queue.put(make_issue("esm-import-error"))

        assert queue.dequeue_next().issue.signature_id == "esm-import-error"
        assert queue.dequeue_next().issue.signature_id == "package-install"

    def test_fifo_within_band(self):
        from autoheal.dispatch_queue import DispatchQueue

        queue = DispatchQueue()
        for sid in ("workflow-failure", "esm-import-error", "node-version-mismatch"):
            queue.put(make_issue(sid))

        order = [queue.dequeue_next().issue.signature_id for _ in range(3)]
        assert order == ["workflow-failure", "esm-import-error", "node-version-mismatch"]

    def test_high_band_drained_before_normal(self):
        from autoheal.dispatch_queue import DispatchQueue
        from autoheal.models import Band

        queue = DispatchQueue()
        queue.put(make_issue("package-install"))
        queue.put(make_issue("loki-connection"))
        queue.put(make_issue("workflow-failure"))
        queue.put(make_issue("chromedriver-symlink"))

        assert queue.depth(Band.HIGH) == 2
        assert queue.depth(Band.NORMAL) == 2
        bands = [queue.dequeue_next().band for _ in range(4)]
        assert bands == [Band.HIGH, Band.HIGH, Band.NORMAL, Band.NORMAL]

    def test_sequence_increases(self):
        from autoheal.dispatch_queue import DispatchQueue

        queue = DispatchQueue()
        first = queue.put(make_issue("package-install"))
        second = queue.put(make_issue("esm-import-error"))
        assert second.sequence > first.sequence

    def test_pending_is_dispatch_order_snapshot(self):
        from autoheal.dispatch_queue import DispatchQueue

        queue = DispatchQueue()
        queue.put(make_issue("package-install"))
        queue.put(make_issue("health:loki"))

        pending = queue.pending()
        assert [e.issue.signature_id for e in pending] == ["health:loki", "package-install"]
        assert len(queue) == 2

    def test_contains_and_clear(self):
        from autoheal.dispatch_queue import DispatchQueue

        queue = DispatchQueue()
        queue.put(make_issue("package-install"))

        assert queue.contains("package-install")
        assert not queue.contains("esm-import-error")
        assert queue.clear() == 1
        assert len(queue) == 0

    def test_enqueue_assigns_arrival_order(self):
        from autoheal.dispatch_queue import DispatchQueue
        from autoheal.models import QueueEntry

        queue = DispatchQueue()
        first = queue.put(make_issue("package-install"))
        second = queue.enqueue(QueueEntry.for_issue(make_issue("package-install"), sequence=99))

        assert second.sequence == first.sequence + 1
        assert [e.sequence for e in queue.pending()] == [first.sequence, second.sequence]
