"""
Tests for the dispatcher
"""

import asyncio
import re

import pytest

from conftest import make_issue


class ScriptedHandler:
    """Factory for throwaway handlers with a fixed behaviour."""

    @staticmethod
    def build(ctx, handler_id, behaviour, commit=False, timeout=None):
        from autoheal.handlers import FixHandler

        class _Handler(FixHandler):
            async def handle(self, issue):
                self.calls.append(issue)
                return await behaviour(self, issue)

        handler = _Handler(ctx)
        handler.handler_id = handler_id
        handler.commit_changes = commit
        handler.timeout = timeout
        handler.calls = []
        return handler


@pytest.fixture
def parts(fix_context, ci, artifacts, tmp_path):
    """Signature registry with one custom signature plus the pieces a Dispatcher needs."""
    from autoheal.cooldown import CooldownTracker
    from autoheal.dispatch_queue import DispatchQueue
    from autoheal.models import Severity, Signature
    from autoheal.reporter import Reporter
    from autoheal.restart import RestartController
    from autoheal.signatures import SignatureRegistry

    signatures = SignatureRegistry([
        Signature(
            id="custom",
            display_name="Custom",
            category="test",
            severity=Severity.HIGH,
            handler_id="scripted",
            pattern=re.compile("boom"),
        )
    ])
    return {
        "ctx": fix_context,
        "signatures": signatures,
        "queue": DispatchQueue(),
        "cooldown": CooldownTracker(),
        "reporter": Reporter(),
        "restart": RestartController(ci, timeout=1.0),
        "artifacts": artifacts,
    }


def make_dispatcher(parts, handler, handler_timeout=15.0):
    from autoheal.dispatcher import Dispatcher
    from autoheal.handlers import HandlerRegistry

    return Dispatcher(
        queue=parts["queue"],
        signatures=parts["signatures"],
        handlers=HandlerRegistry([handler]),
        cooldown=parts["cooldown"],
        reporter=parts["reporter"],
        restart=parts["restart"],
        artifacts=parts["artifacts"],
        handler_timeout=handler_timeout,
    )


class TestDispatchOutcomes:
    """Tests for terminal states of a dispatched Issue."""

    @pytest.mark.asyncio
    async def test_empty_queue_returns_none(self, parts):
        async def ok(handler, issue):
            return handler.ok(issue, "fine")

        dispatcher = make_dispatcher(parts, ScriptedHandler.build(parts["ctx"], "scripted", ok))
        assert await dispatcher.dispatch_one() is None

    @pytest.mark.asyncio
    async def test_success_writes_cooldown_and_report(self, parts):
        from autoheal.models import IssueState

        async def ok(handler, issue):
            return handler.ok(issue, "fine")

        handler = ScriptedHandler.build(parts["ctx"], "scripted", ok)
        dispatcher = make_dispatcher(parts, handler)
        parts["queue"].put(make_issue("custom"))

        result = await dispatcher.dispatch_one()

        assert result.success is True
        assert len(handler.calls) == 1
        assert parts["cooldown"].get("custom").outcome == IssueState.FIXED
        assert parts["reporter"].snapshot().total_fixed == 1
        assert dispatcher.in_flight is None

    @pytest.mark.asyncio
    async def test_raising_handler_becomes_fix_failed(self, parts):
        from autoheal.models import IssueState

        async def explode(handler, issue):
            raise RuntimeError("disk on fire")

        dispatcher = make_dispatcher(parts, ScriptedHandler.build(parts["ctx"], "scripted", explode))
        parts["queue"].put(make_issue("custom"))

        result = await dispatcher.dispatch_one()

        assert result.success is False
        assert "disk on fire" in result.message
        assert parts["cooldown"].get("custom").outcome == IssueState.FIX_FAILED
        assert parts["reporter"].snapshot().total_failed == 1

    @pytest.mark.asyncio
    async def test_timeout_becomes_fix_failed(self, parts):
        async def hang(handler, issue):
            await asyncio.sleep(10)

        handler = ScriptedHandler.build(parts["ctx"], "scripted", hang, timeout=0.05)
        dispatcher = make_dispatcher(parts, handler)
        parts["queue"].put(make_issue("custom"))

        result = await dispatcher.dispatch_one()

        assert result.success is False
        assert "timed out" in result.message

    @pytest.mark.asyncio
    async def test_unbound_signature_fails(self, parts):
        async def ok(handler, issue):
            return handler.ok(issue, "fine")

        dispatcher = make_dispatcher(parts, ScriptedHandler.build(parts["ctx"], "scripted", ok))
        parts["queue"].put(make_issue("not-registered"))

        result = await dispatcher.dispatch_one()
        assert result.success is False
        assert parts["cooldown"].get("not-registered") is not None

    @pytest.mark.asyncio
    async def test_entry_cooling_down_since_queued_is_skipped(self, parts):
        from autoheal.models import IssueState

        async def ok(handler, issue):
            return handler.ok(issue, "fine")

        handler = ScriptedHandler.build(parts["ctx"], "scripted", ok)
        dispatcher = make_dispatcher(parts, handler)
        parts["queue"].put(make_issue("custom"))
        parts["queue"].put(make_issue("not-registered"))
        # Another attempt for the signature finished after the entry was queued
        parts["cooldown"].record("custom", IssueState.FIXED)

        result = await dispatcher.dispatch_one()

        assert result.signature_id == "not-registered"
        assert handler.calls == []
        assert len(parts["queue"]) == 0
        assert parts["reporter"].snapshot().totals["suppressed"] == 1


class TestRestartAndCommit:
    """Tests for the side effects that follow a fix."""

    @pytest.mark.asyncio
    async def test_restart_triggered_after_successful_fix(self, parts, ci):
        from autoheal.models import RunRef

        async def fixed(handler, issue):
            return handler.ok(issue, "patched", requires_restart=True)

        dispatcher = make_dispatcher(parts, ScriptedHandler.build(parts["ctx"], "scripted", fixed))
        run = RunRef(id=99)
        parts["queue"].put(make_issue("custom", run=run))

        await dispatcher.dispatch_one()

        assert ci.reruns == [run]
        assert parts["reporter"].snapshot().restarts == {"triggered": 1, "failed": 0}

    @pytest.mark.asyncio
    async def test_no_restart_after_failed_fix(self, parts, ci):
        async def failed(handler, issue):
            return handler.fail(issue, "nope", requires_restart=True)

        dispatcher = make_dispatcher(parts, ScriptedHandler.build(parts["ctx"], "scripted", failed))
        parts["queue"].put(make_issue("custom"))

        await dispatcher.dispatch_one()
        assert ci.reruns == []

    @pytest.mark.asyncio
    async def test_restart_failure_does_not_change_outcome(self, parts, ci):
        from autoheal.models import IssueState

        ci.rerun_error = ConnectionError("github down")

        async def fixed(handler, issue):
            return handler.ok(issue, "patched", requires_restart=True)

        dispatcher = make_dispatcher(parts, ScriptedHandler.build(parts["ctx"], "scripted", fixed))
        parts["queue"].put(make_issue("custom"))

        result = await dispatcher.dispatch_one()

        assert result.success is True
        assert parts["cooldown"].get("custom").outcome == IssueState.FIXED
        assert parts["reporter"].snapshot().restarts == {"triggered": 0, "failed": 1}

    @pytest.mark.asyncio
    async def test_commit_only_for_declaring_handlers(self, parts, artifacts):
        async def patched(handler, issue):
            return handler.ok(issue, "patched", changed_paths=("Dockerfile",))

        committing = ScriptedHandler.build(parts["ctx"], "scripted", patched, commit=True)
        dispatcher = make_dispatcher(parts, committing)
        parts["queue"].put(make_issue("custom"))
        await dispatcher.dispatch_one()

        assert len(artifacts.commits) == 1
        assert artifacts.commits[0][0] == ["Dockerfile"]

    @pytest.mark.asyncio
    async def test_no_commit_without_flag(self, parts, artifacts):
        async def patched(handler, issue):
            return handler.ok(issue, "patched", changed_paths=("Dockerfile",))

        dispatcher = make_dispatcher(parts, ScriptedHandler.build(parts["ctx"], "scripted", patched))
        parts["queue"].put(make_issue("custom"))
        await dispatcher.dispatch_one()

        assert artifacts.commits == []
