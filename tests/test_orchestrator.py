"""
Tests for the orchestrator: intake, end-to-end cycles and shutdown
"""

import asyncio
import json

import pytest

from conftest import ESM_LOG_LINE, ESM_SCRIPT, make_issue


class TestInitialization:
    """Tests for startup validation."""

    def test_from_config_freezes_registries(self, orchestrator):
        assert orchestrator.signatures.frozen
        assert "health:loki" in orchestrator.signatures
        assert "health:grafana" in orchestrator.signatures

    def test_missing_handler_refuses_to_start(self, config, collaborators, monkeypatch):
        from autoheal.errors import MissingHandlerError
        from autoheal.handlers import HandlerRegistry, RerunPipelineHandler
        from autoheal.orchestrator import Orchestrator

        monkeypatch.setattr(
            "autoheal.orchestrator.build_default_handlers",
            lambda ctx: HandlerRegistry([RerunPipelineHandler(ctx)]),
        )
        with pytest.raises(MissingHandlerError):
            Orchestrator.from_config(config, collaborators=collaborators, collectors=[])

    def test_invalid_severity_override_refuses_to_start(self, config, collaborators):
        from autoheal.errors import InitializationError
        from autoheal.orchestrator import Orchestrator

        config.cooldown_by_severity = {"urgent": 10}
        with pytest.raises(InitializationError):
            Orchestrator.from_config(config, collaborators=collaborators, collectors=[])

    def test_default_collectors_follow_config(self, config, collaborators):
        from autoheal.orchestrator import Orchestrator

        config.enable_loki_collector = False
        orchestrator = Orchestrator.from_config(config, collaborators=collaborators)
        assert [c.name for c in orchestrator.collectors] == ["ci", "local"]


class TestIntake:
    """Tests for dedup and cooldown filtering."""

    def test_within_batch_duplicate_dropped(self, orchestrator):
        accepted = orchestrator.intake([
            make_issue("package-install", source="ci"),
            make_issue("package-install", source="local"),
        ])

        assert len(accepted) == 1
        assert accepted[0].issue.source == "ci"
        totals = orchestrator.reporter.snapshot().totals
        assert totals["duplicates"] == 1
        assert totals["diagnosed"] == 2

    def test_already_queued_dropped(self, orchestrator):
        orchestrator.intake([make_issue("package-install")])
        accepted = orchestrator.intake([make_issue("package-install")])

        assert accepted == []
        assert len(orchestrator.queue) == 1

    def test_cooldown_suppresses(self, orchestrator):
        from autoheal.models import IssueState

        orchestrator.cooldown.record("package-install", IssueState.FIXED)
        accepted = orchestrator.intake([make_issue("package-install")])

        assert accepted == []
        snapshot = orchestrator.reporter.snapshot()
        assert snapshot.totals["suppressed"] == 1
        assert snapshot.per_signature["package-install"]["suppressed"] == 1

    @pytest.mark.asyncio
    async def test_signature_in_flight_dropped(self, orchestrator, monkeypatch):
        handler = orchestrator.handlers.get("rerun-pipeline")
        release = asyncio.Event()
        calls = []

        async def slow_handle(issue):
            calls.append(issue)
            await release.wait()
            return handler.ok(issue, "Rerun requested")

        monkeypatch.setattr(handler, "handle", slow_handle)

        orchestrator.intake([make_issue("package-install")])
        draining = asyncio.create_task(orchestrator.drain())
        for _ in range(50):
            if orchestrator.dispatcher.in_flight is not None:
                break
            await asyncio.sleep(0)

        accepted = orchestrator.intake([make_issue("package-install")])
        release.set()
        results = await draining
        results += await orchestrator.drain()

        assert accepted == []
        assert len(calls) == 1
        assert len(results) == 1
        assert orchestrator.reporter.snapshot().totals["duplicates"] == 1

    def test_no_intake_after_stop(self, orchestrator):
        orchestrator.stop()
        assert orchestrator.intake([make_issue("package-install")]) == []
        assert len(orchestrator.queue) == 0


class TestScanCycle:
    """End-to-end scan -> dispatch cycles."""

    @pytest.mark.asyncio
    async def test_two_collectors_same_signature_one_dispatch(self, config, collaborators, ci, local_logs):
        from autoheal.collectors import CIRunCollector, LocalLogCollector
        from autoheal.models import RunRef
        from autoheal.orchestrator import Orchestrator

        ci.runs = [RunRef(id=1)]
        ci.logs = {1: "npm ERR! code ENOENT\n"}
        local_logs.texts = {"logs/regression-tests.log": "npm ERR! code ENOENT\n"}
        orchestrator = Orchestrator.from_config(
            config,
            collaborators=collaborators,
            collectors=[
                CIRunCollector(ci),
                LocalLogCollector(local_logs, ["logs/regression-tests.log"]),
            ],
        )

        entries = await orchestrator.scan_once()
        results = await orchestrator.drain()

        assert [e.issue.signature_id for e in entries] == ["package-install"]
        assert len(results) == 1
        assert orchestrator.reporter.snapshot().totals["duplicates"] == 1

    @pytest.mark.asyncio
    async def test_same_signature_twice_within_cooldown_single_invocation(self, config, collaborators, local_logs, ci):
        from autoheal.collectors import LocalLogCollector
        from autoheal.orchestrator import Orchestrator

        local_logs.texts = {"logs/regression-tests.log": "npm ERR! code EACCES\n"}
        orchestrator = Orchestrator.from_config(
            config,
            collaborators=collaborators,
            collectors=[LocalLogCollector(local_logs, ["logs/regression-tests.log"])],
        )

        await orchestrator.scan_once()
        first = await orchestrator.drain()
        await orchestrator.scan_once()
        second = await orchestrator.drain()

        assert len(first) == 1
        assert second == []
        # rerun-pipeline asks for one rerun per invocation
        assert len(ci.reruns) == 1
        assert orchestrator.reporter.snapshot().totals["suppressed"] == 1

    @pytest.mark.asyncio
    async def test_critical_dispatched_before_earlier_normal(self, orchestrator, artifacts):
        artifacts.files["pipeline-troubleshooter.js"] = ESM_SCRIPT
        orchestrator.intake([make_issue("package-install")])
        orchestrator.intake([make_issue("esm-import-error", excerpt=ESM_LOG_LINE)])

        results = await orchestrator.drain()

        assert [r.signature_id for r in results] == ["esm-import-error", "package-install"]

    @pytest.mark.asyncio
    async def test_esm_scenario(self, config, collaborators, artifacts, ci):
        from autoheal.collectors import CIRunCollector
        from autoheal.models import RunRef
        from autoheal.orchestrator import Orchestrator

        artifacts.files["pipeline-troubleshooter.js"] = ESM_SCRIPT
        ci.runs = [RunRef(id=5, name="Regression Tests")]
        ci.logs = {5: f"> node pipeline-troubleshooter.js\n{ESM_LOG_LINE}\n"}
        orchestrator = Orchestrator.from_config(
            config, collaborators=collaborators, collectors=[CIRunCollector(ci)]
        )

        await orchestrator.scan_once()
        results = {r.signature_id: r for r in await orchestrator.drain()}

        result = results["esm-import-error"]
        assert result.success is True
        assert result.requires_restart is True
        assert "await import('@octokit/rest')" in artifacts.files["pipeline-troubleshooter.js"]
        assert json.loads(artifacts.files["package.json"])["type"] == "module"
        assert RunRef(id=5, name="Regression Tests") in ci.reruns

    @pytest.mark.asyncio
    async def test_collector_failure_is_skipped(self, config, collaborators, local_logs):
        from autoheal.collectors import Collector, LocalLogCollector
        from autoheal.orchestrator import Orchestrator

        class Broken(Collector):
            name = "broken"

            async def collect(self):
                raise ConnectionError("refused")

        local_logs.texts = {"logs/regression-tests.log": "npm ERR! code ENOENT\n"}
        orchestrator = Orchestrator.from_config(
            config,
            collaborators=collaborators,
            collectors=[Broken(), LocalLogCollector(local_logs, ["logs/regression-tests.log"])],
        )

        entries = await orchestrator.scan_once()

        assert [e.issue.signature_id for e in entries] == ["package-install"]
        assert orchestrator.reporter.snapshot().totals["collector_failures"] == 1


class TestHealthCycle:
    """Health-derived issues go through the same pipeline."""

    @pytest.mark.asyncio
    async def test_loki_unhealthy_restarted_then_incident_closed(self, orchestrator, process):
        process.healthy["loki"] = False

        entries = await orchestrator.health_once()
        assert [e.issue.signature_id for e in entries] == ["health:loki"]
        assert entries[0].issue.source == "health"

        result = await orchestrator.dispatch_once()
        assert result.success is True
        assert process.restarts == ["loki"]

        # restart() made loki healthy again
        entries = await orchestrator.health_once()
        assert entries == []
        assert "loki" not in orchestrator.health.open_incidents
        assert await orchestrator.dispatch_once() is None

    @pytest.mark.asyncio
    async def test_still_unhealthy_within_cooldown_is_suppressed(self, orchestrator, process):
        process.healthy["loki"] = False
        process.restart_result = False

        await orchestrator.health_once()
        await orchestrator.dispatch_once()
        entries = await orchestrator.health_once()

        assert entries == []
        assert process.restarts == ["loki"]
        assert orchestrator.reporter.snapshot().per_signature["health:loki"]["suppressed"] == 1


class TestRun:
    """Tests for the loop lifecycle."""

    @pytest.mark.asyncio
    async def test_run_and_graceful_stop(self, config, collaborators, sink, ci):
        from autoheal.orchestrator import Orchestrator

        config.scan_interval = 0.01
        config.health_interval = 0.01
        config.dispatch_interval = 0.01
        config.flush_interval = 0.01
        orchestrator = Orchestrator.from_config(config, collaborators=collaborators, collectors=[])

        task = asyncio.create_task(orchestrator.run(install_signal_handlers=False))
        await asyncio.sleep(0.05)
        orchestrator.stop()
        await asyncio.wait_for(task, timeout=5)

        assert sink.documents
        assert (config.data_path / "report.json").exists()
        assert ci.closed is True

    @pytest.mark.asyncio
    async def test_queued_work_dispatched_by_loop(self, config, collaborators, ci):
        from autoheal.orchestrator import Orchestrator

        config.scan_interval = 60
        config.health_interval = 60
        config.dispatch_interval = 0.01
        config.flush_interval = 60
        orchestrator = Orchestrator.from_config(config, collaborators=collaborators, collectors=[])
        orchestrator.intake([make_issue("package-install")])

        task = asyncio.create_task(orchestrator.run(install_signal_handlers=False))
        for _ in range(100):
            if orchestrator.reporter.snapshot().total_fixed:
                break
            await asyncio.sleep(0.01)
        orchestrator.stop()
        await asyncio.wait_for(task, timeout=5)

        assert orchestrator.reporter.snapshot().total_fixed == 1
        assert len(ci.reruns) == 1
