"""
Tests for the restart controller
"""

import asyncio

import pytest

from conftest import FakeCIProvider, make_issue


def fixed(requires_restart=True, success=True):
    from autoheal.models import FixResult

    return FixResult(
        signature_id="package-install",
        success=success,
        message="x",
        requires_restart=requires_restart,
    )


class TestMaybeRestart:
    """Tests for RestartController.maybe_restart."""

    @pytest.mark.asyncio
    async def test_not_needed(self):
        from autoheal.restart import RestartController

        ci = FakeCIProvider()
        controller = RestartController(ci)

        assert await controller.maybe_restart(make_issue(), fixed(requires_restart=False)) is None
        assert await controller.maybe_restart(make_issue(), fixed(success=False)) is None
        assert ci.reruns == []

    @pytest.mark.asyncio
    async def test_rerun_of_issue_run(self):
        from autoheal.models import RunRef
        from autoheal.restart import RestartController

        ci = FakeCIProvider()
        run = RunRef(id=7)

        assert await RestartController(ci).maybe_restart(make_issue(run=run), fixed()) is True
        assert ci.reruns == [run]

    @pytest.mark.asyncio
    async def test_refused_rerun_is_logged_not_raised(self):
        from autoheal.restart import RestartController

        ci = FakeCIProvider()
        ci.rerun_result = False

        assert await RestartController(ci).maybe_restart(make_issue(), fixed()) is False

    @pytest.mark.asyncio
    async def test_slow_rerun_times_out(self):
        from autoheal.restart import RestartController

        class SlowCI(FakeCIProvider):
            async def rerun(self, run):
                await asyncio.sleep(10)
                return True

        controller = RestartController(SlowCI(), timeout=0.05)
        assert await controller.maybe_restart(make_issue(), fixed()) is False


class TestTrigger:
    """Tests for RestartController.trigger."""

    @pytest.mark.asyncio
    async def test_provider_error_wrapped(self):
        from autoheal.errors import RestartTriggerFailure
        from autoheal.restart import RestartController

        ci = FakeCIProvider()
        ci.rerun_error = ConnectionError("github down")

        with pytest.raises(RestartTriggerFailure, match="github down"):
            await RestartController(ci).trigger(make_issue())
