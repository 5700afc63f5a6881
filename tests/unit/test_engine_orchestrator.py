"""Tests for the orchestrator control loop."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from khitomer.engine.orchestrator import Orchestrator
from khitomer.engine.runtime import ExecutionRuntime
from khitomer.exceptions import PlanningError
from khitomer.intake.poller import Poller
from khitomer.models.domain import ImplementationPlan, RunHandle, Task
from khitomer.planning.base import PlanSource, StaticPlanSource
from khitomer.providers.base import TrackerProvider
from khitomer.utils.cancellation import CancellationSignal


def make_task(ticket_id: str, repo: str = "app") -> Task:
    return Task(ticket_id=ticket_id, title="Fix it", repository_owner="org", repository_name=repo)


@pytest.fixture
def runtime() -> AsyncMock:
    runtime = AsyncMock(spec=ExecutionRuntime)
    runtime.start.side_effect = lambda run_id, pipeline_input: RunHandle(run_id=run_id)
    return runtime


class TestProcessTask:
    @pytest.mark.asyncio
    async def test_starts_run_with_deterministic_id(self, runtime, sample_task):
        plan = ImplementationPlan(summary="Do it")
        orchestrator = Orchestrator(AsyncMock(spec=Poller), StaticPlanSource(plan), runtime)

        handle = await orchestrator.process_task(sample_task)

        assert handle.run_id == "implementation-PROJ-42-app"
        run_id, pipeline_input = runtime.start.await_args.args
        assert run_id == "implementation-PROJ-42-app"
        assert pipeline_input.task == sample_task
        assert pipeline_input.plan is plan
        assert pipeline_input.repository.full_name == "org/app"
        assert pipeline_input.repository.base_branch == "main"

    @pytest.mark.asyncio
    async def test_planning_error_propagates_without_start(self, runtime, sample_task):
        planner = AsyncMock(spec=PlanSource)
        planner.generate_plan.side_effect = PlanningError("no plan", ticket_id="PROJ-42")
        orchestrator = Orchestrator(AsyncMock(spec=Poller), planner, runtime)

        with pytest.raises(PlanningError):
            await orchestrator.process_task(sample_task)
        runtime.start.assert_not_awaited()


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_failure_on_one_task_does_not_stop_the_loop(self, runtime):
        tracker = AsyncMock(spec=TrackerProvider)
        tracker.search_by_status.return_value = [make_task("PROJ-1"), make_task("PROJ-2")]
        planner = AsyncMock(spec=PlanSource)

        async def generate(task: Task) -> ImplementationPlan:
            if task.ticket_id == "PROJ-1":
                raise PlanningError("completion backend down", ticket_id=task.ticket_id)
            return ImplementationPlan(summary="ok")

        planner.generate_plan.side_effect = generate
        stop = CancellationSignal()

        def start(run_id, pipeline_input):
            stop.cancel("done")
            return RunHandle(run_id=run_id)

        runtime.start.side_effect = start
        orchestrator = Orchestrator(Poller(tracker, ["Ready"], interval=60), planner, runtime)

        reason = await asyncio.wait_for(orchestrator.run(stop), timeout=2.0)

        assert reason == "done"
        assert [call.args[0] for call in runtime.start.await_args_list] == ["implementation-PROJ-2-app"]

    @pytest.mark.asyncio
    async def test_returns_stop_reason_and_stops_poller(self, runtime):
        tracker = AsyncMock(spec=TrackerProvider)
        tracker.search_by_status.return_value = []
        orchestrator = Orchestrator(Poller(tracker, ["Ready"], interval=0.01), StaticPlanSource(), runtime)
        stop = CancellationSignal()
        asyncio.get_running_loop().call_later(0.05, stop.cancel, "received SIGTERM")

        reason = await asyncio.wait_for(orchestrator.run(stop), timeout=2.0)

        assert reason == "received SIGTERM"
        runtime.start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_runtime_failure_is_logged_and_skipped(self, runtime):
        tracker = AsyncMock(spec=TrackerProvider)
        tracker.search_by_status.return_value = [make_task("PROJ-1"), make_task("PROJ-2")]
        stop = CancellationSignal()
        started: list[str] = []

        def start(run_id, pipeline_input):
            started.append(run_id)
            if len(started) == 1:
                raise OSError("disk full")
            stop.cancel("done")
            return RunHandle(run_id=run_id)

        runtime.start.side_effect = start
        orchestrator = Orchestrator(Poller(tracker, ["Ready"], interval=60), StaticPlanSource(), runtime)

        await asyncio.wait_for(orchestrator.run(stop), timeout=2.0)

        assert started == ["implementation-PROJ-1-app", "implementation-PROJ-2-app"]

    @pytest.mark.asyncio
    async def test_poller_exit_stops_the_loop(self, runtime):
        poller = AsyncMock(spec=Poller)
        poller.run.side_effect = RuntimeError("intake crashed")
        orchestrator = Orchestrator(poller, StaticPlanSource(), runtime)
        stop = CancellationSignal()

        reason = await asyncio.wait_for(orchestrator.run(stop), timeout=2.0)

        assert reason == "poller exited"
        assert stop.is_cancelled
        runtime.start.assert_not_awaited()
