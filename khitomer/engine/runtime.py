"""
Execution runtime: starts, observes, and cancels pipeline runs.

``ExecutionRuntime`` is the narrow capability the orchestrator, the admin
API, and the CLI depend on. ``LocalRuntime`` implements it in-process with
one asyncio task per run:

- ``start`` is keyed by the deterministic run id. A run that is running or
  already succeeded is attached to instead of started again; a failed or
  cancelled run id may be started afresh.
- Each activity is executed with its declared ``ActivityOptions``: the
  per-attempt timeout and the retry policy's bounded exponential backoff.
  A cancel request stops further retries of the current step.
- Progress (current step, step history, terminal result) is written to a
  ``RunStateStore`` after every step, so runs stay queryable afterwards.

``LocalRuntime`` does not resume runs after a process crash; ``recover``
marks runs left RUNNING by a previous process as failed so they can be
restarted.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from typing import TypeVar

import structlog

from khitomer.engine.pipeline import ActivityOptions, ActivityResult, ImplementationPipeline, WorkflowContext
from khitomer.engine.state_manager import RunStateStore
from khitomer.engine.types import RunState
from khitomer.exceptions import RunCancelledError
from khitomer.models.domain import (
    PipelineInput,
    PipelineResult,
    RunHandle,
    RunSnapshot,
    RunStatus,
    StepRecord,
)
from khitomer.utils.logging_config import bind_run_context

log = structlog.get_logger(__name__)

T = TypeVar("T")


class ExecutionRuntime(ABC):
    """Durable-execution capability used by everything outside the pipeline."""

    @abstractmethod
    async def start(self, run_id: str, pipeline_input: PipelineInput) -> RunHandle:
        """Start the pipeline for ``run_id``, or attach to the existing run."""
        pass

    @abstractmethod
    async def query(self, run_id: str) -> RunSnapshot:
        """Return the current view of a run.

        Raises:
            RunNotFoundError: If the run is unknown.
        """
        pass

    @abstractmethod
    async def cancel(self, run_id: str, reason: str = "cancelled by request") -> None:
        """Request cooperative cancellation of a run.

        Raises:
            RunNotFoundError: If the run is unknown.
        """
        pass

    @abstractmethod
    async def wait(self, run_id: str, timeout: float | None = None) -> RunSnapshot:
        """Wait for a run started by this runtime to finish, then return its view."""
        pass

    async def close(self) -> None:
        """Stop background work."""
        return None


class LocalWorkflowContext(WorkflowContext):
    """WorkflowContext backed by a ``RunStateStore``."""

    def __init__(
        self,
        run_id: str,
        store: RunStateStore,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.run_id = run_id
        self.store = store
        self._sleep = sleep

    async def execute_activity(
        self,
        name: str,
        activity: Callable[[], Awaitable[T]],
        options: ActivityOptions,
    ) -> ActivityResult[T]:
        policy = options.retry_policy
        attempt = 0
        while True:
            attempt += 1
            error: Exception
            try:
                value = await asyncio.wait_for(activity(), timeout=options.start_to_close_timeout)
                return ActivityResult(value=value, attempts=attempt)
            except TimeoutError:
                error = TimeoutError(f"{name} exceeded {options.start_to_close_timeout}s")
            except Exception as e:
                error = e

            if not policy.should_retry(error, attempt):
                log.error("activity_failed", step=name, attempts=attempt, error=str(error))
                return ActivityResult(attempts=attempt, error=error)

            if await self.is_cancel_requested():
                log.info("activity_retry_cancelled", step=name, attempts=attempt, error=str(error))
                return ActivityResult(
                    attempts=attempt,
                    error=RunCancelledError(self.run_id, reason=f"cancelled during {name}"),
                )

            delay = policy.delay_for(attempt)
            log.warning(
                "activity_retry",
                step=name,
                attempt=attempt,
                max_attempts=policy.maximum_attempts,
                delay=delay,
                error=str(error),
            )
            await self._sleep(delay)

    async def step_started(self, name: str) -> None:
        async with self.store.transaction(self.run_id) as state:
            state["current_step"] = name

    async def record_step(self, record: StepRecord) -> None:
        async with self.store.transaction(self.run_id) as state:
            state["steps"].append(record.to_dict())  # type: ignore[arg-type]

    async def is_cancel_requested(self) -> bool:
        state = await self.store.load(self.run_id)
        return state["cancel_requested"]


class LocalRuntime(ExecutionRuntime):
    """In-process runtime: one asyncio task per run, state in a ``RunStateStore``.

    Example:
        >>> runtime = LocalRuntime(pipeline, RunStateStore(".khitomer/runs"))
        >>> handle = await runtime.start("implementation-PROJ-1-app", pipeline_input)
        >>> snapshot = await runtime.wait(handle.run_id)
        >>> snapshot.status
        <RunStatus.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        pipeline: ImplementationPipeline,
        store: RunStateStore,
        task_queue: str = "implementation-queue",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.pipeline = pipeline
        self.store = store
        self.task_queue = task_queue
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._start_lock = asyncio.Lock()

    async def start(self, run_id: str, pipeline_input: PipelineInput) -> RunHandle:
        async with self._start_lock:
            if self._is_active(run_id):
                log.info("run_attached", run_id=run_id, status=RunStatus.RUNNING.value)
                return RunHandle(run_id=run_id, attached=True)

            if self.store.exists(run_id):
                previous = await self.store.load(run_id)
                if previous["status"] in (RunStatus.RUNNING.value, RunStatus.SUCCEEDED.value):
                    log.info("run_attached", run_id=run_id, status=previous["status"])
                    return RunHandle(run_id=run_id, attached=True)
                log.info("run_restarting", run_id=run_id, previous_status=previous["status"])

            await self.store.create(run_id, pipeline_input)
            self._tasks[run_id] = asyncio.create_task(self._execute(run_id, pipeline_input), name=run_id)

        log.info(
            "run_started",
            run_id=run_id,
            ticket_id=pipeline_input.task.ticket_id,
            task_queue=self.task_queue,
        )
        return RunHandle(run_id=run_id)

    async def query(self, run_id: str) -> RunSnapshot:
        state = await self.store.load(run_id)
        return RunSnapshot.from_dict(dict(state))

    async def cancel(self, run_id: str, reason: str = "cancelled by request") -> None:
        async with self.store.transaction(run_id) as state:
            if RunStatus(state["status"]).is_terminal:
                log.info("cancel_ignored", run_id=run_id, status=state["status"])
                return
            state["cancel_requested"] = True
            state["cancel_reason"] = reason
        log.info("cancel_requested", run_id=run_id, reason=reason)

    async def wait(self, run_id: str, timeout: float | None = None) -> RunSnapshot:
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await self.query(run_id)

    async def list_runs(self, status: RunStatus | None = None) -> list[RunSnapshot]:
        return [RunSnapshot.from_dict(dict(state)) for state in await self.store.list_runs(status)]

    async def recover(self) -> list[str]:
        """Fail runs left RUNNING by a process that is gone.

        Returns:
            The run ids that were marked failed.
        """
        recovered = []
        for state in await self.store.list_runs(RunStatus.RUNNING):
            run_id = state["run_id"]
            if self._is_active(run_id):
                continue
            async with self.store.transaction(run_id) as current:
                current["status"] = RunStatus.FAILED.value
                current["failed_step"] = current["current_step"]
                current["error"] = "Run interrupted by process exit"
                current["current_step"] = None
            recovered.append(run_id)
            log.warning("run_recovered_as_failed", run_id=run_id)
        return recovered

    async def close(self) -> None:
        """Cancel in-flight run tasks; their runs are recorded as cancelled."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _is_active(self, run_id: str) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    async def _execute(self, run_id: str, pipeline_input: PipelineInput) -> None:
        bind_run_context(run_id, pipeline_input.task.ticket_id)
        ctx = LocalWorkflowContext(run_id, self.store, sleep=self._sleep)
        try:
            result = await self.pipeline.run(ctx, pipeline_input)
        except asyncio.CancelledError:
            await self._finish(
                run_id,
                PipelineResult(status=RunStatus.CANCELLED, error="Runtime shut down while the run was in progress"),
            )
            raise
        except Exception as e:
            log.exception("pipeline_crashed", run_id=run_id)
            result = PipelineResult(status=RunStatus.FAILED, error=f"Pipeline crashed: {e}")

        await self._finish(run_id, result)

    async def _finish(self, run_id: str, result: PipelineResult) -> None:
        async with self.store.transaction(run_id) as state:
            if RunStatus(state["status"]).is_terminal:
                return
            self._apply_result(state, result)
        log.info("run_finished", run_id=run_id, status=result.status.value, failed_step=result.failed_step)

    @staticmethod
    def _apply_result(state: RunState, result: PipelineResult) -> None:
        state["status"] = result.status.value
        state["current_step"] = None
        state["failed_step"] = result.failed_step
        state["error"] = result.error
        if result.review_request is not None:
            state["review_request"] = asdict(result.review_request)  # type: ignore[typeddict-item]

