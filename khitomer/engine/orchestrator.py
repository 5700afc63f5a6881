"""
Orchestrator control loop: intake, planning, and run dispatch.

The orchestrator owns the bounded intake queue. It starts the poller as a
background task feeding that queue, then handles one task at a time:

1. Ask the plan source for an implementation plan
2. Derive the repository coordinates and the deterministic run id
3. Ask the execution runtime to start (or attach to) the run

A failure while handling one task is logged and the loop moves on to the
next. The loop ends when the stop signal fires or the poller exits on its
own; it then waits for the poller to wind down and returns the stop reason.

Example:
    >>> orchestrator = Orchestrator(poller, plan_source, runtime)
    >>> stop = CancellationSignal()
    >>> reason = await orchestrator.run(stop)
"""

import asyncio

import structlog

from khitomer.engine.naming import make_run_id
from khitomer.engine.runtime import ExecutionRuntime
from khitomer.intake.poller import Poller
from khitomer.models.domain import PipelineInput, RepositoryInfo, RunHandle, Task
from khitomer.planning.base import PlanSource
from khitomer.utils.cancellation import CancellationSignal

log = structlog.get_logger(__name__)

DEFAULT_QUEUE_SIZE = 10


class Orchestrator:
    """Consume tasks from intake and start a pipeline run for each.

    Attributes:
        poller: Task intake feeding the orchestrator's queue
        plan_source: Produces the plan for each task
        runtime: Execution runtime runs are started on
        queue_size: Capacity of the intake queue
    """

    def __init__(
        self,
        poller: Poller,
        plan_source: PlanSource,
        runtime: ExecutionRuntime,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.poller = poller
        self.plan_source = plan_source
        self.runtime = runtime
        self.queue_size = queue_size

    async def run(self, stop: CancellationSignal) -> str:
        """Run until ``stop`` fires and return its reason."""
        queue: asyncio.Queue[Task] = asyncio.Queue(maxsize=self.queue_size)
        poller_task = asyncio.create_task(self.poller.run(stop, queue), name="poller")
        poller_task.add_done_callback(lambda finished: self._on_poller_exit(finished, stop))
        log.info("orchestrator_started", queue_size=self.queue_size)

        try:
            while not stop.is_cancelled:
                received, task = await stop.race(queue.get())
                if not received or task is None:
                    break
                if stop.is_cancelled:
                    log.warning("task_dropped_on_shutdown", ticket_id=task.ticket_id)
                    break

                try:
                    await self.process_task(task)
                except Exception as e:
                    log.error(
                        "task_processing_failed",
                        ticket_id=task.ticket_id,
                        repository=task.repository_full_name,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
        finally:
            if not stop.is_cancelled:
                stop.cancel("orchestrator exited")
            await asyncio.gather(poller_task, return_exceptions=True)

        reason = stop.reason or "cancelled"
        log.info("orchestrator_stopped", reason=reason)
        return reason

    @staticmethod
    def _on_poller_exit(poller_task: "asyncio.Task[None]", stop: CancellationSignal) -> None:
        """Stop the loop when intake ends on its own; nothing would feed the queue again."""
        if stop.is_cancelled:
            return
        if poller_task.cancelled():
            log.error("poller_exited", reason="cancelled")
        elif poller_task.exception() is not None:
            error = poller_task.exception()
            log.error("poller_exited", error=str(error), error_type=type(error).__name__)
        else:
            log.error("poller_exited", reason="returned")
        stop.cancel("poller exited")

    async def process_task(self, task: Task) -> RunHandle:
        """Plan ``task`` and start its pipeline run.

        Raises:
            PlanningError: If no plan could be produced.
            Exception: Whatever the runtime raises when the start fails.
        """
        log.info("processing_task", ticket_id=task.ticket_id, repository=task.repository_full_name)

        plan = await self.plan_source.generate_plan(task)
        repository = RepositoryInfo.for_task(task)
        run_id = make_run_id(task.ticket_id, repository.name)

        handle = await self.runtime.start(run_id, PipelineInput(task=task, plan=plan, repository=repository))
        log.info(
            "run_dispatched",
            ticket_id=task.ticket_id,
            run_id=handle.run_id,
            attached=handle.attached,
        )
        return handle
