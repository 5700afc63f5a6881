"""Plan source backed by a text-completion service."""

import structlog

from khitomer.exceptions import CompletionError, PlanningError
from khitomer.models.domain import ImplementationPlan, Task
from khitomer.planning.base import PlanSource
from khitomer.planning.parser import SYSTEM_PROMPT, build_prompt, parse_plan
from khitomer.providers.base import CompletionBackend

log = structlog.get_logger(__name__)


class CompletionPlanSource(PlanSource):
    """Asks the completion backend for a plan and parses the answer.

    Example:
        >>> planner = CompletionPlanSource(OpenAICompatibleBackend(api_key="..."))
        >>> plan = await planner.generate_plan(task)
        >>> [step.activity_type for step in plan.steps]
        ['codegen', 'testing']
    """

    def __init__(self, backend: CompletionBackend):
        self.backend = backend

    async def generate_plan(self, task: Task) -> ImplementationPlan:
        log.info("generating_plan", ticket_id=task.ticket_id)

        try:
            text = await self.backend.complete(SYSTEM_PROMPT, build_prompt(task))
        except CompletionError as e:
            log.error("plan_completion_failed", ticket_id=task.ticket_id, error=str(e))
            raise PlanningError(f"Completion backend failed: {e.message}", ticket_id=task.ticket_id) from e

        if not text or not text.strip():
            log.error("plan_completion_empty", ticket_id=task.ticket_id)
            raise PlanningError("Completion backend returned no content", ticket_id=task.ticket_id)

        plan = parse_plan(text, task.ticket_id)
        log.info(
            "plan_generated",
            ticket_id=task.ticket_id,
            steps=len(plan.steps),
            complexity=plan.complexity or None,
        )
        return plan
