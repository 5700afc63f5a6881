"""Plan source contract and a fixed-plan implementation."""

from abc import ABC, abstractmethod

from khitomer.models.domain import ImplementationPlan, PlanStep, Task


class PlanSource(ABC):
    """Produces an implementation plan for a task.

    Implementations are stateless per call and do not retry; retry and
    backoff belong to the caller.
    """

    @abstractmethod
    async def generate_plan(self, task: Task) -> ImplementationPlan:
        """Return the plan for ``task``.

        Raises:
            PlanningError: If no plan could be produced.
        """
        pass


class StaticPlanSource(PlanSource):
    """Returns the same plan for every task.

    Used for manual triggers that skip planning and as a deterministic
    planner in tests. Without an explicit plan, a single codegen step built
    from the task title is returned.
    """

    def __init__(self, plan: ImplementationPlan | None = None):
        self.plan = plan

    async def generate_plan(self, task: Task) -> ImplementationPlan:
        if self.plan is not None:
            return self.plan
        return ImplementationPlan(
            summary=f"Implementation plan for {task.ticket_id}",
            steps=(PlanStep(order=1, description=task.title),),
        )
